from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_billing.models.billing_models import CNAMBond
from rental_billing.services.billing_errors import DuplicateBondNumber

BOND_PREFIX = "BL"
SEQUENCE_WIDTH = 4
DEFAULT_MAX_ATTEMPTS = 3

logger = logging.getLogger("rental_billing.bonds")


def bond_prefix(year: int) -> str:
    return f"{BOND_PREFIX}-{year}-"


def _parse_seq(bond_number: str | None, prefix: str) -> Optional[int]:
    if not bond_number or not bond_number.startswith(prefix):
        return None
    try:
        return int(bond_number[len(prefix):])
    except ValueError:
        # Corrupted suffixes never block numbering; they are simply skipped.
        return None


def compute_next_bond_number(existing: Iterable[str | None], year: int) -> str:
    prefix = bond_prefix(year)
    max_seq = 0
    for number in existing:
        seq = _parse_seq(number, prefix)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{prefix}{max_seq + 1:0{SEQUENCE_WIDTH}d}"


def next_bond_number(db: Session, category: str | None = None, today: date | None = None) -> str:
    year = (today or date.today()).year
    stmt = select(CNAMBond.BondNumber).where(CNAMBond.BondNumber.startswith(bond_prefix(year)))
    if category:
        stmt = stmt.where(CNAMBond.Category == category.upper())
    existing = db.execute(stmt).scalars().all()
    return compute_next_bond_number(existing, year)


def _number_taken(db: Session, bond_number: str) -> bool:
    found = db.execute(select(CNAMBond.BondID).where(CNAMBond.BondNumber == bond_number)).first()
    return found is not None


def insert_bond(
    db: Session,
    bond: CNAMBond,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    today: date | None = None,
) -> CNAMBond:
    """Insert ``bond`` under a unique ``BondNumber``.

    A preset number is inserted as-is and a collision fails at once. Otherwise
    the number is generated, written optimistically, and regenerated when the
    unique constraint rejects it. The first attempt numbers within the bond's
    category; later attempts widen to the whole year since numbers are unique
    across categories. Caller commits.
    """
    if bond.BondNumber:
        try:
            with db.begin_nested():
                db.add(bond)
                db.flush()
        except IntegrityError as exc:
            if _number_taken(db, bond.BondNumber):
                raise DuplicateBondNumber(f"Bond number {bond.BondNumber} already exists.") from exc
            raise
        return bond

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        scope = bond.Category if attempt == 1 else None
        candidate = next_bond_number(db, scope, today)
        bond.BondNumber = candidate
        try:
            with db.begin_nested():
                db.add(bond)
                db.flush()
        except IntegrityError as exc:
            if not _number_taken(db, candidate):
                raise
            logger.warning("Bond number %s taken by a concurrent writer (attempt %d/%d)", candidate, attempt, attempts)
            bond.BondNumber = None
            continue
        logger.info("Issued bond number %s", candidate)
        return bond

    raise DuplicateBondNumber(f"Could not allocate a unique bond number after {attempts} attempts.")
