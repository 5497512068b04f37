from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_billing.models.billing_models import CNAMNomenclature
from rental_billing.services.billing_errors import TariffNotFound
from rental_billing.services.billing_types import Tariff
from rental_billing.services.money import ZERO, quantize_currency

DEFAULT_NOMENCLATURE = [
    {
        "bondType": "CONCENTRATEUR_OXYGENE",
        "category": "LOCATION",
        "amount": Decimal("190.00"),
        "monthlyRate": Decimal("190.00"),
        "description": "Concentrateur d'oxygene - bon de location CNAM (mensuel)",
    },
    {
        "bondType": "VNI",
        "category": "LOCATION",
        "amount": Decimal("570.00"),
        "monthlyRate": Decimal("570.00"),
        "description": "Ventilation non invasive - bon de location CNAM (mensuel)",
    },
    {
        "bondType": "CPAP",
        "category": "ACHAT",
        "amount": Decimal("1475.00"),
        "monthlyRate": ZERO,
        "description": "CPAP - bon d'achat CNAM (paiement unique)",
    },
    {
        "bondType": "MASQUE",
        "category": "ACHAT",
        "amount": Decimal("200.00"),
        "monthlyRate": ZERO,
        "description": "Masque - bon d'achat CNAM (paiement unique)",
    },
    {
        # Case by case, settled manually.
        "bondType": "AUTRE",
        "category": "LOCATION",
        "amount": ZERO,
        "monthlyRate": ZERO,
        "description": "Autre - tarif variable selon l'equipement",
    },
]


def to_tariff(row: CNAMNomenclature) -> Tariff:
    return Tariff(
        bond_type=row.BondType,
        category=row.Category,
        amount=quantize_currency(row.Amount),
        monthly_rate=quantize_currency(row.MonthlyRate),
        description=row.Description,
        is_active=bool(row.IsActive),
    )


def tariff_for(db: Session, bond_type: str) -> Tariff:
    row = db.execute(
        select(CNAMNomenclature).where(CNAMNomenclature.BondType == (bond_type or "").upper())
    ).scalars().first()
    if not row or not row.IsActive:
        raise TariffNotFound(f"No active CNAM tariff for bond type {bond_type!r}.")
    return to_tariff(row)


def list_tariffs(db: Session, bond_type: str | None = None, is_active: bool | None = None) -> list[CNAMNomenclature]:
    stmt = select(CNAMNomenclature).order_by(CNAMNomenclature.BondType.asc())
    if bond_type:
        stmt = stmt.where(CNAMNomenclature.BondType == bond_type.upper())
    if is_active is not None:
        stmt = stmt.where(CNAMNomenclature.IsActive == is_active)
    return list(db.execute(stmt).scalars().all())


def upsert_tariff(
    db: Session,
    bond_type: str,
    amount,
    category: str | None = None,
    monthly_rate=None,
    description: str | None = None,
    is_active: bool | None = None,
) -> CNAMNomenclature:
    """Insert or overwrite the single tariff row of ``bond_type``.

    Caller commits.
    """
    key = bond_type.upper()
    resolved_category = (category or "LOCATION").upper()
    parsed_amount = quantize_currency(amount)
    if resolved_category == "ACHAT":
        parsed_monthly = ZERO
    elif monthly_rate is None:
        parsed_monthly = parsed_amount
    else:
        parsed_monthly = quantize_currency(monthly_rate)

    row = db.execute(select(CNAMNomenclature).where(CNAMNomenclature.BondType == key)).scalars().first()
    if row is None:
        row = CNAMNomenclature(BondType=key, CreatedDate=datetime.now())
        db.add(row)
    row.Category = resolved_category
    row.Amount = parsed_amount
    row.MonthlyRate = parsed_monthly
    if description is not None:
        row.Description = description
    row.IsActive = True if is_active is None else bool(is_active)
    row.UpdatedDate = datetime.now()
    return row


def seed_nomenclature(db: Session) -> int:
    for item in DEFAULT_NOMENCLATURE:
        upsert_tariff(
            db,
            bond_type=item["bondType"],
            amount=item["amount"],
            category=item["category"],
            monthly_rate=item["monthlyRate"],
            description=item["description"],
            is_active=True,
        )
    db.flush()
    return len(DEFAULT_NOMENCLATURE)


def serialize_tariff(row: CNAMNomenclature) -> dict:
    return {
        "nomenclatureID": row.NomenclatureID,
        "bondType": row.BondType,
        "category": row.Category,
        "amount": row.Amount,
        "monthlyRate": row.MonthlyRate,
        "description": row.Description,
        "isActive": bool(row.IsActive),
        "createdDate": row.CreatedDate,
        "updatedDate": row.UpdatedDate,
    }
