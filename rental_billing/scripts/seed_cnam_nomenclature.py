#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from rental_billing.db.base import Base
from rental_billing.services.bond_catalog import DEFAULT_NOMENCLATURE, seed_nomenclature


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Seed or overwrite the CNAM nomenclature (one tariff per bond type).",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_BILLING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_BILLING_DB_URL env var.",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing billing tables before seeding.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_BILLING_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    if args.create_tables:
        Base.metadata.create_all(engine)

    with Session(engine) as db:
        count = seed_nomenclature(db)
        db.commit()

    for item in DEFAULT_NOMENCLATURE:
        print(f"  - {item['bondType']} {item['category']} amount={item['amount']} monthly={item['monthlyRate']}")
    print(f"OK seeded {count} CNAM tariffs")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
