#!/usr/bin/env python3
"""Database overview and integrity checks for the rental billing tables."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, select, text
from sqlalchemy.engine import Engine

from rental_billing.models.billing_models import AuditLog, CNAMBond, RentalPeriod


EXPECTED_TABLES = [
    "MedicalDevices",
    "Rentals",
    "CNAMNomenclature",
    "CNAMBonds",
    "RentalPeriods",
    "Payments",
    "Diagnostics",
    "RepairLogs",
    "Notifications",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Rentals": ["RentalID", "RentalCode", "PatientID", "CompanyID", "StartDate", "EndDate", "MonthlyRate", "Status"],
    "CNAMBonds": ["BondID", "BondNumber", "BondType", "Category", "Amount", "MonthlyRate", "Status", "StartDate", "EndDate", "RentalID"],
    "RentalPeriods": [
        "PeriodID",
        "RentalID",
        "CNAMBondID",
        "StartDate",
        "EndDate",
        "ExpectedAmount",
        "CNAMExpectedAmount",
        "PatientExpectedAmount",
        "IsGapPeriod",
        "GapReason",
        "GapResolvedAt",
    ],
    "Payments": ["PaymentID", "RentalPeriodID", "Amount", "PaymentDate", "PeriodStartDate", "PeriodEndDate", "Method", "Status"],
    "Notifications": ["NotificationID", "Type", "Status", "SourceEntityType", "SourceEntityID", "DueDate"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

INTEGRITY_QUERIES: list[tuple[str, list[str], str]] = [
    (
        "cnambonds:duplicate_bond_number",
        ["CNAMBonds"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT BondNumber
            FROM CNAMBonds
            GROUP BY BondNumber
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    (
        "rentalperiods:overlapping_periods",
        ["RentalPeriods"],
        """
        SELECT COUNT(*)
        FROM RentalPeriods a
        JOIN RentalPeriods b
          ON a.RentalID = b.RentalID
         AND a.PeriodID < b.PeriodID
         AND a.StartDate <= b.EndDate
         AND b.StartDate <= a.EndDate
        """,
    ),
    (
        "rentalperiods:split_mismatch",
        ["RentalPeriods"],
        """
        SELECT COUNT(*)
        FROM RentalPeriods
        WHERE CNAMExpectedAmount IS NOT NULL
          AND PatientExpectedAmount IS NOT NULL
          AND ABS(CNAMExpectedAmount + PatientExpectedAmount - ExpectedAmount) >= 0.005
        """,
    ),
    (
        "rentalperiods:gap_without_reason",
        ["RentalPeriods"],
        """
        SELECT COUNT(*)
        FROM RentalPeriods
        WHERE IsGapPeriod = 1 AND (GapReason IS NULL OR GapReason = '')
        """,
    ),
    (
        "payments:outside_period_window",
        ["Payments", "RentalPeriods"],
        """
        SELECT COUNT(*)
        FROM Payments p
        JOIN RentalPeriods rp ON rp.PeriodID = p.RentalPeriodID
        WHERE (p.PeriodStartDate IS NOT NULL AND p.PeriodStartDate < rp.StartDate)
           OR (p.PeriodEndDate IS NOT NULL AND p.PeriodEndDate > rp.EndDate)
           OR (p.PeriodStartDate IS NOT NULL AND p.PeriodEndDate IS NOT NULL AND p.PeriodEndDate < p.PeriodStartDate)
        """,
    ),
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for name, tables, sql in INTEGRITY_QUERIES:
        if not all(_table_exists(engine, table) for table in tables):
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    samples = [
        (
            "CNAMBonds",
            select(CNAMBond.BondID, CNAMBond.BondNumber, CNAMBond.BondType, CNAMBond.Status, CNAMBond.EndDate)
            .order_by(CNAMBond.BondID.desc()),
        ),
        (
            "RentalPeriods",
            select(
                RentalPeriod.PeriodID,
                RentalPeriod.RentalID,
                RentalPeriod.StartDate,
                RentalPeriod.EndDate,
                RentalPeriod.ExpectedAmount,
                RentalPeriod.IsGapPeriod,
            ).order_by(RentalPeriod.PeriodID.desc()),
        ),
        (
            "AuditLogs",
            select(AuditLog.AuditID, AuditLog.EntityType, AuditLog.Action, AuditLog.UserID, AuditLog.CreatedAt)
            .order_by(AuditLog.AuditID.desc()),
        ),
    ]
    with engine.connect() as conn:
        for table, stmt in samples:
            if not _table_exists(engine, table):
                continue
            print(f"{table} (recent):")
            for row in conn.execute(stmt.limit(sample_size)).all():
                print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental billing DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_BILLING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_BILLING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = _run_integrity_checks(engine)
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
