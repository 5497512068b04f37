"""Relational adapter between the SQLAlchemy tables and the pure billing core.

The allocator, reconciliation and sweep only see the value types of
:mod:`rental_billing.services.billing_types`; this module loads them from
and writes them back to the session.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Protocol

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session, selectinload

from rental_billing.models.billing_models import (
    CNAMBond,
    Diagnostic,
    MedicalDevice,
    Notification,
    Payment,
    Rental,
    RentalPeriod,
    RepairLog,
)
from rental_billing.services.billing_types import (
    ACTIVE_BOND_STATUSES,
    OPEN_NOTIFICATION_STATUSES,
    BillingPeriod,
    BondCoverage,
    PaymentRecord,
    PeriodPlan,
    RentalTerms,
)
from rental_billing.services.money import quantize_currency, to_decimal
from rental_billing.services.reconciliation import check_payment_window


class NotificationLookup(Protocol):
    def exists_open_notification(self, entity_type: str, entity_id: int, notification_type: str) -> bool:
        ...


def to_rental_terms(rental: Rental) -> RentalTerms:
    return RentalTerms(
        rental_id=rental.RentalID,
        start_date=rental.StartDate,
        end_date=rental.EndDate,
        monthly_rate=quantize_currency(rental.MonthlyRate),
    )


def to_bond_coverage(bond: CNAMBond) -> BondCoverage:
    return BondCoverage(
        bond_id=bond.BondID,
        bond_number=bond.BondNumber,
        category=bond.Category,
        start_date=bond.StartDate,
        end_date=bond.EndDate,
        monthly_rate=quantize_currency(bond.MonthlyRate),
    )


def _optional_amount(value):
    return None if value is None else quantize_currency(value)


def to_billing_period(row: RentalPeriod, has_payments: bool = False) -> BillingPeriod:
    return BillingPeriod(
        period_id=row.PeriodID,
        rental_id=row.RentalID,
        start_date=row.StartDate,
        end_date=row.EndDate,
        expected_amount=quantize_currency(row.ExpectedAmount),
        cnam_expected_amount=_optional_amount(row.CNAMExpectedAmount),
        patient_expected_amount=_optional_amount(row.PatientExpectedAmount),
        is_gap_period=bool(row.IsGapPeriod),
        gap_reason=row.GapReason,
        cnam_bond_id=row.CNAMBondID,
        has_payments=has_payments,
        gap_resolved=row.GapResolvedAt is not None,
    )


def to_payment_record(row: Payment) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row.PaymentID,
        period_id=row.RentalPeriodID,
        amount=to_decimal(row.Amount),
        payment_date=row.PaymentDate,
        method=row.Method,
        status=row.Status,
        period_start_date=row.PeriodStartDate,
        period_end_date=row.PeriodEndDate,
    )


def _write_period(row: RentalPeriod, period: BillingPeriod) -> None:
    terms_changed = (
        row.StartDate != period.start_date
        or row.EndDate != period.end_date
        or bool(row.IsGapPeriod) != period.is_gap_period
    )
    row.StartDate = period.start_date
    row.EndDate = period.end_date
    row.ExpectedAmount = period.expected_amount
    row.CNAMExpectedAmount = period.cnam_expected_amount
    row.PatientExpectedAmount = period.patient_expected_amount
    row.IsGapPeriod = period.is_gap_period
    row.GapReason = period.gap_reason
    row.CNAMBondID = period.cnam_bond_id
    if terms_changed:
        row.GapResolvedAt = None
        row.GapResolutionNote = None
    row.UpdatedDate = datetime.now()


class SqlBillingStore:
    def __init__(self, db: Session):
        self.db = db

    def savepoint(self):
        return self.db.begin_nested()

    def lock_rental(self, rental_id: int) -> Optional[Rental]:
        stmt = select(Rental).where(Rental.RentalID == rental_id).with_for_update()
        return self.db.execute(stmt).scalars().first()

    def active_bond(self, rental_id: int) -> Optional[CNAMBond]:
        stmt = (
            select(CNAMBond)
            .where(CNAMBond.RentalID == rental_id)
            .where(CNAMBond.Category == "LOCATION")
            .where(CNAMBond.Status.in_(ACTIVE_BOND_STATUSES))
            .where(CNAMBond.StartDate.is_not(None))
            .where(CNAMBond.EndDate.is_not(None))
            .order_by(CNAMBond.StartDate.desc(), CNAMBond.BondID.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def period_rows(self, rental_id: int) -> list[RentalPeriod]:
        stmt = (
            select(RentalPeriod)
            .options(selectinload(RentalPeriod.Payments))
            .where(RentalPeriod.RentalID == rental_id)
            .order_by(RentalPeriod.StartDate.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def load_periods(self, rental_id: int) -> list[BillingPeriod]:
        return [to_billing_period(row, bool(row.Payments)) for row in self.period_rows(rental_id)]

    def payments_by_period(self, rental_id: int) -> dict[int, list[PaymentRecord]]:
        return {
            row.PeriodID: [to_payment_record(payment) for payment in row.Payments]
            for row in self.period_rows(rental_id)
        }

    def apply_plan(self, rental_id: int, plan: PeriodPlan) -> list[RentalPeriod]:
        """Persist ``plan``; rewritten periods keep their id and payment links."""
        for period_id in plan.deleted_ids:
            row = self.db.get(RentalPeriod, period_id)
            if row is not None:
                self.db.delete(row)

        for period in plan.updated:
            row = self.db.get(RentalPeriod, period.period_id)
            _write_period(row, period)
            reshaped = to_billing_period(row)
            for payment in row.Payments:
                check_payment_window(reshaped, to_payment_record(payment))

        for period in plan.created:
            row = RentalPeriod(RentalID=rental_id, CreatedDate=datetime.now())
            _write_period(row, period)
            self.db.add(row)

        self.db.flush()
        return self.period_rows(rental_id)

    def exists_open_notification(self, entity_type: str, entity_id: int, notification_type: str) -> bool:
        stmt = select(
            exists()
            .where(Notification.SourceEntityType == entity_type)
            .where(Notification.SourceEntityID == entity_id)
            .where(Notification.Type == notification_type)
            .where(Notification.Status.in_(OPEN_NOTIFICATION_STATUSES))
        )
        return bool(self.db.execute(stmt).scalar())

    def create_notification(self, **fields) -> Notification:
        notification = Notification(Status="PENDING", CreatedAt=datetime.now(), **fields)
        self.db.add(notification)
        self.db.flush()
        return notification

    def expiring_rentals(self, today: date, until: date) -> list[Rental]:
        stmt = (
            select(Rental)
            .options(selectinload(Rental.MedicalDevice))
            .where(Rental.Status == "ACTIVE")
            .where(Rental.EndDate.is_not(None))
            .where(Rental.EndDate >= today)
            .where(Rental.EndDate <= until)
            .order_by(Rental.RentalID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def expiring_bonds(self, today: date, until: date) -> list[CNAMBond]:
        stmt = (
            select(CNAMBond)
            .where(CNAMBond.Status == "APPROUVE")
            .where(CNAMBond.EndDate.is_not(None))
            .where(CNAMBond.EndDate >= today)
            .where(CNAMBond.EndDate <= until)
            .order_by(CNAMBond.BondID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def lapsed_bonds(self, today: date) -> list[CNAMBond]:
        stmt = (
            select(CNAMBond)
            .where(CNAMBond.Status == "APPROUVE")
            .where(CNAMBond.EndDate.is_not(None))
            .where(CNAMBond.EndDate < today)
            .order_by(CNAMBond.BondID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def expire_bond(self, bond: CNAMBond) -> None:
        bond.Status = "EXPIRED"
        bond.UpdatedDate = datetime.now()
        self.db.flush()

    def past_periods_of_active_rentals(self, today: date) -> list[RentalPeriod]:
        stmt = (
            select(RentalPeriod)
            .options(selectinload(RentalPeriod.Payments), selectinload(RentalPeriod.Rental))
            .join(Rental, Rental.RentalID == RentalPeriod.RentalID)
            .where(Rental.Status == "ACTIVE")
            .where(RentalPeriod.EndDate < today)
            .order_by(RentalPeriod.PeriodID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def expired_diagnostics(self, today: date) -> list[Diagnostic]:
        stmt = (
            select(Diagnostic)
            .options(selectinload(Diagnostic.MedicalDevice))
            .where(Diagnostic.Status == "PENDING")
            .where(Diagnostic.FollowUpDate.is_not(None))
            .where(Diagnostic.FollowUpDate < today)
            .where(Diagnostic.MedicalDeviceID.is_not(None))
            .order_by(Diagnostic.DiagnosticID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def release_device(self, device: MedicalDevice) -> bool:
        if device is None or device.Status != "RESERVED":
            return False
        device.Status = "ACTIVE"
        device.UpdatedDate = datetime.now()
        self.db.flush()
        return True

    def devices_on_active_rentals(self) -> list[MedicalDevice]:
        stmt = (
            select(MedicalDevice)
            .options(selectinload(MedicalDevice.Rentals))
            .where(MedicalDevice.Status == "ACTIVE")
            .where(MedicalDevice.Rentals.any(Rental.Status == "ACTIVE"))
            .order_by(MedicalDevice.MedicalDeviceID.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def last_repair_date(self, device_id: int) -> Optional[date]:
        stmt = select(func.max(RepairLog.RepairDate)).where(RepairLog.MedicalDeviceID == device_id)
        return self.db.execute(stmt).scalar()
