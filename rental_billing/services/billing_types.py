from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Optional

BOND_TYPES = {"CONCENTRATEUR_OXYGENE", "VNI", "CPAP", "MASQUE", "AUTRE"}
BOND_CATEGORIES = {"LOCATION", "ACHAT"}
BOND_STATUS_TRANSITIONS = {
    "PENDING": {"APPROUVE", "REJECTED"},
    "APPROUVE": {"EXPIRED"},
    "EXPIRED": set(),
    "REJECTED": set(),
}
ACTIVE_BOND_STATUSES = {"PENDING", "APPROUVE"}

RENTAL_STATES = {"ACTIVE", "PAUSED", "COMPLETED", "CANCELLED"}

PAYMENT_METHODS = {"CNAM", "CASH", "CHEQUE", "TRAITE", "MANDAT", "VIREMENT"}
COMPLETED_PAYMENT_STATUSES = {"COMPLETED", "PAID"}

PERIOD_UNDERPAID = "UNDERPAID"
PERIOD_SETTLED = "SETTLED"
PERIOD_PENDING = "PENDING"
PERIOD_GAP_UNRESOLVED = "GAP_UNRESOLVED"

NOTIFY_RENTAL_EXPIRATION = "RENTAL_EXPIRATION"
NOTIFY_CNAM_RENEWAL = "CNAM_RENEWAL"
NOTIFY_PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
NOTIFY_DEVICE_RELEASED = "DEVICE_RELEASED"
NOTIFY_MAINTENANCE = "MAINTENANCE"
OPEN_NOTIFICATION_STATUSES = {"PENDING", "READ"}

GAP_NO_BOND = "no active bond"
GAP_BEFORE_COVERAGE = "before bond coverage"
GAP_AFTER_COVERAGE = "after bond coverage"
GAP_OUTSIDE_COVERAGE = "bond coverage outside rental window"


@dataclass(frozen=True)
class Tariff:
    bond_type: str
    category: str
    amount: Decimal
    monthly_rate: Decimal
    description: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class RentalTerms:
    rental_id: Optional[int]
    start_date: date
    end_date: Optional[date]
    monthly_rate: Decimal


@dataclass(frozen=True)
class BondCoverage:
    bond_id: Optional[int]
    start_date: date
    end_date: date
    monthly_rate: Decimal
    bond_number: Optional[str] = None
    category: str = "LOCATION"


@dataclass(frozen=True)
class BillingPeriod:
    start_date: date
    end_date: date
    expected_amount: Decimal
    cnam_expected_amount: Optional[Decimal] = None
    patient_expected_amount: Optional[Decimal] = None
    is_gap_period: bool = False
    gap_reason: Optional[str] = None
    cnam_bond_id: Optional[int] = None
    period_id: Optional[int] = None
    rental_id: Optional[int] = None
    has_payments: bool = False
    gap_resolved: bool = False

    def with_identity(self, period_id: Optional[int], has_payments: bool = False) -> "BillingPeriod":
        return replace(self, period_id=period_id, has_payments=has_payments)


@dataclass(frozen=True)
class PaymentRecord:
    amount: Decimal
    payment_date: date
    method: str
    status: str
    period_id: Optional[int] = None
    payment_id: Optional[int] = None
    period_start_date: Optional[date] = None
    period_end_date: Optional[date] = None


@dataclass
class PeriodPlan:
    """Outcome of a recomputation: what to keep, rewrite, insert and drop."""

    kept: list[BillingPeriod] = field(default_factory=list)
    updated: list[BillingPeriod] = field(default_factory=list)
    created: list[BillingPeriod] = field(default_factory=list)
    deleted_ids: list[int] = field(default_factory=list)

    @property
    def periods(self) -> list[BillingPeriod]:
        rows = self.kept + self.updated + self.created
        return sorted(rows, key=lambda period: period.start_date)


@dataclass(frozen=True)
class PeriodReconciliation:
    period_id: Optional[int]
    start_date: date
    end_date: date
    expected_amount: Decimal
    paid_amount: Decimal
    cnam_paid: Decimal
    patient_paid: Decimal
    balance: Decimal
    status: str
