"""Match recorded payments against the amounts each period expects."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from rental_billing.services.billing_errors import PaymentPeriodMismatch
from rental_billing.services.billing_types import (
    COMPLETED_PAYMENT_STATUSES,
    PERIOD_GAP_UNRESOLVED,
    PERIOD_PENDING,
    PERIOD_SETTLED,
    PERIOD_UNDERPAID,
    BillingPeriod,
    PaymentRecord,
    PeriodReconciliation,
)
from rental_billing.services.money import ZERO, to_decimal


def is_completed(payment: PaymentRecord) -> bool:
    return (payment.status or "").upper() in COMPLETED_PAYMENT_STATUSES


def paid_amount(payments: Iterable[PaymentRecord]) -> Decimal:
    return sum((to_decimal(p.amount) for p in payments if is_completed(p)), ZERO)


def check_payment_window(period: BillingPeriod, payment: PaymentRecord) -> None:
    if payment.period_id is not None and period.period_id is not None and payment.period_id != period.period_id:
        raise PaymentPeriodMismatch(
            f"Payment {payment.payment_id} belongs to period {payment.period_id}, not {period.period_id}."
        )
    sub_start = payment.period_start_date
    sub_end = payment.period_end_date
    if sub_start is None and sub_end is None:
        return
    sub_start = sub_start or period.start_date
    sub_end = sub_end or period.end_date
    if sub_end < sub_start or sub_start < period.start_date or sub_end > period.end_date:
        raise PaymentPeriodMismatch(
            f"Payment window {sub_start}..{sub_end} falls outside period "
            f"{period.start_date}..{period.end_date}."
        )


def classify_period(
    period: BillingPeriod,
    payments: Iterable[PaymentRecord],
    *,
    today: Optional[date] = None,
) -> str:
    """Classify settlement state. Never raises; missing data degrades to PENDING."""
    today = today or date.today()
    if period.is_gap_period and not period.gap_resolved:
        return PERIOD_GAP_UNRESOLVED
    if period.expected_amount is None:
        return PERIOD_PENDING
    if paid_amount(payments) >= to_decimal(period.expected_amount):
        return PERIOD_SETTLED
    if period.end_date is None or period.end_date >= today:
        return PERIOD_PENDING
    return PERIOD_UNDERPAID


def reconcile_period(
    period: BillingPeriod,
    payments: Iterable[PaymentRecord],
    *,
    today: Optional[date] = None,
) -> PeriodReconciliation:
    payments = list(payments)
    for payment in payments:
        check_payment_window(period, payment)

    completed = [p for p in payments if is_completed(p)]
    cnam_paid = paid_amount(p for p in completed if p.method == "CNAM")
    total_paid = paid_amount(completed)
    expected = to_decimal(period.expected_amount)
    return PeriodReconciliation(
        period_id=period.period_id,
        start_date=period.start_date,
        end_date=period.end_date,
        expected_amount=expected,
        paid_amount=total_paid,
        cnam_paid=cnam_paid,
        patient_paid=total_paid - cnam_paid,
        balance=expected - total_paid,
        status=classify_period(period, payments, today=today),
    )


def reconcile_rental(
    periods: Iterable[BillingPeriod],
    payments_by_period: dict,
    *,
    today: Optional[date] = None,
) -> dict:
    rows = [
        reconcile_period(period, payments_by_period.get(period.period_id, []), today=today)
        for period in sorted(periods, key=lambda p: p.start_date)
    ]
    counts: dict[str, int] = {}
    for row in rows:
        counts[row.status] = counts.get(row.status, 0) + 1
    return {
        "expectedAmount": sum((row.expected_amount for row in rows), ZERO),
        "paidAmount": sum((row.paid_amount for row in rows), ZERO),
        "balance": sum((row.balance for row in rows), ZERO),
        "statusCounts": counts,
        "periods": rows,
    }


def serialize_reconciliation(row: PeriodReconciliation) -> dict:
    return {
        "periodID": row.period_id,
        "startDate": row.start_date,
        "endDate": row.end_date,
        "expectedAmount": row.expected_amount,
        "paidAmount": row.paid_amount,
        "cnamPaid": row.cnam_paid,
        "patientPaid": row.patient_paid,
        "balance": row.balance,
        "status": row.status,
    }
