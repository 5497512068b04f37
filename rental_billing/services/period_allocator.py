"""Partition a rental's timeline into billing periods.

Every function here is pure: it takes already-loaded :class:`RentalTerms`,
:class:`BondCoverage` and :class:`BillingPeriod` values and returns new ones.
Persistence lives in :mod:`rental_billing.services.billing_store`.

Layout of a rental window ``[start, end]`` against a bond coverage window::

    start ........ bond.start ============ bond.end ........ end
      gap (before)        covered (CNAM + patient)     gap (after)

Open-ended rentals are tiled up to the end of the current month, or to the
bond's coverage end when that is later; the tail is recomputed once the
rental end date becomes known.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta
from typing import Iterable, Optional

from rental_billing.services.billing_errors import InvalidWindow, OverlappingBondWindow, PaymentPeriodMismatch
from rental_billing.services.billing_types import (
    GAP_AFTER_COVERAGE,
    GAP_BEFORE_COVERAGE,
    GAP_NO_BOND,
    GAP_OUTSIDE_COVERAGE,
    BillingPeriod,
    BondCoverage,
    PeriodPlan,
    RentalTerms,
)
from rental_billing.services.money import (
    ZERO,
    month_end,
    month_fraction,
    month_slices,
    prorate_monthly,
    quantize_currency,
    to_decimal,
)

ONE_DAY = timedelta(days=1)


def _validate_window(start: date, end: Optional[date], label: str) -> None:
    if end is not None and end < start:
        raise InvalidWindow(f"{label} endDate {end} precedes startDate {start}.")


def effective_window_end(rental: RentalTerms, bond: Optional[BondCoverage], as_of: date) -> date:
    if rental.end_date is not None:
        return rental.end_date
    horizon = month_end(max(as_of, rental.start_date))
    if bond is not None and bond.end_date > horizon:
        horizon = bond.end_date
    return horizon


def _gap_period(rental: RentalTerms, start: date, end: date, reason: str) -> BillingPeriod:
    amount = prorate_monthly(rental.monthly_rate, start, end)
    return BillingPeriod(
        start_date=start,
        end_date=end,
        expected_amount=amount,
        cnam_expected_amount=None,
        patient_expected_amount=amount,
        is_gap_period=True,
        gap_reason=reason,
        rental_id=rental.rental_id,
    )


def _covered_periods(
    rental: RentalTerms,
    bond: BondCoverage,
    start: date,
    end: date,
    split_months: bool,
) -> list[BillingPeriod]:
    bond_rate = to_decimal(bond.monthly_rate)
    patient_rate = max(ZERO, to_decimal(rental.monthly_rate) - bond_rate)
    windows = list(month_slices(start, end)) if split_months else [(start, end)]
    periods = []
    for window_start, window_end in windows:
        cnam_amount = prorate_monthly(bond_rate, window_start, window_end)
        patient_amount = prorate_monthly(patient_rate, window_start, window_end)
        periods.append(
            BillingPeriod(
                start_date=window_start,
                end_date=window_end,
                expected_amount=cnam_amount + patient_amount,
                cnam_expected_amount=cnam_amount,
                patient_expected_amount=patient_amount,
                is_gap_period=False,
                cnam_bond_id=bond.bond_id,
                rental_id=rental.rental_id,
            )
        )
    return periods


def _tile(
    rental: RentalTerms,
    bond: Optional[BondCoverage],
    start: date,
    end: date,
    split_months: bool,
) -> list[BillingPeriod]:
    if bond is None:
        return [_gap_period(rental, start, end, GAP_NO_BOND)]

    cover_start = max(start, bond.start_date)
    cover_end = min(end, bond.end_date)
    if cover_start > cover_end:
        reason = GAP_OUTSIDE_COVERAGE
        if start > rental.start_date:
            # tail recompute: keep the reason the segment had in the full tiling
            reason = GAP_AFTER_COVERAGE if bond.end_date < start else GAP_BEFORE_COVERAGE
        return [_gap_period(rental, start, end, reason)]

    periods = []
    if start < cover_start:
        periods.append(_gap_period(rental, start, cover_start - ONE_DAY, GAP_BEFORE_COVERAGE))
    periods.extend(_covered_periods(rental, bond, cover_start, cover_end, split_months))
    if cover_end < end:
        periods.append(_gap_period(rental, cover_end + ONE_DAY, end, GAP_AFTER_COVERAGE))
    return periods


def allocate_periods(
    rental: RentalTerms,
    bond: Optional[BondCoverage] = None,
    *,
    as_of: Optional[date] = None,
    split_months: bool = False,
) -> list[BillingPeriod]:
    """Tile the whole rental window with fresh (unsaved) periods."""
    as_of = as_of or date.today()
    _validate_window(rental.start_date, rental.end_date, "Rental")
    if bond is not None:
        _validate_window(bond.start_date, bond.end_date, "Bond")
    window_end = effective_window_end(rental, bond, as_of)
    return _tile(rental, bond, rental.start_date, window_end, split_months)


def _recompute_start(
    existing: list[BillingPeriod],
    effective_date: date,
    rental_start: date,
    window_end: date,
    as_of: date,
) -> date:
    start = max(min(effective_date, window_end + ONE_DAY), rental_start)
    paid_past_ends = [p.end_date for p in existing if p.has_payments and p.end_date < as_of]
    if paid_past_ends:
        start = max(start, max(paid_past_ends) + ONE_DAY)
    return start


def truncate_period(period: BillingPeriod, end: date) -> BillingPeriod:
    """Cut ``period`` short at ``end``, scaling its amounts by the months it keeps."""
    ratio = month_fraction(period.start_date, end) / month_fraction(period.start_date, period.end_date)

    def scaled(amount):
        return None if amount is None else quantize_currency(to_decimal(amount) * ratio)

    cnam = scaled(period.cnam_expected_amount)
    patient = scaled(period.patient_expected_amount)
    expected = cnam + patient if cnam is not None and patient is not None else scaled(period.expected_amount)
    return replace(
        period,
        end_date=end,
        expected_amount=expected,
        cnam_expected_amount=cnam,
        patient_expected_amount=patient,
    )


def _check_bond_ordering(bond: Optional[BondCoverage], frozen: Iterable[BillingPeriod]) -> None:
    if bond is None:
        return
    for period in frozen:
        if period.is_gap_period or period.cnam_bond_id == bond.bond_id:
            continue
        if bond.start_date <= period.end_date and bond.end_date >= period.start_date:
            raise OverlappingBondWindow(
                f"Bond window {bond.start_date}..{bond.end_date} overlaps billed period "
                f"{period.start_date}..{period.end_date} covered by bond {period.cnam_bond_id}."
            )


def _same_terms(draft: BillingPeriod, period: BillingPeriod) -> bool:
    return (
        draft.start_date == period.start_date
        and draft.end_date == period.end_date
        and draft.expected_amount == period.expected_amount
        and draft.cnam_expected_amount == period.cnam_expected_amount
        and draft.patient_expected_amount == period.patient_expected_amount
        and draft.is_gap_period == period.is_gap_period
        and draft.gap_reason == period.gap_reason
        and draft.cnam_bond_id == period.cnam_bond_id
    )


def recompute_periods(
    rental: RentalTerms,
    bond: Optional[BondCoverage],
    existing: Iterable[BillingPeriod],
    *,
    effective_date: date,
    as_of: Optional[date] = None,
    split_months: bool = False,
) -> PeriodPlan:
    """Rebuild periods from ``effective_date`` forward.

    Periods ending before the recompute start are frozen, and so is any
    period that already ended and carries payments. A period straddling the
    start is cut at the day before it and keeps its terms for the days it
    retains. Regenerated periods reuse the ids of the rows they replace so
    payment links survive; a paid period that no longer has a counterpart
    raises :class:`PaymentPeriodMismatch`.
    """
    as_of = as_of or date.today()
    _validate_window(rental.start_date, rental.end_date, "Rental")
    if bond is not None:
        _validate_window(bond.start_date, bond.end_date, "Bond")

    existing = sorted(existing, key=lambda period: period.start_date)
    window_end = effective_window_end(rental, bond, as_of)
    start = _recompute_start(existing, effective_date, rental.start_date, window_end, as_of)

    frozen = [p for p in existing if p.end_date < start]
    heads = [truncate_period(p, start - ONE_DAY) for p in existing if p.start_date < start <= p.end_date]
    candidates = [p for p in existing if p.start_date >= start]
    history = frozen + heads
    last_end = max((p.end_date for p in history), default=None)
    if last_end is not None and last_end > window_end:
        raise InvalidWindow(
            f"Rental window ends {window_end} before already billed period ending {last_end}."
        )
    _check_bond_ordering(bond, history)

    drafts = _tile(rental, bond, start, window_end, split_months) if start <= window_end else []

    remaining = {p.period_id: p for p in candidates}
    matched: list[Optional[BillingPeriod]] = [None] * len(drafts)
    for index, draft in enumerate(drafts):
        for period_id, period in remaining.items():
            if period.start_date == draft.start_date:
                matched[index] = period
                del remaining[period_id]
                break
    for index, draft in enumerate(drafts):
        if matched[index] is not None:
            continue
        overlapping = [
            p for p in remaining.values()
            if p.start_date <= draft.end_date and p.end_date >= draft.start_date
        ]
        if not overlapping:
            continue
        overlapping.sort(key=lambda p: (not p.has_payments, p.start_date))
        matched[index] = overlapping[0]
        del remaining[overlapping[0].period_id]

    orphans = [p for p in remaining.values() if p.has_payments]
    if orphans:
        windows = ", ".join(f"{p.start_date}..{p.end_date}" for p in orphans)
        raise PaymentPeriodMismatch(f"Recomputation would orphan payments on period(s) {windows}.")

    plan = PeriodPlan(kept=list(frozen), deleted_ids=[pid for pid in remaining if pid is not None])
    plan.updated.extend(heads)
    for draft, period in zip(drafts, matched):
        if period is None:
            plan.created.append(draft)
        elif _same_terms(draft, period):
            plan.kept.append(period)
        else:
            plan.updated.append(draft.with_identity(period.period_id, period.has_payments))
    return plan


def validate_tiling(periods: Iterable[BillingPeriod], start: date, end: date) -> list[str]:
    """Return human-readable tiling violations; an empty list means the periods tile ``[start, end]``."""
    problems = []
    ordered = sorted(periods, key=lambda period: period.start_date)
    if not ordered:
        return [f"no periods cover {start}..{end}"]
    if ordered[0].start_date != start:
        problems.append(f"first period starts {ordered[0].start_date}, expected {start}")
    if ordered[-1].end_date != end:
        problems.append(f"last period ends {ordered[-1].end_date}, expected {end}")
    for period in ordered:
        if period.end_date < period.start_date:
            problems.append(f"period {period.start_date}..{period.end_date} is inverted")
        if (
            period.cnam_expected_amount is not None
            and period.patient_expected_amount is not None
            and period.cnam_expected_amount + period.patient_expected_amount != period.expected_amount
        ):
            problems.append(f"period {period.start_date}..{period.end_date} split does not add up")
    for previous, current in zip(ordered, ordered[1:]):
        if current.start_date <= previous.end_date:
            problems.append(f"periods overlap at {current.start_date}")
        elif current.start_date != previous.end_date + ONE_DAY:
            problems.append(f"uncovered days {previous.end_date + ONE_DAY}..{current.start_date - ONE_DAY}")
    return problems
