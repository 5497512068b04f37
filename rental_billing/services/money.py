"""Exact money arithmetic and calendar-month helpers used by the billing engine."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator

CURRENCY_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps 0.1 as 0.1 instead of the binary expansion
        return Decimal(str(value))
    return Decimal(value)


def quantize_currency(value) -> Decimal:
    return to_decimal(value).quantize(CURRENCY_PLACES, rounding=ROUND_HALF_UP)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    return day.replace(day=days_in_month(day.year, day.month))


def add_months(day: date, months: int) -> date:
    year = day.year + (day.month - 1 + months) // 12
    month = (day.month - 1 + months) % 12 + 1
    return date(year, month, min(day.day, days_in_month(year, month)))


def inclusive_days(start: date, end: date) -> int:
    return (end - start).days + 1


def month_slices(start: date, end: date) -> Iterator[tuple[date, date]]:
    """Yield calendar-month slices of ``[start, end]``, clipped to the window."""
    cursor = start
    while cursor <= end:
        slice_end = min(month_end(cursor), end)
        yield cursor, slice_end
        cursor = slice_end + timedelta(days=1)


def month_fraction(start: date, end: date) -> Decimal:
    """Length of ``[start, end]`` in months; each slice counts days covered / days in its month."""
    total = Decimal(0)
    for slice_start, slice_end in month_slices(start, end):
        total += Decimal(inclusive_days(slice_start, slice_end)) / days_in_month(slice_start.year, slice_start.month)
    return total


def prorate_month_slice(rate, start: date, end: date) -> Decimal:
    """Share of a monthly ``rate`` for a slice lying inside one calendar month."""
    rate = to_decimal(rate)
    total_days = days_in_month(start.year, start.month)
    covered = inclusive_days(start, end)
    if covered >= total_days:
        return quantize_currency(rate)
    return quantize_currency(rate * covered / total_days)


def prorate_monthly(rate, start: date, end: date) -> Decimal:
    """Amount due for ``[start, end]`` at a monthly ``rate``.

    Each calendar month is prorated as ``days covered / days in month`` and
    rounded half-up to the cent before summing, so a full month always
    contributes exactly ``rate``.
    """
    total = ZERO
    for slice_start, slice_end in month_slices(start, end):
        total += prorate_month_slice(rate, slice_start, slice_end)
    return total
