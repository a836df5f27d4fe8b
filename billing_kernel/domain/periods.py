"""
Billing periods and period keys.

Responsibility:
    Parses period keys and turns them into concrete date ranges.

    - ``YYYY-MM``  monthly period.  With billing day ``d`` (1-28) the period
      runs from day ``d`` of that month to the day before day ``d`` of the
      next month.  With ``d == 1`` that is the calendar month.
    - ``YYYY-Www`` ISO week (Monday to Sunday).  Used by utility runs only.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Period keys are canonical: ``2024-3`` and ``2024-W1`` are rejected,
      so a key string is a stable idempotency component.
    - ``BillingPeriod.end`` is inclusive.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from billing_kernel.exceptions import InvalidDateRangeError, InvalidPeriodKeyError

_MONTH_KEY = re.compile(r"^(\d{4})-(\d{2})$")
_WEEK_KEY = re.compile(r"^(\d{4})-W(\d{2})$")

MIN_BILLING_DAY = 1
MAX_BILLING_DAY = 28


class PeriodKind(str, Enum):
    MONTH = "month"
    WEEK = "week"


@dataclass(frozen=True)
class BillingPeriod:
    """A concrete billing window ``[start, end]`` identified by ``key``."""

    key: str
    kind: PeriodKind
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise InvalidDateRangeError(self.start, self.end, f"period {self.key}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, start: date, end: date | None) -> bool:
        return start <= self.end and (end is None or end >= self.start)

    @property
    def yyyymm(self) -> str:
        """Year-month of the period start, used in document numbers."""
        return f"{self.start.year:04d}{self.start.month:02d}"


def days_in_month(day: date) -> int:
    return calendar.monthrange(day.year, day.month)[1]


def _add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _validate_billing_day(billing_day: int) -> None:
    if not MIN_BILLING_DAY <= billing_day <= MAX_BILLING_DAY:
        raise InvalidPeriodKeyError(
            str(billing_day),
            f"billing day must be between {MIN_BILLING_DAY} and {MAX_BILLING_DAY}",
        )


def parse_period_key(period_key: str) -> tuple[PeriodKind, int, int]:
    """Split a key into ``(kind, year, month_or_week)``.

    Raises:
        InvalidPeriodKeyError: If the key is malformed or out of range.
    """
    if not isinstance(period_key, str):
        raise InvalidPeriodKeyError(str(period_key), "period key must be a string")

    match = _MONTH_KEY.match(period_key)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise InvalidPeriodKeyError(period_key, "month must be 01-12")
        return PeriodKind.MONTH, year, month

    match = _WEEK_KEY.match(period_key)
    if match:
        year, week = int(match.group(1)), int(match.group(2))
        # Dec 28 is always in the last ISO week of its year
        weeks_in_year = date(year, 12, 28).isocalendar()[1]
        if not 1 <= week <= weeks_in_year:
            raise InvalidPeriodKeyError(
                period_key, f"ISO week must be 01-{weeks_in_year:02d}"
            )
        return PeriodKind.WEEK, year, week

    raise InvalidPeriodKeyError(period_key, "expected YYYY-MM or YYYY-Www")


def resolve_period(period_key: str, billing_day: int = 1) -> BillingPeriod:
    """Turn a period key into a concrete ``BillingPeriod``.

    ``billing_day`` only affects monthly keys.
    """
    kind, year, number = parse_period_key(period_key)

    if kind is PeriodKind.WEEK:
        start = date.fromisocalendar(year, number, 1)
        return BillingPeriod(period_key, kind, start, start + timedelta(days=6))

    _validate_billing_day(billing_day)
    next_year, next_month = _add_months(year, number, 1)
    start = date(year, number, billing_day)
    end = date(next_year, next_month, billing_day) - timedelta(days=1)
    return BillingPeriod(period_key, kind, start, end)


def shift_period_key(period_key: str, delta: int) -> str:
    """Move a key ``delta`` months (or weeks) forward; negative moves back."""
    kind, year, number = parse_period_key(period_key)
    if kind is PeriodKind.MONTH:
        y, m = _add_months(year, number, delta)
        return month_key(y, m)
    monday = date.fromisocalendar(year, number, 1) + timedelta(weeks=delta)
    return week_key_for(monday)


def previous_period_key(period_key: str) -> str:
    return shift_period_key(period_key, -1)


def next_period_key(period_key: str) -> str:
    return shift_period_key(period_key, 1)


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_key_for(day: date, billing_day: int = 1) -> str:
    """Key of the monthly period containing ``day``."""
    _validate_billing_day(billing_day)
    if day.day >= billing_day:
        return month_key(day.year, day.month)
    y, m = _add_months(day.year, day.month, -1)
    return month_key(y, m)


def week_key_for(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"
