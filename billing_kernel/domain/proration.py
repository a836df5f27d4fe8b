"""
Proration calculators.

Responsibility:
    Convert a full-period charge amount into the amount due for the part of
    a billing period during which the charge (and the lease) was active.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.

Invariants enforced:
    - Full containment: a charge active for the whole period prorates to
      exactly its amount under both strategies.
    - Zero overlap returns ``0.00``, never an error.
    - No result exceeds the input amount.
    - Rounding happens once, at the end (banker's rounding to cents).

Strategies:
    ActualDaysInMonth   amount * overlap_days / days_in_month(period_start)
    ThirtyDayMonth      amount * overlap_days / 30, capped at amount

Failure modes:
    - InvalidAmountError for a negative amount.
    - InvalidDateRangeError when an end date precedes its start date.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal

from billing_kernel.domain.money import ZERO, round_money, to_decimal
from billing_kernel.domain.periods import days_in_month
from billing_kernel.domain.types import ChargeDefinition, ProrationMethod
from billing_kernel.exceptions import InvalidAmountError, InvalidDateRangeError


def overlap_days(
    period_start: date,
    period_end: date,
    active_start: date | None,
    active_end: date | None,
) -> int:
    """Inclusive day count of ``[active_start, active_end]`` within the period.

    ``None`` bounds are open-ended.
    """
    start = period_start if active_start is None else max(period_start, active_start)
    end = period_end if active_end is None else min(period_end, active_end)
    if end < start:
        return 0
    return (end - start).days + 1


class ProrationCalculator(ABC):
    """Strategy interface shared by both proration methods."""

    method: ProrationMethod

    @abstractmethod
    def _fraction_denominator(self, period_start: date, period_end: date) -> Decimal:
        ...

    def prorate_amount(
        self,
        amount: Decimal,
        period_start: date,
        period_end: date,
        active_start: date | None = None,
        active_end: date | None = None,
    ) -> Decimal:
        """Prorate ``amount`` for the active part of ``[period_start, period_end]``."""
        amount = to_decimal(amount)
        if amount < 0:
            raise InvalidAmountError(amount, "Full amount cannot be negative")
        if period_end < period_start:
            raise InvalidDateRangeError(period_start, period_end, "billing period")
        if active_start is not None and active_end is not None and active_end < active_start:
            raise InvalidDateRangeError(active_start, active_end, "active range")

        days = overlap_days(period_start, period_end, active_start, active_end)
        if days == 0:
            return ZERO

        period_days = (period_end - period_start).days + 1
        if days >= period_days:
            return round_money(amount)

        raw = amount * Decimal(days) / self._fraction_denominator(period_start, period_end)
        return round_money(min(raw, amount))

    def prorate(
        self,
        charge: ChargeDefinition,
        period_start: date,
        period_end: date,
        lease_start: date,
        lease_end: date | None,
    ) -> Decimal:
        """Prorate a charge for the days both it and the lease are active."""
        active_start, active_end = charge.active_window(lease_start, lease_end)
        if active_end is not None and active_end < active_start:
            return ZERO
        return self.prorate_amount(
            charge.amount, period_start, period_end, active_start, active_end
        )


class ActualDaysInMonthCalculator(ProrationCalculator):
    """Divides by the real length of the month the period starts in."""

    method = ProrationMethod.ACTUAL_DAYS_IN_MONTH

    def _fraction_denominator(self, period_start: date, period_end: date) -> Decimal:
        return Decimal(days_in_month(period_start))


class ThirtyDayMonthCalculator(ProrationCalculator):
    """Treats every month as 30 days."""

    method = ProrationMethod.THIRTY_DAY_MONTH

    def _fraction_denominator(self, period_start: date, period_end: date) -> Decimal:
        return Decimal(30)


_CALCULATORS: dict[ProrationMethod, ProrationCalculator] = {
    ProrationMethod.ACTUAL_DAYS_IN_MONTH: ActualDaysInMonthCalculator(),
    ProrationMethod.THIRTY_DAY_MONTH: ThirtyDayMonthCalculator(),
}


def get_calculator(method: ProrationMethod | str) -> ProrationCalculator:
    """Return the calculator for ``method`` (enum or its string value)."""
    return _CALCULATORS[ProrationMethod(method)]
