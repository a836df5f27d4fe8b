"""
Charge resolvers.

Responsibility:
    Given a lease, its effective billing settings, its charge definitions
    and the invoice's billing period, return the invoice line candidates
    due for that period.

Architecture position:
    Kernel > Domain -- pure, deterministic, zero I/O.  Resolvers never write
    to storage; the generation service persists what they return.

Timing:
    Advance  -- the invoice for period P bills P.
    Arrears  -- the invoice for period P bills P-1.
    Timing only decides WHICH period a line covers; the proration math is
    identical either way.  Recurring charges follow the lease's rent timing
    so that one invoice always covers one window.

    Utility statements are always billed in arrears: a statement becomes
    billable once its own period has ended.  Its amount is the statement
    amount, a flat meter rate, or consumption spread over rate slabs.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence

from billing_kernel.domain.money import ZERO, round_money
from billing_kernel.domain.periods import (
    BillingPeriod,
    PeriodKind,
    previous_period_key,
    resolve_period,
)
from billing_kernel.domain.proration import get_calculator, overlap_days
from billing_kernel.domain.types import (
    BillingSettings,
    ChargeDefinition,
    ChargeKind,
    InvoiceLineDraft,
    LeaseTerms,
    RateSlab,
    RentTiming,
    RunType,
    SlabCharge,
    UtilityBillingMode,
    UtilityReading,
)
from billing_kernel.exceptions import InvalidAmountError, InvalidPeriodKeyError

PRORATED_SUFFIX = " (Prorated)"
UNIT_PRICE_PLACES = Decimal("0.0001")


def covered_period(settings: BillingSettings, period: BillingPeriod) -> BillingPeriod:
    """The window a rent or recurring line on this invoice actually covers."""
    if settings.rent_timing is RentTiming.ARREARS:
        return resolve_period(previous_period_key(period.key), settings.billing_day)
    return period


def _describe(base: str, start: date, end: date, prorated: bool) -> str:
    text = f"{base} ({start.isoformat()} to {end.isoformat()})"
    return text + PRORATED_SUFFIX if prorated else text


class _PeriodicChargeResolver:
    """Shared logic for rent and recurring charges."""

    kind: ChargeKind

    def resolve(
        self,
        lease: LeaseTerms,
        settings: BillingSettings,
        charges: Sequence[ChargeDefinition],
        period: BillingPeriod,
        as_of: date | None = None,
    ) -> tuple[InvoiceLineDraft, ...]:
        if period.kind is not PeriodKind.MONTH:
            raise InvalidPeriodKeyError(
                period.key, f"{self.kind.value} charges are billed on monthly periods"
            )

        covered = covered_period(settings, period)
        calculator = get_calculator(settings.proration_method)
        lines: list[InvoiceLineDraft] = []

        for charge in charges:
            if charge.kind is not self.kind:
                continue
            active_start, active_end = charge.active_window(lease.start_date, lease.end_date)
            days = overlap_days(covered.start, covered.end, active_start, active_end)
            if days == 0:
                continue

            amount = calculator.prorate(
                charge, covered.start, covered.end, lease.start_date, lease.end_date
            )
            if amount == ZERO:
                continue

            line_start = max(covered.start, active_start)
            line_end = covered.end if active_end is None else min(covered.end, active_end)
            prorated = days < covered.days
            lines.append(
                InvoiceLineDraft(
                    description=_describe(charge.description, line_start, line_end, prorated),
                    amount=amount,
                    charge_kind=self.kind,
                    quantity=Decimal("1"),
                    unit_price=amount,
                    taxable=charge.taxable,
                    source_charge_id=charge.charge_id,
                    period_start=line_start,
                    period_end=line_end,
                    is_prorated=prorated,
                )
            )

        return tuple(lines)


class RentResolver(_PeriodicChargeResolver):
    """One line per rent charge active in the covered period."""

    kind = ChargeKind.RENT


class RecurringChargeResolver(_PeriodicChargeResolver):
    """One line per recurring charge active in the covered period."""

    kind = ChargeKind.RECURRING


def _check_slabs(slabs: Sequence[RateSlab]) -> None:
    if not slabs:
        raise InvalidAmountError(None, "Slab-based utility needs at least one rate slab")
    expected_from = ZERO
    for index, slab in enumerate(slabs):
        if slab.from_units != expected_from:
            raise InvalidAmountError(
                slab.from_units, f"Rate slab {index + 1} must start at {expected_from}"
            )
        if slab.to_units is None and index != len(slabs) - 1:
            raise InvalidAmountError(None, "Only the last rate slab may be open-ended")
        if slab.to_units is not None and slab.to_units <= slab.from_units:
            raise InvalidAmountError(slab.to_units, "Rate slab must end above where it starts")
        if slab.rate_per_unit < 0 or slab.fixed_charge < 0:
            raise InvalidAmountError(
                slab.rate_per_unit, "Rate and fixed charge cannot be negative"
            )
        expected_from = slab.to_units


def slab_breakdown(units: Decimal, slabs: Sequence[RateSlab]) -> tuple[SlabCharge, ...]:
    """Spread ``units`` over ``slabs`` in order, lowest tier first.

    Consumption beyond a closed last slab is billed at that slab's rate.
    Amounts are left unrounded.
    """
    _check_slabs(slabs)
    breakdown: list[SlabCharge] = []
    remaining = units
    for index, slab in enumerate(slabs):
        if remaining <= 0:
            break
        last = index == len(slabs) - 1
        if slab.to_units is None or last:
            in_slab = remaining
        else:
            in_slab = min(remaining, slab.to_units - slab.from_units)
        breakdown.append(
            SlabCharge(
                from_units=slab.from_units,
                to_units=slab.from_units + in_slab,
                units=in_slab,
                rate_per_unit=slab.rate_per_unit,
                amount=in_slab * slab.rate_per_unit,
                fixed_charge=slab.fixed_charge,
            )
        )
        remaining -= in_slab
    return tuple(breakdown)


def describe_slabs(breakdown: Sequence[SlabCharge]) -> str:
    """Compact per-slab text, e.g. ``0-100 @ 3; 100-150 @ 4``."""
    return "; ".join(
        f"{entry.from_units.normalize():f}-{entry.to_units.normalize():f}"
        f" @ {entry.rate_per_unit.normalize():f}"
        for entry in breakdown
    )


def _meter_units(reading: UtilityReading) -> Decimal:
    units = reading.units_consumed
    if units is None:
        raise InvalidAmountError(None, "Meter-based utility needs both readings")
    if units < 0:
        raise InvalidAmountError(units, "Meter end reading is below start reading")
    return units


def utility_amount(charge: ChargeDefinition) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(quantity, unit_price, amount)`` for a utility statement.

    Meter-based: ``(end - start) * rate + fixed``.  Slab-based: the sum over
    slabs of ``units_in_slab * slab_rate + slab_fixed``, with the blended
    rate as the unit price.  Amount-based: the statement amount.  Rounded
    once.
    """
    reading = charge.utility
    if reading is None or reading.mode is UtilityBillingMode.AMOUNT:
        amount = charge.amount if reading is None or reading.amount is None else reading.amount
        if amount < 0:
            raise InvalidAmountError(amount, "Utility amount cannot be negative")
        return Decimal("1"), round_money(amount), round_money(amount)

    if reading.mode is UtilityBillingMode.SLAB:
        units = _meter_units(reading)
        breakdown = slab_breakdown(units, reading.rate_slabs)
        amount = round_money(sum((e.amount + e.fixed_charge for e in breakdown), ZERO))
        if units == 0:
            return units, ZERO, amount
        return units, (amount / units).quantize(UNIT_PRICE_PLACES), amount

    if reading.rate_per_unit is None:
        raise InvalidAmountError(None, "Meter-based utility needs both readings and a rate")
    units = _meter_units(reading)
    if reading.rate_per_unit < 0 or reading.fixed_charge < 0:
        raise InvalidAmountError(reading.rate_per_unit, "Rate and fixed charge cannot be negative")

    amount = round_money(units * reading.rate_per_unit + reading.fixed_charge)
    return units, reading.rate_per_unit, amount


class UtilityResolver:
    """Bills unbilled utility statements whose period has ended."""

    kind = ChargeKind.UTILITY

    def resolve(
        self,
        lease: LeaseTerms,
        settings: BillingSettings,
        charges: Sequence[ChargeDefinition],
        period: BillingPeriod,
        as_of: date | None = None,
    ) -> tuple[InvoiceLineDraft, ...]:
        lines: list[InvoiceLineDraft] = []
        for charge in charges:
            if charge.kind is not ChargeKind.UTILITY or charge.billed_invoice_id is not None:
                continue
            statement_end = charge.effective_to or charge.effective_from
            if statement_end > period.end:
                continue
            if as_of is not None and statement_end >= as_of:
                continue

            quantity, unit_price, amount = utility_amount(charge)
            if amount == ZERO:
                continue
            label = charge.description
            if charge.utility is not None and charge.utility.utility_type not in label:
                label = f"{charge.utility.utility_type}: {label}"
            description = _describe(label, charge.effective_from, statement_end, False)
            if charge.utility is not None and charge.utility.mode is UtilityBillingMode.SLAB:
                breakdown = slab_breakdown(quantity, charge.utility.rate_slabs)
                description = f"{description} [{describe_slabs(breakdown)}]"
            lines.append(
                InvoiceLineDraft(
                    description=description,
                    amount=amount,
                    charge_kind=ChargeKind.UTILITY,
                    quantity=quantity,
                    unit_price=unit_price,
                    taxable=charge.taxable,
                    source_charge_id=charge.charge_id,
                    period_start=charge.effective_from,
                    period_end=statement_end,
                    is_prorated=False,
                )
            )
        return tuple(lines)


RESOLVERS_BY_RUN_TYPE = {
    RunType.RENT: (RentResolver(), RecurringChargeResolver()),
    RunType.UTILITY: (UtilityResolver(),),
}


def resolve_lines(
    run_type: RunType,
    lease: LeaseTerms,
    settings: BillingSettings,
    charges: Sequence[ChargeDefinition],
    period: BillingPeriod,
    as_of: date | None = None,
) -> tuple[InvoiceLineDraft, ...]:
    """Run every resolver registered for ``run_type`` and concatenate lines."""
    lines: list[InvoiceLineDraft] = []
    for resolver in RESOLVERS_BY_RUN_TYPE[RunType(run_type)]:
        lines.extend(resolver.resolve(lease, settings, charges, period, as_of))
    return tuple(lines)
