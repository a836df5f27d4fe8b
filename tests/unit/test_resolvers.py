"""
Charge resolvers: rent and recurring charges in advance or arrears, and
utility statements.

Pure tests, no database.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.domain.periods import resolve_period
from billing_kernel.domain.resolvers import (
    PRORATED_SUFFIX,
    RecurringChargeResolver,
    RentResolver,
    UtilityResolver,
    covered_period,
    resolve_lines,
    slab_breakdown,
    utility_amount,
)
from billing_kernel.domain.types import (
    BillingSettings,
    ChargeDefinition,
    ChargeKind,
    LeaseTerms,
    ProrationMethod,
    RateSlab,
    RentTiming,
    RunType,
    UtilityBillingMode,
    UtilityReading,
)
from billing_kernel.exceptions import InvalidAmountError, InvalidPeriodKeyError

ADVANCE = BillingSettings()
ARREARS = BillingSettings(rent_timing=RentTiming.ARREARS)


def _lease(start=date(2024, 1, 1), end=None):
    return LeaseTerms(lease_id=uuid4(), org_id=uuid4(), start_date=start, end_date=end)


def _rent(amount="10000.00", start=date(2024, 1, 1), end=None, description="Monthly rent"):
    return ChargeDefinition(
        charge_id=uuid4(),
        kind=ChargeKind.RENT,
        description=description,
        amount=Decimal(amount),
        effective_from=start,
        effective_to=end,
    )


def _statement(start, end, reading, billed=None, description="Electricity statement"):
    return ChargeDefinition(
        charge_id=uuid4(),
        kind=ChargeKind.UTILITY,
        description=description,
        amount=reading.amount or Decimal("0"),
        effective_from=start,
        effective_to=end,
        utility=reading,
        billed_invoice_id=billed,
    )


class TestCoveredPeriod:

    def test_advance_covers_own_period(self):
        period = resolve_period("2024-03")
        assert covered_period(ADVANCE, period) == period

    def test_arrears_covers_previous_period(self):
        covered = covered_period(ARREARS, resolve_period("2024-03"))
        assert covered.key == "2024-02"
        assert (covered.start, covered.end) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_arrears_respects_billing_day(self):
        settings = replace(ARREARS, billing_day=10)
        covered = covered_period(settings, resolve_period("2024-03", 10))
        assert (covered.start, covered.end) == (date(2024, 2, 10), date(2024, 3, 9))


class TestRentResolver:

    def test_full_month_in_advance(self):
        lines = RentResolver().resolve(_lease(), ADVANCE, [_rent()], resolve_period("2024-03"))
        assert len(lines) == 1
        line = lines[0]
        assert line.amount == Decimal("10000.00")
        assert not line.is_prorated
        assert line.description == "Monthly rent (2024-03-01 to 2024-03-31)"
        assert (line.period_start, line.period_end) == (date(2024, 3, 1), date(2024, 3, 31))

    def test_move_in_mid_month_is_prorated(self):
        lease = _lease(start=date(2024, 3, 17))
        lines = RentResolver().resolve(
            lease, ADVANCE, [_rent(start=lease.start_date)], resolve_period("2024-03")
        )
        line = lines[0]
        assert line.amount == Decimal("4838.71")
        assert line.is_prorated
        assert line.description == f"Monthly rent (2024-03-17 to 2024-03-31){PRORATED_SUFFIX}"

    def test_arrears_bills_previous_month(self):
        lines = RentResolver().resolve(_lease(), ARREARS, [_rent()], resolve_period("2024-04"))
        assert lines[0].period_start == date(2024, 3, 1)
        assert lines[0].amount == Decimal("10000.00")

    def test_lease_not_yet_started(self):
        lease = _lease(start=date(2024, 4, 1))
        assert RentResolver().resolve(lease, ADVANCE, [_rent()], resolve_period("2024-03")) == ()

    def test_move_out_mid_month_in_arrears(self):
        lease = _lease(end=date(2024, 2, 14))
        settings = replace(ARREARS, proration_method=ProrationMethod.THIRTY_DAY_MONTH)
        lines = RentResolver().resolve(lease, settings, [_rent("3000.00")], resolve_period("2024-03"))
        assert lines[0].amount == Decimal("1400.00")
        assert lines[0].period_end == date(2024, 2, 14)

    def test_ignores_other_charge_kinds(self):
        parking = replace(_rent(), kind=ChargeKind.RECURRING)
        assert RentResolver().resolve(_lease(), ADVANCE, [parking], resolve_period("2024-03")) == ()

    def test_week_key_rejected(self):
        with pytest.raises(InvalidPeriodKeyError):
            RentResolver().resolve(_lease(), ADVANCE, [_rent()], resolve_period("2024-W10"))


class TestRecurringChargeResolver:

    def test_charge_ending_mid_month(self):
        parking = replace(
            _rent("310.00", end=date(2024, 3, 10), description="Parking"),
            kind=ChargeKind.RECURRING,
        )
        lines = RecurringChargeResolver().resolve(
            _lease(), ADVANCE, [parking], resolve_period("2024-03")
        )
        assert lines[0].amount == Decimal("100.00")
        assert lines[0].charge_kind is ChargeKind.RECURRING
        assert lines[0].description.endswith(PRORATED_SUFFIX)

    def test_follows_rent_timing(self):
        parking = replace(_rent("50.00", description="Parking"), kind=ChargeKind.RECURRING)
        lines = RecurringChargeResolver().resolve(
            _lease(), ARREARS, [parking], resolve_period("2024-03")
        )
        assert lines[0].period_start == date(2024, 2, 1)


class TestUtility:

    METER = UtilityReading(
        utility_type="Electricity",
        mode=UtilityBillingMode.METER,
        meter_start=Decimal("100"),
        meter_end=Decimal("250"),
        rate_per_unit=Decimal("1.5"),
        fixed_charge=Decimal("20"),
    )

    def test_meter_amount(self):
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), self.METER)
        assert utility_amount(statement) == (Decimal("150"), Decimal("1.5"), Decimal("245.00"))

    def test_flat_amount(self):
        reading = UtilityReading("Water", UtilityBillingMode.AMOUNT, amount=Decimal("80.455"))
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), reading, description="Water bill")
        assert utility_amount(statement)[2] == Decimal("80.46")

    def test_meter_running_backwards_rejected(self):
        reading = replace(self.METER, meter_end=Decimal("50"))
        with pytest.raises(InvalidAmountError):
            utility_amount(_statement(date(2024, 2, 1), date(2024, 2, 29), reading))

    def test_meter_without_rate_rejected(self):
        reading = replace(self.METER, rate_per_unit=None)
        with pytest.raises(InvalidAmountError):
            utility_amount(_statement(date(2024, 2, 1), date(2024, 2, 29), reading))

    def test_ended_statement_is_billed(self):
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), self.METER)
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 5)
        )
        assert len(lines) == 1
        assert lines[0].description == "Electricity statement (2024-02-01 to 2024-02-29)"
        assert lines[0].quantity == Decimal("150")
        assert lines[0].source_charge_id == statement.charge_id

    def test_statement_not_yet_ended_is_not_billed(self):
        statement = _statement(date(2024, 2, 11), date(2024, 3, 10), self.METER)
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 5)
        )
        assert lines == ()

    def test_statement_ending_on_as_of_is_not_billed(self):
        statement = _statement(date(2024, 2, 5), date(2024, 3, 4), self.METER)
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 4)
        )
        assert lines == ()

    def test_already_billed_statement_skipped(self):
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), self.METER, billed=uuid4())
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 5)
        )
        assert lines == ()

    def test_label_gets_utility_type(self):
        reading = UtilityReading("Gas", UtilityBillingMode.AMOUNT, amount=Decimal("30"))
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), reading, description="Statement 7")
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-W10"), as_of=date(2024, 3, 5)
        )
        assert lines[0].description.startswith("Gas: Statement 7")


def _slab_reading(start, end, *slabs):
    return UtilityReading(
        utility_type="Electricity",
        mode=UtilityBillingMode.SLAB,
        meter_start=Decimal(start),
        meter_end=Decimal(end),
        rate_slabs=tuple(slabs),
    )


TIERS = (
    RateSlab(Decimal("0"), Decimal("100"), Decimal("3")),
    RateSlab(Decimal("100"), Decimal("200"), Decimal("4"), fixed_charge=Decimal("25")),
    RateSlab(Decimal("200"), None, Decimal("5")),
)


class TestUtilitySlabs:

    def _amount(self, reading):
        return utility_amount(_statement(date(2024, 2, 1), date(2024, 2, 29), reading))

    def test_within_first_slab(self):
        assert self._amount(_slab_reading("1000", "1050", *TIERS)) == (
            Decimal("50"), Decimal("3.0000"), Decimal("150.00")
        )

    def test_crossing_slab_boundary(self):
        reading = _slab_reading("1000", "1130", *TIERS)

        quantity, unit_price, amount = self._amount(reading)

        # 100 @ 3 + 30 @ 4 + 25 fixed; the third slab is untouched.
        assert amount == Decimal("445.00")
        assert quantity == Decimal("130")
        assert unit_price == Decimal("3.4231")
        breakdown = slab_breakdown(quantity, TIERS)
        assert [(e.from_units, e.to_units, e.units) for e in breakdown] == [
            (Decimal("0"), Decimal("100"), Decimal("100")),
            (Decimal("100"), Decimal("130"), Decimal("30")),
        ]
        assert breakdown[1].fixed_charge == Decimal("25")

    def test_all_slabs_used(self):
        reading = _slab_reading("0", "250", *TIERS)
        assert self._amount(reading)[2] == Decimal("975.00")
        assert [e.units for e in slab_breakdown(Decimal("250"), TIERS)] == [
            Decimal("100"), Decimal("100"), Decimal("50")
        ]

    def test_rounded_once_at_the_end(self):
        reading = _slab_reading(
            "0",
            "15",
            RateSlab(Decimal("0"), Decimal("10"), Decimal("0.333")),
            RateSlab(Decimal("10"), None, Decimal("0.335")),
        )
        # 3.33 + 1.675 = 5.005 -> 5.00; rounding each slab first would give 5.01.
        assert self._amount(reading)[2] == Decimal("5.00")

    def test_overflow_past_closed_last_slab_uses_its_rate(self):
        reading = _slab_reading(
            "0",
            "250",
            RateSlab(Decimal("0"), Decimal("100"), Decimal("2")),
            RateSlab(Decimal("100"), Decimal("200"), Decimal("3")),
        )
        assert self._amount(reading)[2] == Decimal("650.00")

    def test_zero_consumption_bills_nothing(self):
        reading = _slab_reading("500", "500", *TIERS)
        assert self._amount(reading) == (Decimal("0"), Decimal("0.00"), Decimal("0.00"))
        statement = _statement(date(2024, 2, 1), date(2024, 2, 29), reading)
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 5)
        )
        assert lines == ()

    def test_line_carries_breakdown(self):
        statement = _statement(
            date(2024, 2, 1), date(2024, 2, 29), _slab_reading("1000", "1130", *TIERS)
        )
        lines = UtilityResolver().resolve(
            _lease(), ADVANCE, [statement], resolve_period("2024-03"), as_of=date(2024, 3, 5)
        )
        assert lines[0].amount == Decimal("445.00")
        assert lines[0].description == (
            "Electricity statement (2024-02-01 to 2024-02-29) [0-100 @ 3; 100-130 @ 4]"
        )

    @pytest.mark.parametrize(
        "slabs",
        [
            (),
            (RateSlab(Decimal("10"), None, Decimal("3")),),
            (
                RateSlab(Decimal("0"), Decimal("100"), Decimal("3")),
                RateSlab(Decimal("150"), None, Decimal("4")),
            ),
            (
                RateSlab(Decimal("0"), None, Decimal("3")),
                RateSlab(Decimal("100"), None, Decimal("4")),
            ),
            (RateSlab(Decimal("0"), Decimal("0"), Decimal("3")),),
            (RateSlab(Decimal("0"), None, Decimal("-1")),),
        ],
    )
    def test_malformed_rate_plan_rejected(self, slabs):
        with pytest.raises(InvalidAmountError):
            self._amount(_slab_reading("0", "50", *slabs))

    def test_meter_running_backwards_rejected(self):
        with pytest.raises(InvalidAmountError):
            self._amount(_slab_reading("200", "100", *TIERS))


class TestResolveLines:

    def test_rent_run_combines_rent_and_recurring(self):
        parking = replace(_rent("50.00", description="Parking"), kind=ChargeKind.RECURRING)
        lines = resolve_lines(
            RunType.RENT, _lease(), ADVANCE, [_rent(), parking], resolve_period("2024-03")
        )
        assert [line.charge_kind for line in lines] == [ChargeKind.RENT, ChargeKind.RECURRING]

    def test_utility_run_ignores_rent(self):
        lines = resolve_lines(
            RunType.UTILITY, _lease(), ADVANCE, [_rent()], resolve_period("2024-03"),
            as_of=date(2024, 4, 1),
        )
        assert lines == ()
