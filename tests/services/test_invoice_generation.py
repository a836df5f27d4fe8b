"""
InvoiceGenerationService against a real (SQLite) database.

Covers totals and tax, timing, the nothing-to-bill result, the
idempotency key and utility statements being consumed exactly once.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.domain.types import (
    ChargeKind,
    GenerationStatus,
    InvoiceStatus,
    ProrationMethod,
    RateSlab,
    RentTiming,
    RunType,
    UtilityBillingMode,
)
from billing_kernel.exceptions import (
    BillingSettingsNotFoundError,
    InvalidPeriodKeyError,
    InvoiceAlreadyExistsError,
    LeaseNotFoundError,
)
from billing_kernel.models.charge import ChargeDefinitionModel, slabs_to_json
from billing_kernel.models.invoice import InvoiceModel
from billing_kernel.services.invoice_generation import InvoiceGenerationService


@pytest.fixture
def generator(session, deterministic_clock, test_actor_id):
    return InvoiceGenerationService(session, deterministic_clock, actor_id=test_actor_id)


class TestRentInvoice:

    def test_full_month_draft(self, generator, make_lease, test_actor_id):
        lease = make_lease(rent="1000.00")

        result = generator.generate_invoice(lease.id, "2024-03")

        assert result.status is GenerationStatus.GENERATED
        invoice = result.invoice
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.invoice_number is None
        assert (invoice.period_start, invoice.period_end) == (date(2024, 3, 1), date(2024, 3, 31))
        assert invoice.invoice_date == date(2024, 3, 1)
        assert invoice.due_date == date(2024, 3, 6)
        assert invoice.sub_total == Decimal("1000.00")
        assert invoice.tax_amount == Decimal("0.00")
        assert invoice.total_amount == Decimal("1000.00")
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.balance_amount == invoice.total_amount
        assert invoice.proration_method == ProrationMethod.ACTUAL_DAYS_IN_MONTH.value
        assert invoice.created_by_id == test_actor_id
        assert len(invoice.lines) == 1

    def test_tax_only_on_taxable_lines(self, generator, make_lease):
        lease = make_lease(
            rent=None,
            tax_applicable=True,
            tax_rate=Decimal("0.18"),
            charges=(
                {"kind": ChargeKind.RENT, "amount": "1000.00", "effective_from": date(2024, 1, 1),
                 "description": "Rent", "taxable": True},
                {"kind": ChargeKind.RECURRING, "amount": "100.00", "effective_from": date(2024, 1, 1),
                 "description": "Parking"},
            ),
        )

        invoice = generator.generate_invoice(lease.id, "2024-03").invoice

        assert invoice.sub_total == Decimal("1100.00")
        assert invoice.tax_amount == Decimal("180.00")
        assert invoice.total_amount == Decimal("1280.00")
        taxes = {line.description.split(" (")[0]: line.tax_amount for line in invoice.lines}
        assert taxes == {"Rent": Decimal("180.00"), "Parking": Decimal("0.00")}

    def test_taxable_lines_untaxed_when_tax_not_applicable(self, generator, make_lease):
        lease = make_lease(
            rent=None,
            tax_rate=Decimal("0.18"),
            charges=(
                {"kind": ChargeKind.RENT, "amount": "1000.00", "effective_from": date(2024, 1, 1),
                 "taxable": True},
            ),
        )
        assert generator.generate_invoice(lease.id, "2024-03").invoice.tax_amount == Decimal("0.00")

    def test_move_in_prorated(self, generator, make_lease):
        lease = make_lease(start_date=date(2024, 3, 17), rent="10000.00")

        invoice = generator.generate_invoice(lease.id, "2024-03").invoice

        assert invoice.total_amount == Decimal("4838.71")
        assert invoice.lines[0].is_prorated
        assert invoice.lines[0].description.endswith("(Prorated)")

    def test_thirty_day_method_snapshotted(self, generator, make_lease):
        lease = make_lease(
            start_date=date(2024, 3, 18),
            rent="10000.00",
            proration_method=ProrationMethod.THIRTY_DAY_MONTH,
        )

        invoice = generator.generate_invoice(lease.id, "2024-03").invoice

        assert invoice.total_amount == Decimal("4666.67")
        assert invoice.proration_method == ProrationMethod.THIRTY_DAY_MONTH.value

    def test_arrears_bills_previous_period(self, generator, make_lease):
        lease = make_lease(rent_timing=RentTiming.ARREARS)

        invoice = generator.generate_invoice(lease.id, "2024-04").invoice

        assert invoice.period_key == "2024-04"
        assert (invoice.period_start, invoice.period_end) == (date(2024, 3, 1), date(2024, 3, 31))
        assert invoice.invoice_date == date(2024, 3, 31)
        assert invoice.due_date == date(2024, 4, 5)

    def test_billing_day_window(self, generator, make_lease):
        lease = make_lease(billing_day=15, rent="3000.00")

        invoice = generator.generate_invoice(lease.id, "2024-03").invoice

        assert (invoice.period_start, invoice.period_end) == (date(2024, 3, 15), date(2024, 4, 14))
        assert invoice.total_amount == Decimal("3000.00")


class TestNothingToBill:

    def test_lease_without_charges(self, generator, make_lease, session):
        lease = make_lease(rent=None)

        result = generator.generate_invoice(lease.id, "2024-03")

        assert result.status is GenerationStatus.NOTHING_TO_BILL
        assert result.invoice is None
        assert result.reason == "No billable rent charges for 2024-03"
        assert session.query(InvoiceModel).count() == 0

    def test_lease_ended_before_period(self, generator, make_lease):
        lease = make_lease(end_date=date(2024, 2, 29))
        result = generator.generate_invoice(lease.id, "2024-03")
        assert not result.generated


class TestIdempotencyKey:

    def test_second_generation_rejected(self, generator, make_lease):
        lease = make_lease()
        first = generator.generate_invoice(lease.id, "2024-03").invoice

        with pytest.raises(InvoiceAlreadyExistsError) as exc_info:
            generator.generate_invoice(lease.id, "2024-03")

        assert exc_info.value.code == "INVOICE_ALREADY_EXISTS"
        assert exc_info.value.invoice_id == str(first.id)
        assert exc_info.value.idempotency_key == first.idempotency_key

    def test_rent_and_utility_keys_are_distinct(self, generator, make_lease):
        lease = make_lease(
            statements=(
                {"start": date(2024, 2, 1), "end": date(2024, 2, 28), "amount": "75.00"},
            ),
        )
        rent = generator.generate_invoice(lease.id, "2024-03", RunType.RENT)
        utility = generator.generate_invoice(lease.id, "2024-03", RunType.UTILITY)
        assert rent.generated and utility.generated
        assert rent.invoice.id != utility.invoice.id

    def test_next_period_is_a_new_key(self, generator, make_lease):
        lease = make_lease()
        generator.generate_invoice(lease.id, "2024-03")
        assert generator.generate_invoice(lease.id, "2024-04").generated


class TestUtilityRun:

    def test_ended_statements_billed_once(self, generator, make_lease, session):
        lease = make_lease(
            rent=None,
            statements=(
                {"start": date(2024, 2, 1), "end": date(2024, 2, 28),
                 "meter_start_reading": Decimal("100"), "meter_end_reading": Decimal("250"),
                 "rate_per_unit": Decimal("1.5"), "fixed_charge": Decimal("20")},
                {"start": date(2024, 2, 1), "end": date(2024, 2, 28), "amount": "40.00",
                 "utility_type": "Water"},
            ),
        )

        # Clock is 2024-03-01: both statements have ended.
        result = generator.generate_invoice(lease.id, "2024-W10", RunType.UTILITY)

        assert result.generated
        assert result.invoice.total_amount == Decimal("285.00")
        statements = session.query(ChargeDefinitionModel).filter_by(lease_id=lease.id).all()
        assert {s.billed_invoice_id for s in statements} == {result.invoice.id}

        again = generator.generate_invoice(lease.id, "2024-W11", RunType.UTILITY)
        assert again.status is GenerationStatus.NOTHING_TO_BILL

    def test_slab_rate_statement(self, generator, make_lease):
        slabs = (
            RateSlab(Decimal("0"), Decimal("100"), Decimal("3")),
            RateSlab(Decimal("100"), Decimal("200"), Decimal("4")),
            RateSlab(Decimal("200"), None, Decimal("5")),
        )
        lease = make_lease(
            rent=None,
            statements=(
                {"start": date(2024, 2, 1), "end": date(2024, 2, 28),
                 "utility_mode": UtilityBillingMode.SLAB,
                 "meter_start_reading": Decimal("1000"), "meter_end_reading": Decimal("1250"),
                 "rate_slabs": slabs_to_json(slabs)},
            ),
        )

        result = generator.generate_invoice(lease.id, "2024-W10", RunType.UTILITY)

        assert result.invoice.total_amount == Decimal("950.00")
        line = result.invoice.lines[0]
        assert line.quantity == Decimal("250")
        assert line.unit_price == Decimal("3.8")
        assert line.description.endswith("[0-100 @ 3; 100-200 @ 4; 200-250 @ 5]")

    def test_open_statement_waits(self, generator, make_lease, deterministic_clock):
        lease = make_lease(
            rent=None,
            statements=({"start": date(2024, 2, 15), "end": date(2024, 3, 14), "amount": "60.00"},),
        )
        deterministic_clock.set_date(date(2024, 3, 14))

        assert not generator.generate_invoice(lease.id, "2024-W11", RunType.UTILITY).generated
        assert generator.generate_invoice(
            lease.id, "2024-W11", RunType.UTILITY, as_of=date(2024, 3, 15)
        ).generated


class TestGenerationErrors:

    def test_rent_run_on_week_key(self, generator, make_lease):
        lease = make_lease()
        with pytest.raises(InvalidPeriodKeyError):
            generator.generate_invoice(lease.id, "2024-W10")

    def test_malformed_key(self, generator, make_lease):
        lease = make_lease()
        with pytest.raises(InvalidPeriodKeyError):
            generator.generate_invoice(lease.id, "2024-3")

    def test_unknown_lease(self, generator):
        with pytest.raises(LeaseNotFoundError):
            generator.generate_invoice(uuid4(), "2024-03")

    def test_lease_without_settings(self, generator, make_lease):
        lease = make_lease(with_settings=False)
        with pytest.raises(BillingSettingsNotFoundError) as exc_info:
            generator.generate_invoice(lease.id, "2024-03")
        assert exc_info.value.code == "BILLING_SETTINGS_NOT_FOUND"


class TestGenerationLogging:

    def test_generated_log_carries_lease_context(self, generator, make_lease, captured_logs):
        lease = make_lease()
        generator.generate_invoice(lease.id, "2024-03")

        records = [r for r in captured_logs() if r["message"] == "invoice_generated"]
        assert len(records) == 1
        assert records[0]["lease_id"] == str(lease.id)
        assert records[0]["total_amount"] == "1000.00"
