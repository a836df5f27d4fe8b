"""Versioned lease billing settings: lookup by date and prospective changes."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_config import BillingConfig
from billing_kernel.domain.types import ProrationMethod, RentTiming
from billing_services.engine import BillingEngine


class TestEffectiveSettings:

    def test_initial_version(self, engine, lease_builder):
        lease_id = lease_builder(payment_term_days=10, invoice_prefix="RENT")

        settings = engine.get_effective_settings(lease_id, date(2024, 3, 1)).unwrap()

        assert settings.billing_day == 1
        assert settings.rent_timing is RentTiming.ADVANCE
        assert settings.payment_term_days == 10
        assert settings.invoice_prefix == "RENT"
        assert settings.tax_rate == Decimal("0")

    def test_new_version_applies_from_its_date(self, engine, lease_builder):
        lease_id = lease_builder()

        engine.update_settings(
            lease_id, date(2024, 4, 1), billing_day=15, rent_timing=RentTiming.ARREARS
        ).unwrap()

        before = engine.get_effective_settings(lease_id, date(2024, 3, 31)).unwrap()
        after = engine.get_effective_settings(lease_id, date(2024, 4, 1)).unwrap()
        assert (before.billing_day, before.rent_timing) == (1, RentTiming.ADVANCE)
        assert (after.billing_day, after.rent_timing) == (15, RentTiming.ARREARS)
        assert after.payment_term_days == before.payment_term_days
        assert after.effective_from == date(2024, 4, 1)

    def test_date_before_first_version_uses_earliest(self, engine, lease_builder):
        lease_id = lease_builder(start_date=date(2024, 2, 1))
        settings = engine.get_effective_settings(lease_id, date(2024, 1, 15)).unwrap()
        assert settings.effective_from == date(2024, 2, 1)

    def test_lease_without_settings(self, engine, lease_builder):
        lease_id = lease_builder(with_settings=False)
        result = engine.get_effective_settings(lease_id, date(2024, 3, 1))
        assert result.error_code == "BILLING_SETTINGS_NOT_FOUND"

    def test_unknown_lease(self, engine):
        assert engine.get_effective_settings(uuid4(), date(2024, 3, 1)).error_code == "LEASE_NOT_FOUND"


class TestProspectiveChanges:

    def test_change_inside_billed_period_rejected(self, engine, issued_invoice):
        invoice = engine.get_invoice(issued_invoice()).unwrap()

        result = engine.update_settings(invoice.lease_id, date(2024, 3, 31), tax_applicable=True)

        assert result.error_code == "RETROACTIVE_SETTINGS_CHANGE"
        assert engine.update_settings(invoice.lease_id, date(2024, 4, 1), tax_applicable=True).ok

    def test_voided_invoice_does_not_block(self, engine, issued_invoice):
        invoice = engine.get_invoice(issued_invoice()).unwrap()
        engine.void_invoice(invoice.invoice_id, "Raised against the wrong lease").unwrap()

        assert engine.update_settings(invoice.lease_id, date(2024, 3, 15), billing_day=10).ok

    def test_draft_invoice_also_blocks(self, engine, lease_builder):
        lease_id = lease_builder()
        engine.generate_invoice(lease_id, "2024-03").unwrap()
        result = engine.update_settings(lease_id, date(2024, 3, 10), billing_day=10)
        assert result.error_code == "RETROACTIVE_SETTINGS_CHANGE"

    def test_duplicate_version_date(self, engine, lease_builder):
        lease_id = lease_builder()
        engine.update_settings(lease_id, date(2024, 5, 1), billing_day=5).unwrap()
        assert engine.update_settings(lease_id, date(2024, 5, 1), billing_day=6).error_code == "VALIDATION_ERROR"

    def test_existing_invoice_keeps_its_snapshot(self, engine, issued_invoice):
        invoice = engine.get_invoice(issued_invoice()).unwrap()
        engine.update_settings(
            invoice.lease_id, date(2024, 4, 1), proration_method=ProrationMethod.THIRTY_DAY_MONTH
        ).unwrap()

        again = engine.get_invoice(invoice.invoice_id).unwrap()
        assert again.proration_method is ProrationMethod.ACTUAL_DAYS_IN_MONTH


class TestValidation:

    @pytest.mark.parametrize(
        "changes",
        [
            {"billing_day": 0},
            {"billing_day": 29},
            {"tax_rate": "-0.05"},
            {"payment_term_days": -1},
            {"invoice_prefix": "IN-V"},
            {"invoice_prefix": ""},
            {"rent_timing": "fortnightly"},
            {"colour": "blue"},
        ],
    )
    def test_rejected_values(self, engine, lease_builder, changes):
        lease_id = lease_builder()
        result = engine.update_settings(lease_id, date(2024, 6, 1), **changes)
        assert result.error_code == "VALIDATION_ERROR"

    def test_accepts_string_enums(self, engine, lease_builder):
        lease_id = lease_builder()
        settings = engine.update_settings(
            lease_id, date(2024, 6, 1), proration_method="thirty_day_month"
        ).unwrap()
        assert settings.proration_method is ProrationMethod.THIRTY_DAY_MONTH


class TestConfiguredDefaults:

    def test_first_version_starts_from_config(self, session_factory, deterministic_clock, lease_builder):
        engine = BillingEngine(
            session_factory,
            config=BillingConfig(invoice_prefix="RENT", default_payment_term_days=7),
            clock=deterministic_clock,
        )
        lease_id = lease_builder(with_settings=False)

        settings = engine.update_settings(lease_id, date(2024, 1, 1), billing_day=5).unwrap()

        assert settings.invoice_prefix == "RENT"
        assert settings.payment_term_days == 7
        assert settings.billing_day == 5
