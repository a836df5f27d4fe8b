"""
BillingSettingsService -- versioned lease billing settings.

Responsibility:
    Answers "which billing settings govern this lease on this date" and
    records new settings versions.

Architecture position:
    Kernel > Services.  Called by InvoiceGenerationService (read) and the
    BillingEngine facade (write).

Invariants enforced:
    - Versions are append-only; an existing version is never edited.
    - Changes are prospective.  A version whose ``effective_from`` falls on
      or before the end of a period already billed by a live invoice is
      rejected, so issued invoices never disagree with their settings.
    - billing_day is 1-28; tax_rate and payment_term_days are >= 0.

Failure modes:
    - LeaseNotFoundError, BillingSettingsNotFoundError.
    - RetroactiveSettingsChangeError.
    - ValidationError for out-of-range values or a duplicate version date.
"""

from dataclasses import fields, replace
from datetime import date
from decimal import Decimal

from billing_kernel.domain.money import to_decimal
from billing_kernel.domain.types import BillingSettings, ProrationMethod, RentTiming
from billing_kernel.exceptions import (
    BillingSettingsNotFoundError,
    RetroactiveSettingsChangeError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.lease import LeaseBillingSettingsModel
from billing_kernel.services.base import BaseService

logger = get_logger("services.billing_settings")

_EDITABLE = frozenset(f.name for f in fields(BillingSettings)) - {"effective_from"}


def validate_settings(settings: BillingSettings) -> BillingSettings:
    """Normalize enum/decimal fields and range-check the rest."""
    try:
        settings = replace(
            settings,
            rent_timing=RentTiming(settings.rent_timing),
            proration_method=ProrationMethod(settings.proration_method),
            tax_rate=to_decimal(settings.tax_rate),
        )
    except (ValueError, TypeError, ArithmeticError) as exc:
        raise ValidationError(f"Invalid billing settings: {exc}") from exc
    if not 1 <= settings.billing_day <= 28:
        raise ValidationError(f"billing_day must be between 1 and 28, got {settings.billing_day}")
    if settings.tax_rate < Decimal("0"):
        raise ValidationError(f"tax_rate cannot be negative, got {settings.tax_rate}")
    if settings.payment_term_days < 0:
        raise ValidationError(
            f"payment_term_days cannot be negative, got {settings.payment_term_days}"
        )
    if not settings.invoice_prefix or not settings.invoice_prefix.isalnum():
        raise ValidationError(f"invoice_prefix must be alphanumeric, got {settings.invoice_prefix!r}")
    return settings


class BillingSettingsService(BaseService):
    """Read and version lease billing settings."""

    def get_effective_settings(self, lease_id, on_date: date) -> BillingSettings:
        self._repo.get_lease(lease_id)
        return self._repo.get_lease_billing_settings(lease_id, on_date).to_dto()

    def update_settings(
        self,
        lease_id,
        effective_from: date,
        defaults: BillingSettings | None = None,
        **changes,
    ) -> BillingSettings:
        """Record a new settings version effective from ``effective_from``.

        Unspecified fields carry over from the version in force on that
        date, or from ``defaults`` for a lease with no settings yet.
        """
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValidationError(f"Unknown billing settings: {sorted(unknown)}")

        lease = self._repo.get_lease(lease_id)

        last_invoiced = self._repo.latest_invoiced_period_end(lease.id)
        if last_invoiced is not None and effective_from <= last_invoiced:
            logger.warning(
                "billing_settings_retroactive_change_rejected",
                extra={
                    "lease_id": str(lease.id),
                    "effective_from": effective_from.isoformat(),
                    "last_invoiced": last_invoiced.isoformat(),
                },
            )
            raise RetroactiveSettingsChangeError(lease.id, effective_from, last_invoiced)

        try:
            base = self._repo.get_lease_billing_settings(lease.id, effective_from).to_dto()
        except BillingSettingsNotFoundError:
            base = defaults or BillingSettings()

        if any(v.effective_from == effective_from for v in self._repo.list_settings_versions(lease.id)):
            raise ValidationError(
                f"Lease {lease.id} already has a settings version effective {effective_from}"
            )

        settings = validate_settings(replace(base, effective_from=effective_from, **changes))
        self.session.add(
            LeaseBillingSettingsModel.from_dto(lease.id, settings, effective_from, self._actor_id)
        )
        self.session.flush()

        logger.info(
            "billing_settings_versioned",
            extra={
                "lease_id": str(lease.id),
                "effective_from": effective_from.isoformat(),
                "changed": sorted(changes),
            },
        )
        return settings
