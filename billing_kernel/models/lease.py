"""
Lease and versioned billing settings.

LeaseModel is the unit of eligibility for invoice runs.  Lease administration
(tenants, units, documents) lives outside the billing core; only the dates
and status billing depends on are kept here.

LeaseBillingSettingsModel is versioned by ``effective_from``: the version
governing a period is the latest one whose ``effective_from`` is on or
before the period start.  Versions are never edited in place.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import (
    BillingSettings,
    LeaseStatus,
    LeaseTerms,
    ProrationMethod,
    RentTiming,
)


class LeaseModel(TrackedBase):
    __tablename__ = "leases"

    __table_args__ = (
        UniqueConstraint("org_id", "lease_number", name="uq_leases_org_number"),
        Index("idx_leases_org_status", "org_id", "status"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    lease_number: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[date] = mapped_column(nullable=False)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LeaseStatus.ACTIVE.value
    )

    settings_versions: Mapped[list["LeaseBillingSettingsModel"]] = relationship(
        back_populates="lease",
        order_by="LeaseBillingSettingsModel.effective_from",
    )

    @property
    def status_enum(self) -> LeaseStatus:
        return LeaseStatus(self.status)

    def to_dto(self) -> LeaseTerms:
        return LeaseTerms(
            lease_id=self.id,
            org_id=self.org_id,
            start_date=self.start_date,
            end_date=self.end_date,
            status=self.status_enum,
        )

    def __repr__(self) -> str:
        return f"<LeaseModel {self.lease_number}: {self.status}>"


class LeaseBillingSettingsModel(TrackedBase):
    __tablename__ = "lease_billing_settings"

    __table_args__ = (
        UniqueConstraint(
            "lease_id", "effective_from", name="uq_lease_billing_settings_version"
        ),
    )

    lease_id: Mapped[UUID] = mapped_column(ForeignKey("leases.id"), nullable=False)
    effective_from: Mapped[date] = mapped_column(nullable=False)
    billing_day: Mapped[int] = mapped_column(nullable=False, default=1)
    rent_timing: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RentTiming.ADVANCE.value
    )
    proration_method: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ProrationMethod.ACTUAL_DAYS_IN_MONTH.value
    )
    tax_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(9, 6), nullable=False, default=Decimal("0")
    )
    payment_term_days: Mapped[int] = mapped_column(nullable=False, default=0)
    invoice_prefix: Mapped[str] = mapped_column(String(20), nullable=False, default="INV")

    lease: Mapped[LeaseModel] = relationship(back_populates="settings_versions")

    def to_dto(self) -> BillingSettings:
        return BillingSettings(
            billing_day=self.billing_day,
            rent_timing=RentTiming(self.rent_timing),
            proration_method=ProrationMethod(self.proration_method),
            tax_applicable=self.tax_applicable,
            tax_rate=self.tax_rate,
            payment_term_days=self.payment_term_days,
            invoice_prefix=self.invoice_prefix,
            effective_from=self.effective_from,
        )

    @classmethod
    def from_dto(
        cls,
        lease_id: UUID,
        dto: BillingSettings,
        effective_from: date,
        created_by_id: UUID,
    ) -> "LeaseBillingSettingsModel":
        return cls(
            lease_id=lease_id,
            effective_from=effective_from,
            billing_day=dto.billing_day,
            rent_timing=RentTiming(dto.rent_timing).value,
            proration_method=ProrationMethod(dto.proration_method).value,
            tax_applicable=dto.tax_applicable,
            tax_rate=dto.tax_rate,
            payment_term_days=dto.payment_term_days,
            invoice_prefix=dto.invoice_prefix,
            created_by_id=created_by_id,
        )
