"""
Charge definitions: rent, recurring charges and utility statements.

A charge's lifecycle is independent of invoices.  Utility statements carry
``billed_invoice_id`` once an invoice has consumed them so they are billed
exactly once.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import (
    ChargeDefinition,
    ChargeKind,
    RateSlab,
    UtilityBillingMode,
    UtilityReading,
)


def slabs_to_json(slabs) -> list[dict]:
    """Serialize rate slabs for the ``rate_slabs`` column.  Decimals as strings."""
    return [
        {
            "from": str(slab.from_units),
            "to": None if slab.to_units is None else str(slab.to_units),
            "rate": str(slab.rate_per_unit),
            "fixed": str(slab.fixed_charge),
        }
        for slab in slabs
    ]


def slabs_from_json(raw: list | None) -> tuple[RateSlab, ...]:
    return tuple(
        RateSlab(
            from_units=Decimal(item["from"]),
            to_units=None if item.get("to") is None else Decimal(item["to"]),
            rate_per_unit=Decimal(item["rate"]),
            fixed_charge=Decimal(item.get("fixed") or "0"),
        )
        for item in raw or ()
    )


class ChargeDefinitionModel(TrackedBase):
    __tablename__ = "lease_charges"

    __table_args__ = (
        Index("idx_lease_charges_lease_kind", "lease_id", "kind"),
        Index("idx_lease_charges_billed_invoice", "billed_invoice_id"),
    )

    lease_id: Mapped[UUID] = mapped_column(ForeignKey("leases.id"), nullable=False)
    org_id: Mapped[UUID] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    effective_from: Mapped[date] = mapped_column(nullable=False)
    effective_to: Mapped[date | None] = mapped_column(nullable=True)
    taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Utility statement detail
    utility_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    utility_mode: Mapped[str | None] = mapped_column(String(10), nullable=True)
    meter_start_reading: Mapped[Decimal | None] = mapped_column(Numeric(18, 3), nullable=True)
    meter_end_reading: Mapped[Decimal | None] = mapped_column(Numeric(18, 3), nullable=True)
    rate_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    fixed_charge: Mapped[Decimal | None] = mapped_column(nullable=True)
    # Ordered slabs for slab-rate statements: [{"from", "to", "rate", "fixed"}]
    rate_slabs: Mapped[list | None] = mapped_column(JSON, nullable=True)
    biller_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    consumer_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billed_invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True
    )

    @property
    def kind_enum(self) -> ChargeKind:
        return ChargeKind(self.kind)

    def to_dto(self) -> ChargeDefinition:
        utility = None
        if self.kind_enum is ChargeKind.UTILITY:
            utility = UtilityReading(
                utility_type=self.utility_type or "utility",
                mode=UtilityBillingMode(self.utility_mode or UtilityBillingMode.AMOUNT.value),
                amount=self.amount,
                meter_start=self.meter_start_reading,
                meter_end=self.meter_end_reading,
                rate_per_unit=self.rate_per_unit,
                fixed_charge=self.fixed_charge or Decimal("0"),
                rate_slabs=slabs_from_json(self.rate_slabs),
                biller_id=self.biller_id,
                consumer_id=self.consumer_id,
            )
        return ChargeDefinition(
            charge_id=self.id,
            kind=self.kind_enum,
            description=self.description,
            amount=self.amount,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            taxable=self.taxable,
            utility=utility,
            billed_invoice_id=self.billed_invoice_id,
        )

    def __repr__(self) -> str:
        return f"<ChargeDefinitionModel {self.kind}: {self.description} {self.amount}>"
