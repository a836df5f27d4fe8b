"""
Invoice aggregate: InvoiceModel and InvoiceLineModel.

Guarantees:
    - uq_invoices_idempotency: exactly one invoice per
      (org_id, period_key, run_type, lease_id), enforced by the database so
      concurrent run triggers cannot both insert.
    - uq_invoices_org_number: invoice numbers are unique per organization.
      Drafts carry NULL and receive a number on issue.
    - version_id is the optimistic-concurrency token.  Every UPDATE is
      compare-and-swapped on it; a lost race surfaces as StaleDataError.
    - balance_amount = total_amount - paid_amount - credited_amount, kept
      in step by ``recompute_balance``.
    - Lines and totals are frozen once the invoice leaves Draft (see
      billing_kernel.db.immutability).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import (
    ChargeKind,
    InvoiceLineDraft,
    InvoiceSnapshot,
    InvoiceStatus,
    ProrationMethod,
    RunType,
)


class InvoiceModel(TrackedBase):
    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint(
            "org_id", "period_key", "run_type", "lease_id",
            name="uq_invoices_idempotency",
        ),
        UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        Index("idx_invoices_org_status", "org_id", "status"),
        Index("idx_invoices_lease", "lease_id"),
        Index("idx_invoices_due_date", "due_date"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    lease_id: Mapped[UUID] = mapped_column(ForeignKey("leases.id"), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    run_type: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[date] = mapped_column(nullable=False)
    period_end: Mapped[date] = mapped_column(nullable=False)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    proration_method: Mapped[str] = mapped_column(String(30), nullable=False)

    invoice_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value
    )

    sub_total: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    credited_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    balance_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    overdue_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version_id: Mapped[int] = mapped_column(nullable=False)

    lines: Mapped[list["InvoiceLineModel"]] = relationship(
        back_populates="invoice",
        order_by="InvoiceLineModel.line_number",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def status_enum(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    @property
    def run_type_enum(self) -> RunType:
        return RunType(self.run_type)

    @property
    def proration_method_enum(self) -> ProrationMethod:
        return ProrationMethod(self.proration_method)

    @property
    def idempotency_key(self) -> str:
        return f"{self.org_id}:{self.period_key}:{self.run_type}:{self.lease_id}"

    def recompute_balance(self) -> Decimal:
        self.balance_amount = self.total_amount - self.paid_amount - self.credited_amount
        return self.balance_amount

    def to_dto(self) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            invoice_id=self.id,
            org_id=self.org_id,
            lease_id=self.lease_id,
            period_key=self.period_key,
            run_type=self.run_type_enum,
            status=self.status_enum,
            invoice_number=self.invoice_number,
            period_start=self.period_start,
            period_end=self.period_end,
            invoice_date=self.invoice_date,
            due_date=self.due_date,
            proration_method=self.proration_method_enum,
            sub_total=self.sub_total,
            tax_amount=self.tax_amount,
            total_amount=self.total_amount,
            paid_amount=self.paid_amount,
            credited_amount=self.credited_amount,
            balance_amount=self.balance_amount,
            version_id=self.version_id,
            lines=tuple(line.to_dto() for line in self.lines),
        )

    def __repr__(self) -> str:
        label = self.invoice_number or f"draft {self.period_key}"
        return f"<InvoiceModel {label}: {self.status} {self.balance_amount}/{self.total_amount}>"


class InvoiceLineModel(TrackedBase):
    __tablename__ = "invoice_lines"

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_lines_number"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    line_number: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    charge_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(nullable=False)
    source_charge_id: Mapped[UUID | None] = mapped_column(nullable=True)
    period_start: Mapped[date | None] = mapped_column(nullable=True)
    period_end: Mapped[date | None] = mapped_column(nullable=True)
    is_prorated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    invoice: Mapped[InvoiceModel] = relationship(back_populates="lines")

    def to_dto(self) -> InvoiceLineDraft:
        return InvoiceLineDraft(
            description=self.description,
            amount=self.amount,
            charge_kind=ChargeKind(self.charge_kind),
            quantity=self.quantity,
            unit_price=self.unit_price,
            taxable=self.taxable,
            source_charge_id=self.source_charge_id,
            period_start=self.period_start,
            period_end=self.period_end,
            is_prorated=self.is_prorated,
        )

    @classmethod
    def from_dto(
        cls,
        dto: InvoiceLineDraft,
        line_number: int,
        tax_amount: Decimal,
        created_by_id: UUID,
    ) -> "InvoiceLineModel":
        return cls(
            line_number=line_number,
            description=dto.description,
            charge_kind=ChargeKind(dto.charge_kind).value,
            quantity=dto.quantity,
            unit_price=dto.unit_price if dto.unit_price is not None else dto.amount,
            amount=dto.amount,
            taxable=dto.taxable,
            tax_amount=tax_amount,
            line_total=dto.amount + tax_amount,
            source_charge_id=dto.source_charge_id,
            period_start=dto.period_start,
            period_end=dto.period_end,
            is_prorated=dto.is_prorated,
            created_by_id=created_by_id,
        )
