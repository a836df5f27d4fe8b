"""
ORM models for invoice runs.

Contract:
    InvoiceRunModel is the single summary row per (org_id, period_key,
    run_type).  A re-run updates it: ``attempt_count`` increments and the
    items are replaced with the latest attempt's per-lease outcomes.

Architecture: billing_batch/models.  Imports from billing_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import RunType

from billing_batch.domain.types import (
    InvoiceRunResult,
    LeaseOutcome,
    LeaseOutcomeStatus,
    RunStatus,
)


class InvoiceRunModel(TrackedBase):
    """Persistent invoice run summary (one row per org, period and run type)."""

    __tablename__ = "invoice_runs"

    __table_args__ = (
        UniqueConstraint(
            "org_id", "period_key", "run_type", name="uq_invoice_runs_org_period_type"
        ),
        Index("ix_invoice_runs_status", "status"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    run_type: Mapped[str] = mapped_column(String(10), nullable=False)
    run_number: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_leases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    items: Mapped[list["InvoiceRunItemModel"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="InvoiceRunItemModel.item_index",
    )

    def to_dto(self) -> InvoiceRunResult:
        return InvoiceRunResult(
            run_id=self.id,
            run_number=self.run_number,
            org_id=self.org_id,
            period_key=self.period_key,
            run_type=RunType(self.run_type),
            status=RunStatus(self.status),
            attempt_count=self.attempt_count,
            outcomes=tuple(item.to_dto() for item in self.items),
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return f"<InvoiceRunModel {self.run_number}: {self.status} (attempt {self.attempt_count})>"


class InvoiceRunItemModel(TrackedBase):
    """Outcome for one lease in the latest attempt of a run."""

    __tablename__ = "invoice_run_items"

    __table_args__ = (
        UniqueConstraint("run_id", "lease_id", name="uq_invoice_run_items_lease"),
        Index("ix_invoice_run_items_run_status", "run_id", "status"),
    )

    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice_runs.id", ondelete="CASCADE"), nullable=False
    )
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    lease_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_id: Mapped[UUID | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    run: Mapped[InvoiceRunModel] = relationship(back_populates="items")

    def to_dto(self) -> LeaseOutcome:
        return LeaseOutcome(
            lease_id=self.lease_id,
            status=LeaseOutcomeStatus(self.status),
            invoice_id=self.invoice_id,
            reason=self.reason,
            error_code=self.error_code,
            duration_ms=self.duration_ms,
        )

    @classmethod
    def from_dto(
        cls, dto: LeaseOutcome, item_index: int, created_by_id: UUID
    ) -> InvoiceRunItemModel:
        return cls(
            item_index=item_index,
            lease_id=dto.lease_id,
            status=dto.status.value,
            invoice_id=dto.invoice_id,
            reason=dto.reason,
            error_code=dto.error_code,
            duration_ms=dto.duration_ms,
            created_by_id=created_by_id,
        )
