"""Credit notes: post-issue balance adjustments that never touch invoice lines."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import CreditNoteReason, CreditNoteSnapshot


class CreditNoteModel(TrackedBase):
    __tablename__ = "credit_notes"

    __table_args__ = (
        UniqueConstraint("org_id", "credit_note_number", name="uq_credit_notes_org_number"),
        Index("idx_credit_notes_invoice", "invoice_id"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    credit_note_number: Mapped[str] = mapped_column(String(40), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(nullable=False)

    @property
    def reason_enum(self) -> CreditNoteReason:
        return CreditNoteReason(self.reason)

    def to_dto(self) -> CreditNoteSnapshot:
        return CreditNoteSnapshot(
            credit_note_id=self.id,
            invoice_id=self.invoice_id,
            credit_note_number=self.credit_note_number,
            amount=self.amount,
            reason=self.reason_enum,
        )

    def __repr__(self) -> str:
        return f"<CreditNoteModel {self.credit_note_number}: {self.amount}>"
