"""
Payments, their append-only status history, and cash confirmation requests.

PaymentModel
    A recorded payment against one invoice.  The amount never changes once
    Completed; a refund is a separate compensating row (payment_type
    ``refund``, ``refund_of_payment_id`` set) and the original moves to
    Refunded.  Gateway and BBPS fields are stored opaquely.

PaymentStatusHistoryModel
    One row per status change, including creation (``from_status`` NULL).
    Rows are never updated or deleted.

PaymentConfirmationRequestModel
    A tenant's claim to have paid in cash.  Leaves Pending exactly once;
    ``version_id`` guards concurrent reviews.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.domain.types import (
    ConfirmationRequestSnapshot,
    ConfirmationStatus,
    PaymentMode,
    PaymentSnapshot,
    PaymentStatus,
    PaymentType,
)


class PaymentModel(TrackedBase):
    __tablename__ = "payments"

    __table_args__ = (
        Index("idx_payments_invoice", "invoice_id"),
        Index("idx_payments_org_status", "org_id", "status"),
        Index("idx_payments_gateway_txn", "gateway_transaction_id"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    lease_id: Mapped[UUID] = mapped_column(ForeignKey("leases.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentType.INVOICE.value
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_date: Mapped[date] = mapped_column(nullable=False)

    transaction_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    received_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    gateway_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_response: Mapped[str | None] = mapped_column(Text, nullable=True)

    biller_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    consumer_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    utility_statement_id: Mapped[UUID | None] = mapped_column(nullable=True)
    deposit_transaction_id: Mapped[UUID | None] = mapped_column(nullable=True)
    refund_of_payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payments.id"), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    history: Mapped[list["PaymentStatusHistoryModel"]] = relationship(
        back_populates="payment",
        order_by="PaymentStatusHistoryModel.sequence",
    )

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def mode_enum(self) -> PaymentMode:
        return PaymentMode(self.payment_mode)

    @property
    def type_enum(self) -> PaymentType:
        return PaymentType(self.payment_type)

    def to_dto(self) -> PaymentSnapshot:
        return PaymentSnapshot(
            payment_id=self.id,
            invoice_id=self.invoice_id,
            amount=self.amount,
            payment_mode=self.mode_enum,
            payment_type=self.type_enum,
            status=self.status_enum,
            payment_date=self.payment_date,
            transaction_reference=self.transaction_reference,
            refund_of_payment_id=self.refund_of_payment_id,
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.amount} {self.payment_mode}: {self.status}>"


class PaymentStatusHistoryModel(TrackedBase):
    __tablename__ = "payment_status_history"

    __table_args__ = (
        Index("idx_payment_status_history_payment", "payment_id", "sequence"),
    )

    payment_id: Mapped[UUID] = mapped_column(ForeignKey("payments.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by: Mapped[UUID] = mapped_column(nullable=False)
    changed_at: Mapped[datetime] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment: Mapped[PaymentModel] = relationship(back_populates="history")


class PaymentConfirmationRequestModel(TrackedBase):
    __tablename__ = "payment_confirmation_requests"

    __table_args__ = (
        Index("idx_confirmation_requests_invoice", "invoice_id"),
        Index("idx_confirmation_requests_org_status", "org_id", "status"),
    )

    org_id: Mapped[UUID] = mapped_column(nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    lease_id: Mapped[UUID] = mapped_column(ForeignKey("leases.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_date: Mapped[date] = mapped_column(nullable=False)
    receipt_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    proof_file_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConfirmationStatus.PENDING.value
    )
    submitted_by: Mapped[UUID] = mapped_column(nullable=False)
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    review_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_id: Mapped[UUID | None] = mapped_column(ForeignKey("payments.id"), nullable=True)

    version_id: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def status_enum(self) -> ConfirmationStatus:
        return ConfirmationStatus(self.status)

    def to_dto(self) -> ConfirmationRequestSnapshot:
        return ConfirmationRequestSnapshot(
            request_id=self.id,
            invoice_id=self.invoice_id,
            amount=self.amount,
            status=self.status_enum,
            submitted_by=self.submitted_by,
            reviewed_by=self.reviewed_by,
            review_response=self.review_response,
            payment_id=self.payment_id,
        )

    def __repr__(self) -> str:
        return f"<PaymentConfirmationRequestModel {self.amount}: {self.status}>"
