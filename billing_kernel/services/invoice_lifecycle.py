"""
InvoiceLifecycleManager -- every invoice status change goes through here.

Responsibility:
    Applies events from ``billing_kernel.domain.invoice_state.TRANSITIONS``
    to invoices: issue (with number assignment), void, cancel, overdue
    marking, and the draft-only line editing that precedes issue.

Architecture position:
    Kernel > Services.  PaymentApplicationService and CreditNoteService
    call ``transition`` for their status changes.

Invariants enforced:
    - No status is written except through ``transition``.
    - Issue requires at least one line and total > 0; the number comes
      from the per-organization counter and is unique per organization.
    - Lines and totals change only while Draft (InvoiceImmutableError
      otherwise; the ORM listeners are a second line of defence).
    - Void requires a reason and no money received.

Audit relevance:
    ``invoice_status_changed`` is logged for every transition with the
    from/to status and the event.
"""

from dataclasses import replace
from datetime import datetime
from uuid import UUID

from billing_kernel.domain.invoice_state import InvoiceEvent, next_status
from billing_kernel.domain.money import ZERO, round_money, to_decimal
from billing_kernel.domain.events import InvoiceIssued, InvoiceOverdue, InvoiceVoided
from billing_kernel.domain.types import ChargeKind, InvoiceLineDraft, InvoiceStatus, parse_enum
from billing_kernel.exceptions import (
    BusinessRuleViolation,
    EmptyInvoiceError,
    InvalidAmountError,
    InvoiceImmutableError,
    MissingReasonError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.invoice_lifecycle")


class InvoiceLifecycleManager(BaseService):
    """
    Contract:
        Methods take an invoice id, mutate the invoice in the caller's
        session, flush, and return the invoice.  Events are queued on the
        publisher.

    Non-goals:
        - Does NOT apply payments (PaymentApplicationService).
        - Does NOT commit.
    """

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition(self, invoice: InvoiceModel, event: InvoiceEvent) -> InvoiceStatus:
        """Apply ``event`` to ``invoice`` or raise InvalidInvoiceTransitionError."""
        from_status = invoice.status
        target = next_status(invoice.status_enum, event, invoice.id)
        invoice.status = target.value
        logger.info(
            "invoice_status_changed",
            extra={
                "invoice_id": str(invoice.id),
                "from_status": from_status,
                "to_status": target.value,
                "event": InvoiceEvent(event).value,
            },
        )
        return target

    def issue(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._repo.get_invoice(invoice_id)
        next_status(invoice.status_enum, InvoiceEvent.ISSUE, invoice.id)

        if not invoice.lines:
            raise EmptyInvoiceError(invoice.id, "invoice has no lines")
        if invoice.total_amount <= ZERO:
            raise EmptyInvoiceError(invoice.id, "total must be greater than zero")

        settings = self._repo.get_lease_billing_settings(invoice.lease_id, invoice.period_start)
        now = self._clock.now_utc()

        self.transition(invoice, InvoiceEvent.ISSUE)
        invoice.issued_at = now
        invoice.updated_by_id = self._actor_id
        # Status is flushed first so the counter lock is taken inside an
        # open write transaction.
        self.session.flush()

        invoice.invoice_number = SequenceService(self.session).next_document_number(
            SequenceService.INVOICE,
            invoice.org_id,
            settings.invoice_prefix,
            now.strftime("%Y%m"),
        )
        self.session.flush()

        logger.info(
            "invoice_issued",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "total_amount": str(invoice.total_amount),
            },
        )
        self._publisher.publish(
            InvoiceIssued(
                org_id=invoice.org_id,
                occurred_at=now,
                invoice_id=invoice.id,
                lease_id=invoice.lease_id,
                invoice_number=invoice.invoice_number,
                total_amount=invoice.total_amount,
                due_date=invoice.due_date,
            )
        )
        return invoice

    def void(self, invoice_id: UUID, reason: str) -> InvoiceModel:
        if not reason or not reason.strip():
            raise MissingReasonError("void an invoice")
        invoice = self._repo.get_invoice(invoice_id)
        if invoice.paid_amount > ZERO:
            raise BusinessRuleViolation(
                f"Invoice {invoice.id} has received {invoice.paid_amount}; "
                "refund the payments before voiding"
            )

        now = self._clock.now_utc()
        self.transition(invoice, InvoiceEvent.VOID)
        invoice.voided_at = now
        invoice.void_reason = reason.strip()
        invoice.updated_by_id = self._actor_id
        self.session.flush()

        self._publisher.publish(
            InvoiceVoided(
                org_id=invoice.org_id,
                occurred_at=now,
                invoice_id=invoice.id,
                reason=invoice.void_reason,
            )
        )
        return invoice

    def cancel(self, invoice_id: UUID, reason: str | None = None) -> InvoiceModel:
        invoice = self._repo.get_invoice(invoice_id)
        self.transition(invoice, InvoiceEvent.CANCEL)
        invoice.cancelled_at = self._clock.now_utc()
        invoice.cancel_reason = reason
        invoice.updated_by_id = self._actor_id
        self.session.flush()
        return invoice

    def mark_overdue_if_past_due(self, invoice_id: UUID) -> bool:
        """Move an unpaid invoice past its due date to Overdue.

        Returns True when the invoice changed.  Calling it again, or on an
        invoice that is not past due, is a no-op.
        """
        invoice = self._repo.get_invoice(invoice_id)
        today = self._clock.today()
        if invoice.status_enum not in (InvoiceStatus.ISSUED, InvoiceStatus.PARTIALLY_PAID):
            return False
        if invoice.due_date >= today or invoice.balance_amount <= ZERO:
            return False

        now = self._clock.now_utc()
        self.transition(invoice, InvoiceEvent.MARK_OVERDUE)
        invoice.overdue_at = now
        self.session.flush()

        self._publisher.publish(
            InvoiceOverdue(
                org_id=invoice.org_id,
                occurred_at=now,
                invoice_id=invoice.id,
                lease_id=invoice.lease_id,
                balance_amount=invoice.balance_amount,
                due_date=invoice.due_date,
            )
        )
        return True

    # -------------------------------------------------------------------------
    # Draft-only line editing
    # -------------------------------------------------------------------------

    def _draft(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._repo.get_invoice(invoice_id)
        if invoice.status_enum is not InvoiceStatus.DRAFT:
            raise InvoiceImmutableError(invoice.id, invoice.status)
        return invoice

    def _line_tax(self, invoice: InvoiceModel, line: InvoiceLineDraft):
        settings = self._repo.get_lease_billing_settings(invoice.lease_id, invoice.period_start)
        if settings.tax_applicable and line.taxable:
            return round_money(line.amount * settings.tax_rate)
        return ZERO

    def _new_line(self, invoice: InvoiceModel, line: InvoiceLineDraft, number: int):
        amount = to_decimal(line.amount)
        if amount < ZERO:
            raise ValidationError(f"Line amount cannot be negative: {amount}")
        if round_money(amount) != amount:
            raise InvalidAmountError(amount, "Line amount has more than two decimal places")
        line = replace(
            line,
            amount=amount,
            charge_kind=parse_enum(ChargeKind, line.charge_kind, "charge_kind"),
            quantity=to_decimal(line.quantity),
            unit_price=None if line.unit_price is None else to_decimal(line.unit_price),
        )
        return InvoiceLineModel.from_dto(
            line, number, self._line_tax(invoice, line), self._actor_id
        )

    def _recompute_totals(self, invoice: InvoiceModel) -> None:
        invoice.sub_total = round_money(sum((l.amount for l in invoice.lines), ZERO))
        invoice.tax_amount = round_money(sum((l.tax_amount for l in invoice.lines), ZERO))
        invoice.total_amount = invoice.sub_total + invoice.tax_amount
        invoice.recompute_balance()
        invoice.updated_by_id = self._actor_id
        self.session.flush()

    def add_line(self, invoice_id: UUID, line: InvoiceLineDraft) -> InvoiceModel:
        invoice = self._draft(invoice_id)
        number = max((l.line_number for l in invoice.lines), default=0) + 1
        invoice.lines.append(self._new_line(invoice, line, number))
        self._recompute_totals(invoice)
        return invoice

    def remove_line(self, invoice_id: UUID, line_number: int) -> InvoiceModel:
        invoice = self._draft(invoice_id)
        line = next((l for l in invoice.lines if l.line_number == line_number), None)
        if line is None:
            raise ValidationError(f"Invoice {invoice.id} has no line {line_number}")
        invoice.lines.remove(line)
        self._recompute_totals(invoice)
        return invoice

    def replace_lines(self, invoice_id: UUID, lines: list[InvoiceLineDraft]) -> InvoiceModel:
        invoice = self._draft(invoice_id)
        invoice.lines.clear()
        # Old rows must be gone before new rows reuse their line numbers.
        self.session.flush()
        for number, line in enumerate(lines, start=1):
            invoice.lines.append(self._new_line(invoice, line, number))
        self._recompute_totals(invoice)
        return invoice
