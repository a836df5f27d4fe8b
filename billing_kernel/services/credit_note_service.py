"""
CreditNoteService -- reduce what a tenant owes without touching the invoice lines.

Responsibility:
    Issues numbered credit notes against Issued, PartiallyPaid, Paid or
    Overdue invoices.  A credit note raises ``credited_amount`` and lowers
    the balance; lines and totals stay exactly as issued.

Invariants enforced:
    - 0 < amount <= current balance.
    - balance = total - paid - credited afterwards.
    - A credit that brings the balance to zero settles the invoice.
    - Numbers are ``<prefix>-<YYYYMM>-<NNNNNN>``, unique per organization.
"""

from uuid import UUID

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.events import CreditNoteIssued
from billing_kernel.domain.invoice_state import InvoiceEvent, can_apply
from billing_kernel.domain.money import ZERO
from billing_kernel.domain.types import CREDITABLE_STATUSES, CreditNoteReason, parse_enum
from billing_kernel.exceptions import (
    CreditNoteExceedsBalanceError,
    CreditNoteNotAllowedError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.credit_note import CreditNoteModel
from billing_kernel.services.base import BaseService
from billing_kernel.services.invoice_lifecycle import InvoiceLifecycleManager
from billing_kernel.services.payment_application import validate_payment_amount
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.credit_note")


class CreditNoteService(BaseService):

    def __init__(
        self,
        session,
        clock=None,
        publisher=None,
        actor_id=SYSTEM_ACTOR_ID,
        prefix: str = "CN",
    ):
        super().__init__(session, clock, publisher, actor_id)
        self._prefix = prefix

    def issue_credit_note(
        self,
        invoice_id: UUID,
        amount,
        reason: CreditNoteReason,
        notes: str | None = None,
    ) -> CreditNoteModel:
        reason = parse_enum(CreditNoteReason, reason, "reason")
        amount = validate_payment_amount(amount)
        invoice = self._repo.get_invoice(invoice_id)
        if invoice.status_enum not in CREDITABLE_STATUSES:
            raise CreditNoteNotAllowedError(invoice.id, invoice.status)
        if amount > invoice.balance_amount:
            raise CreditNoteExceedsBalanceError(invoice.id, amount, invoice.balance_amount)

        now = self._clock.now_utc()
        invoice.credited_amount = invoice.credited_amount + amount
        invoice.recompute_balance()
        if invoice.balance_amount == ZERO and can_apply(invoice.status_enum, InvoiceEvent.SETTLE):
            InvoiceLifecycleManager(
                self.session, self._clock, self._publisher, self._actor_id
            ).transition(invoice, InvoiceEvent.SETTLE)
            invoice.paid_at = now
        invoice.updated_by_id = self._actor_id
        # Invoice first: the counter lock is taken inside an open write
        # transaction.
        self.session.flush()

        number = SequenceService(self.session).next_document_number(
            SequenceService.CREDIT_NOTE, invoice.org_id, self._prefix, now.strftime("%Y%m")
        )
        credit_note = CreditNoteModel(
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            credit_note_number=number,
            amount=amount,
            reason=reason.value,
            notes=notes,
            issued_at=now,
            created_by_id=self._actor_id,
        )
        self.session.add(credit_note)
        self.session.flush()

        logger.info(
            "credit_note_issued",
            extra={
                "invoice_id": str(invoice.id),
                "credit_note_number": number,
                "amount": str(amount),
                "balance_amount": str(invoice.balance_amount),
            },
        )
        self._publisher.publish(
            CreditNoteIssued(
                org_id=invoice.org_id,
                occurred_at=now,
                credit_note_id=credit_note.id,
                invoice_id=invoice.id,
                credit_note_number=number,
                amount=amount,
            )
        )
        return credit_note
