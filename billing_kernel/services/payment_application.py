"""
PaymentApplicationService -- record payments against invoices.

Responsibility:
    Validates and applies a payment to one invoice: creates the Payment,
    appends its status history, moves paid/balance, and drives the invoice
    status through InvoiceLifecycleManager.  Also records gateway status
    changes on pending payments and refunds completed ones.

Architecture position:
    Kernel > Services.  Called by the BillingEngine facade (wrapped in
    ``run_unit_of_work`` for the optimistic retry) and by
    PaymentConfirmationService inside its own transaction.

Invariants enforced:
    - Only Issued, PartiallyPaid and Overdue invoices accept payments.
    - 0 < amount <= balance.  Over-payment is always rejected.
    - balance = total - paid - credited after every change.
    - A Completed payment's amount never changes.  A refund is a separate
      compensating payment row and the original moves to Refunded.
    - Every payment status change appends one history row.

Concurrency:
    The invoice UPDATE is compare-and-swapped on ``version_id``.  A lost
    race raises ``StaleDataError`` at flush or commit; the caller's unit of
    work retries on a fresh session.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.events import PaymentApplied, PaymentRefunded
from billing_kernel.domain.invoice_state import InvoiceEvent, payment_event
from billing_kernel.domain.money import ZERO, round_money, to_decimal
from billing_kernel.domain.payment_state import validate_payment_transition
from billing_kernel.domain.types import (
    PAYABLE_STATUSES,
    InvoiceStatus,
    PaymentMode,
    PaymentStatus,
    PaymentType,
    parse_enum,
)
from billing_kernel.exceptions import (
    InvalidAmountError,
    InvoiceNotPayableError,
    MissingReasonError,
    OverpaymentError,
    RefundNotAllowedError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.invoice import InvoiceModel
from billing_kernel.models.payment import PaymentModel
from billing_kernel.services.base import BaseService
from billing_kernel.services.invoice_lifecycle import InvoiceLifecycleManager

logger = get_logger("services.payment_application")

_REOPENABLE = frozenset(
    {InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE}
)


@dataclass(frozen=True)
class PaymentReceipt:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    payment_mode: PaymentMode
    payment_status: PaymentStatus
    invoice_status: InvoiceStatus
    paid_amount: Decimal
    balance_amount: Decimal


def validate_payment_amount(amount) -> Decimal:
    amount = to_decimal(amount)
    if amount <= ZERO:
        raise InvalidAmountError(amount, "Payment amount must be greater than zero")
    if round_money(amount) != amount:
        raise InvalidAmountError(amount, "Payment amount has more than two decimal places")
    return amount


def check_payable(invoice: InvoiceModel, amount: Decimal) -> None:
    """Raise unless ``invoice`` can take ``amount`` right now."""
    if invoice.status_enum not in PAYABLE_STATUSES:
        raise InvoiceNotPayableError(invoice.id, invoice.status)
    if amount > invoice.balance_amount:
        raise OverpaymentError(invoice.id, amount, invoice.balance_amount)


class PaymentApplicationService(BaseService):
    """
    Contract:
        Each public method performs one attempt in the caller's session
        and flushes.  Events are queued on the publisher.

    Non-goals:
        - Does NOT retry; see ``run_unit_of_work``.
        - Does NOT talk to payment gateways; gateway fields are stored as
          reported.
    """

    def __init__(self, session, clock=None, publisher=None, actor_id=SYSTEM_ACTOR_ID):
        super().__init__(session, clock, publisher, actor_id)
        self._lifecycle = InvoiceLifecycleManager(
            session, self._clock, self._publisher, self._actor_id
        )

    def _receipt(self, payment: PaymentModel, invoice: InvoiceModel) -> PaymentReceipt:
        return PaymentReceipt(
            payment_id=payment.id,
            invoice_id=invoice.id,
            amount=payment.amount,
            payment_mode=payment.mode_enum,
            payment_status=payment.status_enum,
            invoice_status=invoice.status_enum,
            paid_amount=invoice.paid_amount,
            balance_amount=invoice.balance_amount,
        )

    def _new_payment(
        self,
        invoice: InvoiceModel,
        amount: Decimal,
        mode: PaymentMode,
        status: PaymentStatus,
        payment_date: date | None,
        reference: str | None,
        payment_type: PaymentType,
        **metadata,
    ) -> PaymentModel:
        now = self._clock.now_utc()
        payment = PaymentModel(
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            lease_id=invoice.lease_id,
            amount=amount,
            payment_mode=PaymentMode(mode).value,
            payment_type=PaymentType(payment_type).value,
            status=status.value,
            payment_date=payment_date or self._clock.today(),
            transaction_reference=reference,
            completed_at=now if status is PaymentStatus.COMPLETED else None,
            created_by_id=self._actor_id,
            **metadata,
        )
        self._repo.save_payment(payment)
        self._repo.append_status_history(payment, None, status, self._actor_id, now)
        return payment

    def _credit_invoice(self, invoice: InvoiceModel, payment: PaymentModel) -> None:
        """Move ``payment.amount`` onto the invoice and transition it."""
        invoice.paid_amount = invoice.paid_amount + payment.amount
        invoice.recompute_balance()
        event = payment_event(invoice.total_amount - invoice.balance_amount, invoice.total_amount)
        self._lifecycle.transition(invoice, event)
        if event is InvoiceEvent.SETTLE:
            invoice.paid_at = self._clock.now_utc()
        invoice.updated_by_id = self._actor_id
        self.session.flush()

        logger.info(
            "payment_applied",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "amount": str(payment.amount),
                "paid_amount": str(invoice.paid_amount),
                "balance_amount": str(invoice.balance_amount),
                "invoice_status": invoice.status,
            },
        )
        self._publisher.publish(
            PaymentApplied(
                org_id=invoice.org_id,
                occurred_at=self._clock.now_utc(),
                invoice_id=invoice.id,
                payment_id=payment.id,
                amount=payment.amount,
                balance_amount=invoice.balance_amount,
                invoice_status=invoice.status,
            )
        )

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def apply_payment(
        self,
        invoice_id: UUID,
        amount,
        mode: PaymentMode,
        reference: str | None = None,
        payment_date: date | None = None,
        payment_type: PaymentType = PaymentType.INVOICE,
        **metadata,
    ) -> PaymentReceipt:
        """Record a Completed payment and apply it to the invoice.

        ``metadata`` carries the optional PaymentModel fields
        (received_by, payer_name, notes, gateway_*, biller_id, consumer_id,
        utility_statement_id, deposit_transaction_id).
        """
        amount = validate_payment_amount(amount)
        mode = parse_enum(PaymentMode, mode, "mode")
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(self._actor_id)):
            invoice = self._repo.get_invoice(invoice_id)
            check_payable(invoice, amount)
            payment = self._new_payment(
                invoice, amount, mode, PaymentStatus.COMPLETED,
                payment_date, reference, payment_type, **metadata,
            )
            self._credit_invoice(invoice, payment)
            return self._receipt(payment, invoice)

    def record_pending_payment(
        self,
        invoice_id: UUID,
        amount,
        mode: PaymentMode,
        reference: str | None = None,
        payment_date: date | None = None,
        status: PaymentStatus = PaymentStatus.PENDING,
        **metadata,
    ) -> PaymentModel:
        """Record a gateway payment that has not settled yet.

        The invoice is untouched until ``record_payment_status`` moves the
        payment to Completed.
        """
        amount = validate_payment_amount(amount)
        mode = parse_enum(PaymentMode, mode, "mode")
        status = parse_enum(PaymentStatus, status, "status")
        if status not in (
            PaymentStatus.PENDING,
            PaymentStatus.PROCESSING,
            PaymentStatus.PENDING_CONFIRMATION,
        ):
            raise InvalidAmountError(amount, f"A new payment cannot start as {status.value}")
        invoice = self._repo.get_invoice(invoice_id)
        check_payable(invoice, amount)
        return self._new_payment(
            invoice, amount, mode, status, payment_date, reference,
            PaymentType.INVOICE, **metadata,
        )

    def record_payment_status(
        self,
        payment_id: UUID,
        to_status: PaymentStatus,
        reason: str | None = None,
        gateway_response: str | None = None,
    ) -> PaymentReceipt:
        """Move a payment along the payment transition table.

        Completing applies the amount to the invoice (re-validated against
        the current balance).  Refunding delegates to ``refund_payment``.
        """
        to_status = parse_enum(PaymentStatus, to_status, "to_status")
        payment = self._repo.get_payment(payment_id)
        if to_status is PaymentStatus.REFUNDED:
            return self.refund_payment(payment_id, reason or "")

        from_status = payment.status_enum
        validate_payment_transition(payment.id, from_status, to_status)
        invoice = self._repo.get_invoice(payment.invoice_id)
        if to_status is PaymentStatus.COMPLETED:
            check_payable(invoice, payment.amount)

        now = self._clock.now_utc()
        payment.status = to_status.value
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        if to_status is PaymentStatus.COMPLETED:
            payment.completed_at = now
        payment.updated_by_id = self._actor_id
        self._repo.append_status_history(
            payment, from_status, to_status, self._actor_id, now, reason
        )
        logger.info(
            "payment_status_changed",
            extra={
                "payment_id": str(payment.id),
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        if to_status is PaymentStatus.COMPLETED:
            self._credit_invoice(invoice, payment)
        return self._receipt(payment, invoice)

    def refund_payment(self, payment_id: UUID, reason: str) -> PaymentReceipt:
        """Refund a Completed payment in full.

        The original moves to Refunded, a compensating Refund row is
        recorded, and the invoice is reopened through the transition table.
        Returns the receipt of the compensating row.
        """
        if not reason or not reason.strip():
            raise MissingReasonError("refund a payment")
        payment = self._repo.get_payment(payment_id)
        if payment.type_enum is PaymentType.REFUND:
            raise RefundNotAllowedError(payment.id, "a refund cannot itself be refunded")
        if payment.status_enum is not PaymentStatus.COMPLETED:
            raise RefundNotAllowedError(payment.id, f"payment is {payment.status}")
        validate_payment_transition(payment.id, payment.status_enum, PaymentStatus.REFUNDED)

        invoice = self._repo.get_invoice(payment.invoice_id)
        now = self._clock.now_utc()

        payment.status = PaymentStatus.REFUNDED.value
        payment.updated_by_id = self._actor_id
        self._repo.append_status_history(
            payment, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED,
            self._actor_id, now, reason.strip(),
        )
        refund = self._new_payment(
            invoice, payment.amount, payment.mode_enum, PaymentStatus.COMPLETED,
            None, payment.transaction_reference, PaymentType.REFUND,
            refund_of_payment_id=payment.id,
            notes=reason.strip(),
        )

        invoice.paid_amount = invoice.paid_amount - payment.amount
        invoice.recompute_balance()
        if invoice.status_enum in _REOPENABLE:
            event = (
                InvoiceEvent.REOPEN_UNPAID
                if invoice.paid_amount == ZERO
                else InvoiceEvent.REOPEN_PARTIAL
            )
            self._lifecycle.transition(invoice, event)
            invoice.paid_at = None
        invoice.updated_by_id = self._actor_id
        self.session.flush()

        logger.info(
            "payment_refunded",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "refund_payment_id": str(refund.id),
                "amount": str(payment.amount),
            },
        )
        self._publisher.publish(
            PaymentRefunded(
                org_id=invoice.org_id,
                occurred_at=now,
                invoice_id=invoice.id,
                payment_id=payment.id,
                refund_payment_id=refund.id,
                amount=payment.amount,
            )
        )
        return self._receipt(refund, invoice)
