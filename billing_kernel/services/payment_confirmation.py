"""
PaymentConfirmationService -- tenant-reported cash payments awaiting review.

Responsibility:
    A tenant who paid in cash submits a confirmation request (optionally
    with a proof file reference).  Staff confirm it, which applies a Cash
    payment, or reject it with a reason.  The tenant may withdraw it while
    it is still Pending.

Architecture position:
    Kernel > Services.  Uses PaymentApplicationService for the payment so
    confirmation and payment commit in one transaction.

Invariants enforced:
    - Pending -> Confirmed | Rejected | Cancelled, exactly once.  The
      request row carries ``version_id``, so two concurrent reviews cannot
      both leave Pending.
    - Submission requires a payable invoice and 0 < amount <= balance.
      Confirmation re-validates against the balance at that moment.
    - Rejection requires a non-empty reason.
    - Proof files are referenced, never stored.  Access URLs come from the
      injected ProofLinkProvider.
"""

from datetime import date
from uuid import UUID

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.events import (
    ConfirmationRequestCreated,
    ConfirmationRequestRejected,
)
from billing_kernel.domain.payment_state import validate_request_pending
from billing_kernel.domain.ports import ProofLinkProvider
from billing_kernel.domain.types import ConfirmationStatus, PaymentMode
from billing_kernel.exceptions import BusinessRuleViolation, MissingReasonError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.payment import PaymentConfirmationRequestModel
from billing_kernel.services.base import BaseService
from billing_kernel.services.payment_application import (
    PaymentApplicationService,
    check_payable,
    validate_payment_amount,
)

logger = get_logger("services.payment_confirmation")


class PaymentConfirmationService(BaseService):

    def __init__(
        self,
        session,
        clock=None,
        publisher=None,
        actor_id=SYSTEM_ACTOR_ID,
        proof_links: ProofLinkProvider | None = None,
        proof_link_ttl_seconds: int = 900,
    ):
        super().__init__(session, clock, publisher, actor_id)
        self._proof_links = proof_links
        self._proof_link_ttl_seconds = proof_link_ttl_seconds

    def _log_review(self, request: PaymentConfirmationRequestModel) -> None:
        logger.info(
            "confirmation_request_reviewed",
            extra={
                "request_id": str(request.id),
                "invoice_id": str(request.invoice_id),
                "status": request.status,
            },
        )

    def create_request(
        self,
        invoice_id: UUID,
        amount,
        payment_date: date | None = None,
        receipt_number: str | None = None,
        notes: str | None = None,
        proof_file_ref: str | None = None,
    ) -> PaymentConfirmationRequestModel:
        amount = validate_payment_amount(amount)
        invoice = self._repo.get_invoice(invoice_id)
        check_payable(invoice, amount)

        request = PaymentConfirmationRequestModel(
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            lease_id=invoice.lease_id,
            amount=amount,
            payment_date=payment_date or self._clock.today(),
            receipt_number=receipt_number,
            notes=notes,
            proof_file_ref=proof_file_ref,
            status=ConfirmationStatus.PENDING.value,
            submitted_by=self._actor_id,
            created_by_id=self._actor_id,
        )
        self._repo.save_confirmation_request(request)

        logger.info(
            "confirmation_request_created",
            extra={
                "request_id": str(request.id),
                "invoice_id": str(invoice.id),
                "amount": str(amount),
            },
        )
        self._publisher.publish(
            ConfirmationRequestCreated(
                org_id=invoice.org_id,
                occurred_at=self._clock.now_utc(),
                request_id=request.id,
                invoice_id=invoice.id,
                amount=amount,
            )
        )
        return request

    def confirm_request(
        self, request_id: UUID, response: str | None = None
    ) -> PaymentConfirmationRequestModel:
        """Apply the reported amount as a Cash payment and mark Confirmed."""
        request = self._repo.get_confirmation_request(request_id)
        validate_request_pending(request.id, request.status)

        receipt = PaymentApplicationService(
            self.session, self._clock, self._publisher, self._actor_id
        ).apply_payment(
            request.invoice_id,
            request.amount,
            PaymentMode.CASH,
            reference=request.receipt_number,
            payment_date=request.payment_date,
            notes=request.notes,
            received_by=str(self._actor_id),
        )

        request.status = ConfirmationStatus.CONFIRMED.value
        request.reviewed_by = self._actor_id
        request.reviewed_at = self._clock.now_utc()
        request.review_response = response
        request.payment_id = receipt.payment_id
        request.updated_by_id = self._actor_id
        self.session.flush()
        self._log_review(request)
        return request

    def reject_request(self, request_id: UUID, reason: str) -> PaymentConfirmationRequestModel:
        if not reason or not reason.strip():
            raise MissingReasonError("reject a payment confirmation request")
        request = self._repo.get_confirmation_request(request_id)
        validate_request_pending(request.id, request.status)

        now = self._clock.now_utc()
        request.status = ConfirmationStatus.REJECTED.value
        request.reviewed_by = self._actor_id
        request.reviewed_at = now
        request.review_response = reason.strip()
        request.updated_by_id = self._actor_id
        self.session.flush()
        self._log_review(request)

        self._publisher.publish(
            ConfirmationRequestRejected(
                org_id=request.org_id,
                occurred_at=now,
                request_id=request.id,
                invoice_id=request.invoice_id,
                reason=request.review_response,
            )
        )
        return request

    def cancel_request(self, request_id: UUID) -> PaymentConfirmationRequestModel:
        """Withdraw a Pending request.  Only its submitter may do this."""
        request = self._repo.get_confirmation_request(request_id)
        validate_request_pending(request.id, request.status)
        if request.submitted_by != self._actor_id:
            raise BusinessRuleViolation(
                f"Only the submitter can cancel payment confirmation request {request.id}"
            )
        request.status = ConfirmationStatus.CANCELLED.value
        request.updated_by_id = self._actor_id
        self.session.flush()
        self._log_review(request)
        return request

    def get_proof_url(self, request_id: UUID) -> str | None:
        """Short-lived access URL for the request's proof file, if it has one."""
        request = self._repo.get_confirmation_request(request_id)
        if not request.proof_file_ref:
            return None
        if self._proof_links is None:
            raise BusinessRuleViolation("No proof file link provider is configured")
        return self._proof_links.get_access_url(
            request.proof_file_ref, expires_in_seconds=self._proof_link_ttl_seconds
        )
