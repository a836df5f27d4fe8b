"""
Payment and confirmation-request state tables.

Payments:
    Pending | Processing | PendingConfirmation may still settle or fail.
    Completed may only become Refunded.
    Failed, Cancelled, Refunded and Rejected are terminal.

Confirmation requests:
    Pending -> Confirmed | Rejected | Cancelled, exactly once.
"""

from __future__ import annotations

from billing_kernel.domain.types import ConfirmationStatus, PaymentStatus
from billing_kernel.exceptions import (
    ConfirmationNotPendingError,
    InvalidPaymentTransitionError,
)

_P = PaymentStatus

VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    _P.PENDING: frozenset({_P.PROCESSING, _P.COMPLETED, _P.FAILED, _P.CANCELLED}),
    _P.PROCESSING: frozenset({_P.COMPLETED, _P.FAILED, _P.CANCELLED}),
    _P.PENDING_CONFIRMATION: frozenset({_P.COMPLETED, _P.REJECTED, _P.CANCELLED}),
    _P.COMPLETED: frozenset({_P.REFUNDED}),
    _P.FAILED: frozenset(),
    _P.CANCELLED: frozenset(),
    _P.REFUNDED: frozenset(),
    _P.REJECTED: frozenset(),
}


def validate_payment_transition(
    payment_id: object,
    current: PaymentStatus,
    target: PaymentStatus,
) -> None:
    """Raise InvalidPaymentTransitionError unless ``current -> target`` is allowed."""
    current = PaymentStatus(current)
    target = PaymentStatus(target)
    if target not in VALID_PAYMENT_TRANSITIONS[current]:
        raise InvalidPaymentTransitionError(payment_id, current.value, target.value)


def validate_request_pending(request_id: object, status: ConfirmationStatus) -> None:
    """A confirmation request moves out of Pending exactly once."""
    status = ConfirmationStatus(status)
    if status is not ConfirmationStatus.PENDING:
        raise ConfirmationNotPendingError(request_id, status.value)
