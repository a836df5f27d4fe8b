"""
Invoice state machine.

Responsibility:
    The single, auditable table of legal invoice transitions, keyed by
    ``(current status, event)``.  Every status change anywhere in the
    engine goes through ``next_status``.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Transitions:
    Draft          --ISSUE-->            Issued
    Issued         --PARTIAL_PAYMENT-->  PartiallyPaid
    PartiallyPaid  --PARTIAL_PAYMENT-->  PartiallyPaid
    Overdue        --PARTIAL_PAYMENT-->  Overdue
    Issued | PartiallyPaid | Overdue --SETTLE--> Paid
    Issued | PartiallyPaid --MARK_OVERDUE--> Overdue
    Draft | Issued --VOID--> Voided                     (terminal)
    Draft | Issued | PartiallyPaid | Overdue --CANCEL--> Cancelled (terminal)
    Paid | PartiallyPaid --REOPEN_UNPAID--> Issued
    Paid | PartiallyPaid --REOPEN_PARTIAL--> PartiallyPaid
    Overdue --REOPEN_*--> Overdue
                                   (a completed payment was refunded)

Failure modes:
    - InvalidInvoiceTransitionError for any pair missing from the table.
"""

from __future__ import annotations

from enum import Enum

from billing_kernel.domain.types import InvoiceStatus
from billing_kernel.exceptions import InvalidInvoiceTransitionError


class InvoiceEvent(str, Enum):
    ISSUE = "issue"
    PARTIAL_PAYMENT = "partial_payment"
    SETTLE = "settle"
    MARK_OVERDUE = "mark_overdue"
    VOID = "void"
    CANCEL = "cancel"
    REOPEN_UNPAID = "reopen_unpaid"
    REOPEN_PARTIAL = "reopen_partial"


_S = InvoiceStatus
_E = InvoiceEvent

TRANSITIONS: dict[tuple[InvoiceStatus, InvoiceEvent], InvoiceStatus] = {
    (_S.DRAFT, _E.ISSUE): _S.ISSUED,
    (_S.ISSUED, _E.PARTIAL_PAYMENT): _S.PARTIALLY_PAID,
    (_S.PARTIALLY_PAID, _E.PARTIAL_PAYMENT): _S.PARTIALLY_PAID,
    (_S.OVERDUE, _E.PARTIAL_PAYMENT): _S.OVERDUE,
    (_S.ISSUED, _E.SETTLE): _S.PAID,
    (_S.PARTIALLY_PAID, _E.SETTLE): _S.PAID,
    (_S.OVERDUE, _E.SETTLE): _S.PAID,
    (_S.ISSUED, _E.MARK_OVERDUE): _S.OVERDUE,
    (_S.PARTIALLY_PAID, _E.MARK_OVERDUE): _S.OVERDUE,
    (_S.DRAFT, _E.VOID): _S.VOIDED,
    (_S.ISSUED, _E.VOID): _S.VOIDED,
    (_S.DRAFT, _E.CANCEL): _S.CANCELLED,
    (_S.ISSUED, _E.CANCEL): _S.CANCELLED,
    (_S.PARTIALLY_PAID, _E.CANCEL): _S.CANCELLED,
    (_S.OVERDUE, _E.CANCEL): _S.CANCELLED,
    (_S.PAID, _E.REOPEN_UNPAID): _S.ISSUED,
    (_S.PARTIALLY_PAID, _E.REOPEN_UNPAID): _S.ISSUED,
    (_S.OVERDUE, _E.REOPEN_UNPAID): _S.OVERDUE,
    (_S.PAID, _E.REOPEN_PARTIAL): _S.PARTIALLY_PAID,
    (_S.PARTIALLY_PAID, _E.REOPEN_PARTIAL): _S.PARTIALLY_PAID,
    (_S.OVERDUE, _E.REOPEN_PARTIAL): _S.OVERDUE,
}

TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset({_S.VOIDED, _S.CANCELLED})


def can_apply(status: InvoiceStatus, event: InvoiceEvent) -> bool:
    return (InvoiceStatus(status), InvoiceEvent(event)) in TRANSITIONS


def next_status(
    status: InvoiceStatus,
    event: InvoiceEvent,
    invoice_id: object = None,
) -> InvoiceStatus:
    """Look up the target status or raise.

    Raises:
        InvalidInvoiceTransitionError: if ``(status, event)`` is not legal.
    """
    status = InvoiceStatus(status)
    event = InvoiceEvent(event)
    target = TRANSITIONS.get((status, event))
    if target is None:
        raise InvalidInvoiceTransitionError(invoice_id, status.value, event.value)
    return target


def allowed_events(status: InvoiceStatus) -> frozenset[InvoiceEvent]:
    """Events legal from ``status``; empty for terminal statuses."""
    status = InvoiceStatus(status)
    return frozenset(event for (s, event) in TRANSITIONS if s is status)


def payment_event(paid_amount, total_amount) -> InvoiceEvent:
    """SETTLE when the invoice is fully covered, PARTIAL_PAYMENT otherwise."""
    return InvoiceEvent.SETTLE if paid_amount >= total_amount else InvoiceEvent.PARTIAL_PAYMENT
