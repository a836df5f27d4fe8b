"""
Invoice and payment state tables.

The tables are the single authority on status changes, so they are tested
exhaustively against the documented transitions.
"""

from decimal import Decimal

import pytest

from billing_kernel.domain.invoice_state import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    InvoiceEvent,
    allowed_events,
    can_apply,
    next_status,
    payment_event,
)
from billing_kernel.domain.payment_state import (
    VALID_PAYMENT_TRANSITIONS,
    validate_payment_transition,
    validate_request_pending,
)
from billing_kernel.domain.types import ConfirmationStatus, InvoiceStatus, PaymentStatus
from billing_kernel.exceptions import (
    BusinessRuleViolation,
    ConfirmationNotPendingError,
    InvalidInvoiceTransitionError,
    InvalidPaymentTransitionError,
)

S = InvoiceStatus
E = InvoiceEvent


class TestInvoiceTransitions:

    @pytest.mark.parametrize(
        "status, event, expected",
        [
            (S.DRAFT, E.ISSUE, S.ISSUED),
            (S.ISSUED, E.PARTIAL_PAYMENT, S.PARTIALLY_PAID),
            (S.PARTIALLY_PAID, E.SETTLE, S.PAID),
            (S.OVERDUE, E.PARTIAL_PAYMENT, S.OVERDUE),
            (S.OVERDUE, E.SETTLE, S.PAID),
            (S.ISSUED, E.MARK_OVERDUE, S.OVERDUE),
            (S.DRAFT, E.VOID, S.VOIDED),
            (S.OVERDUE, E.CANCEL, S.CANCELLED),
            (S.PAID, E.REOPEN_UNPAID, S.ISSUED),
            (S.PAID, E.REOPEN_PARTIAL, S.PARTIALLY_PAID),
        ],
    )
    def test_documented_transitions(self, status, event, expected):
        assert next_status(status, event) is expected

    @pytest.mark.parametrize(
        "status, event",
        [
            (S.PAID, E.VOID),
            (S.PAID, E.CANCEL),
            (S.PARTIALLY_PAID, E.VOID),
            (S.ISSUED, E.ISSUE),
            (S.DRAFT, E.SETTLE),
            (S.OVERDUE, E.MARK_OVERDUE),
        ],
    )
    def test_illegal_transitions_raise(self, status, event):
        with pytest.raises(InvalidInvoiceTransitionError) as exc_info:
            next_status(status, event, "inv-1")
        assert exc_info.value.from_status == status.value
        assert exc_info.value.event == event.value
        assert isinstance(exc_info.value, BusinessRuleViolation)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exits(self, status):
        assert allowed_events(status) == frozenset()
        for event in E:
            assert not can_apply(status, event)

    def test_every_target_is_a_known_status(self):
        assert all(isinstance(target, InvoiceStatus) for target in TRANSITIONS.values())

    def test_accepts_string_values(self):
        assert next_status("draft", "issue") is S.ISSUED

    def test_payment_event(self):
        assert payment_event(Decimal("1000"), Decimal("1000")) is E.SETTLE
        assert payment_event(Decimal("400"), Decimal("1000")) is E.PARTIAL_PAYMENT


class TestPaymentTransitions:

    def test_completed_only_refunds(self):
        assert VALID_PAYMENT_TRANSITIONS[PaymentStatus.COMPLETED] == {PaymentStatus.REFUNDED}
        validate_payment_transition("p-1", PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
        with pytest.raises(InvalidPaymentTransitionError):
            validate_payment_transition("p-1", PaymentStatus.COMPLETED, PaymentStatus.FAILED)

    @pytest.mark.parametrize(
        "terminal",
        [PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED, PaymentStatus.REJECTED],
    )
    def test_terminal_payment_statuses(self, terminal):
        for target in PaymentStatus:
            with pytest.raises(InvalidPaymentTransitionError):
                validate_payment_transition("p-1", terminal, target)

    def test_pending_can_settle(self):
        validate_payment_transition("p-1", PaymentStatus.PENDING, PaymentStatus.COMPLETED)
        validate_payment_transition("p-1", PaymentStatus.PROCESSING, PaymentStatus.FAILED)

    def test_request_leaves_pending_once(self):
        validate_request_pending("r-1", ConfirmationStatus.PENDING)
        for status in (
            ConfirmationStatus.CONFIRMED,
            ConfirmationStatus.REJECTED,
            ConfirmationStatus.CANCELLED,
        ):
            with pytest.raises(ConfirmationNotPendingError):
                validate_request_pending("r-1", status)
