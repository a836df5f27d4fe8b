"""
Domain events and an in-process publisher.

Responsibility:
    The core announces what happened (an invoice was issued, a payment was
    applied) and lets external collaborators decide what to do about it.
    Notification delivery is not implemented here.

Contract:
    - Events are frozen dataclasses with a class-level ``name``.
    - Services queue events on a publisher while their transaction is open;
      the caller that owns the transaction calls ``flush()`` after commit so
      subscribers never observe rolled-back work.
    - A failing subscriber is logged and skipped; it never propagates into
      the billing operation that raised the event.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, ClassVar
from uuid import UUID

from billing_kernel.logging_config import get_logger

logger = get_logger("domain.events")


@dataclass(frozen=True)
class DomainEvent:
    name: ClassVar[str] = "domain_event"

    org_id: UUID
    occurred_at: datetime


@dataclass(frozen=True)
class InvoiceIssued(DomainEvent):
    name: ClassVar[str] = "InvoiceIssued"

    invoice_id: UUID = field(default=None)
    lease_id: UUID = field(default=None)
    invoice_number: str = ""
    total_amount: Decimal = Decimal("0.00")
    due_date: date | None = None


@dataclass(frozen=True)
class InvoiceVoided(DomainEvent):
    name: ClassVar[str] = "InvoiceVoided"

    invoice_id: UUID = field(default=None)
    reason: str = ""


@dataclass(frozen=True)
class InvoiceOverdue(DomainEvent):
    name: ClassVar[str] = "InvoiceOverdue"

    invoice_id: UUID = field(default=None)
    lease_id: UUID = field(default=None)
    balance_amount: Decimal = Decimal("0.00")
    due_date: date | None = None


@dataclass(frozen=True)
class PaymentApplied(DomainEvent):
    name: ClassVar[str] = "PaymentApplied"

    invoice_id: UUID = field(default=None)
    payment_id: UUID = field(default=None)
    amount: Decimal = Decimal("0.00")
    balance_amount: Decimal = Decimal("0.00")
    invoice_status: str = ""


@dataclass(frozen=True)
class PaymentRefunded(DomainEvent):
    name: ClassVar[str] = "PaymentRefunded"

    invoice_id: UUID = field(default=None)
    payment_id: UUID = field(default=None)
    refund_payment_id: UUID = field(default=None)
    amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class ConfirmationRequestCreated(DomainEvent):
    name: ClassVar[str] = "ConfirmationRequestCreated"

    request_id: UUID = field(default=None)
    invoice_id: UUID = field(default=None)
    amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class ConfirmationRequestRejected(DomainEvent):
    name: ClassVar[str] = "ConfirmationRequestRejected"

    request_id: UUID = field(default=None)
    invoice_id: UUID = field(default=None)
    reason: str = ""


@dataclass(frozen=True)
class CreditNoteIssued(DomainEvent):
    name: ClassVar[str] = "CreditNoteIssued"

    credit_note_id: UUID = field(default=None)
    invoice_id: UUID = field(default=None)
    credit_note_number: str = ""
    amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class InvoiceRunCompleted(DomainEvent):
    name: ClassVar[str] = "InvoiceRunCompleted"

    run_id: UUID = field(default=None)
    period_key: str = ""
    run_type: str = ""
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0


Handler = Callable[[DomainEvent], None]


class EventPublisher:
    """Queue-then-flush publisher.

    ``publish`` only queues.  ``flush`` delivers queued events to
    subscribers of their ``name`` and of ``"*"``.  ``discard`` drops the
    queue after a rollback.  The queue is guarded by a lock so worker
    threads may publish into one shared instance.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: list[DomainEvent] = []
        self._lock = threading.Lock()
        self.delivered: list[DomainEvent] = []

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._subscribers[event_name].append(handler)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self._pending.append(event)

    def discard(self) -> None:
        with self._lock:
            self._pending.clear()

    def drain(self) -> list[DomainEvent]:
        """Remove and return queued events without delivering them."""
        with self._lock:
            pending, self._pending = self._pending, []
        return pending

    def flush(self) -> int:
        """Deliver queued events; returns how many were delivered."""
        with self._lock:
            pending, self._pending = self._pending, []
        for event in pending:
            for handler in [*self._subscribers[event.name], *self._subscribers["*"]]:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "event_subscriber_failed",
                        extra={"event_name": event.name},
                    )
            self.delivered.append(event)
        return len(pending)
