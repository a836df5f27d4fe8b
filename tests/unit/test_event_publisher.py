"""EventPublisher: queue, flush after commit, discard after rollback."""

from dataclasses import FrozenInstanceError
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.domain.events import EventPublisher, InvoiceIssued, PaymentApplied

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _issued(**kwargs):
    return InvoiceIssued(org_id=uuid4(), occurred_at=NOW, invoice_number="INV-202403-000001", **kwargs)


class TestEventPublisher:

    def test_publish_only_queues(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("InvoiceIssued", seen.append)

        publisher.publish(_issued())

        assert seen == []
        assert publisher.delivered == []

    def test_flush_delivers_to_name_and_wildcard(self):
        publisher = EventPublisher()
        by_name, everything = [], []
        publisher.subscribe("InvoiceIssued", by_name.append)
        publisher.subscribe("*", everything.append)

        publisher.publish(_issued())
        publisher.publish(PaymentApplied(org_id=uuid4(), occurred_at=NOW, amount=Decimal("5")))

        assert publisher.flush() == 2
        assert [e.name for e in by_name] == ["InvoiceIssued"]
        assert [e.name for e in everything] == ["InvoiceIssued", "PaymentApplied"]
        assert publisher.flush() == 0

    def test_discard_drops_queue(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("*", seen.append)

        publisher.publish(_issued())
        publisher.discard()

        assert publisher.flush() == 0
        assert seen == []

    def test_drain_returns_without_delivering(self):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe("*", seen.append)
        event = _issued()

        publisher.publish(event)

        assert publisher.drain() == [event]
        assert seen == []
        assert publisher.flush() == 0

    def test_failing_subscriber_is_logged_and_skipped(self, captured_logs):
        publisher = EventPublisher()
        seen = []

        def broken(event):
            raise RuntimeError("notification service down")

        publisher.subscribe("InvoiceIssued", broken)
        publisher.subscribe("InvoiceIssued", seen.append)

        publisher.publish(_issued())
        publisher.flush()

        assert len(seen) == 1
        failures = [r for r in captured_logs() if r["message"] == "event_subscriber_failed"]
        assert failures[0]["event_name"] == "InvoiceIssued"
        assert failures[0]["exc_type"] == "RuntimeError"

    def test_events_are_frozen(self):
        event = _issued()
        with pytest.raises(FrozenInstanceError):
            event.invoice_number = "changed"
