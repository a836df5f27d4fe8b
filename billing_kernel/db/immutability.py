"""
ORM-level immutability enforcement for invoices and payment history.

Protected entities:

Entity                   | When immutable                  | What is frozen
-------------------------|---------------------------------|------------------------------------
InvoiceLineModel         | Parent invoice not Draft        | Insert, update and delete
InvoiceModel             | After it leaves Draft           | Period, lease, totals, number,
                         |                                 | proration snapshot
PaymentModel             | After status Completed          | Amount, invoice, mode
PaymentStatusHistoryModel| Always                          | Update and delete

Payment-side fields on the invoice (paid, credited, balance, status and the
timestamps) stay mutable: they are what the lifecycle manager and payment
service exist to change.

Listeners raise InvoiceImmutableError / BusinessRuleViolation before any
SQL is sent.  ``register_immutability_listeners`` is idempotent.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from billing_kernel.domain.types import InvoiceStatus, PaymentStatus
from billing_kernel.exceptions import BusinessRuleViolation, InvoiceImmutableError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

FROZEN_INVOICE_FIELDS = frozenset({
    "org_id",
    "lease_id",
    "period_key",
    "run_type",
    "period_start",
    "period_end",
    "invoice_date",
    "proration_method",
    "sub_total",
    "tax_amount",
    "total_amount",
})

FROZEN_PAYMENT_FIELDS = frozenset({"amount", "invoice_id", "lease_id", "payment_mode"})


def _previous_value(target, attr_name: str):
    hist = get_history(target, attr_name)
    if hist.deleted:
        return hist.deleted[0]
    if hist.unchanged:
        return hist.unchanged[0]
    return getattr(target, attr_name)


def _blocked(entity_type: str, entity_id, field: str | None, operation: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "field": field,
        },
    )


def _check_invoice_update(mapper, connection, target):
    was_status = _previous_value(target, "status")
    if was_status == InvoiceStatus.DRAFT.value:
        return

    insp = inspect(target)
    for attr in insp.attrs:
        if attr.key == "invoice_number":
            hist = attr.history
            if hist.has_changes() and hist.deleted and hist.deleted[0] is not None:
                _blocked("Invoice", target.id, attr.key, "UPDATE")
                raise InvoiceImmutableError(target.id, was_status)
            continue
        if attr.key in FROZEN_INVOICE_FIELDS and attr.history.has_changes():
            _blocked("Invoice", target.id, attr.key, "UPDATE")
            raise InvoiceImmutableError(target.id, was_status)


def _check_invoice_delete(mapper, connection, target):
    _blocked("Invoice", target.id, None, "DELETE")
    raise BusinessRuleViolation(
        f"Invoice {target.id} cannot be deleted; void or cancel it instead"
    )


def _check_line_change(operation: str):
    def _listener(mapper, connection, target):
        invoice = target.invoice
        if invoice is None:
            return
        status = _previous_value(invoice, "status")
        if status not in (None, InvoiceStatus.DRAFT.value):
            _blocked("InvoiceLine", target.id, None, operation)
            raise InvoiceImmutableError(invoice.id, status)

    return _listener


_check_line_insert = _check_line_change("INSERT")
_check_line_update = _check_line_change("UPDATE")
_check_line_delete = _check_line_change("DELETE")


def _check_payment_update(mapper, connection, target):
    was_status = _previous_value(target, "status")
    if was_status not in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        return
    for field in FROZEN_PAYMENT_FIELDS:
        if get_history(target, field).has_changes():
            _blocked("Payment", target.id, field, "UPDATE")
            raise BusinessRuleViolation(
                f"Payment {target.id} is {was_status}; '{field}' cannot change. "
                "Record a refund instead"
            )


def _check_history_change(mapper, connection, target):
    _blocked("PaymentStatusHistory", target.id, None, "UPDATE/DELETE")
    raise BusinessRuleViolation("Payment status history is append-only")


def _listeners():
    from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel
    from billing_kernel.models.payment import PaymentModel, PaymentStatusHistoryModel

    return [
        (InvoiceModel, "before_update", _check_invoice_update),
        (InvoiceModel, "before_delete", _check_invoice_delete),
        (InvoiceLineModel, "before_insert", _check_line_insert),
        (InvoiceLineModel, "before_update", _check_line_update),
        (InvoiceLineModel, "before_delete", _check_line_delete),
        (PaymentModel, "before_update", _check_payment_update),
        (PaymentStatusHistoryModel, "before_update", _check_history_change),
        (PaymentStatusHistoryModel, "before_delete", _check_history_change),
    ]


def register_immutability_listeners() -> None:
    """Install all listeners.  Safe to call more than once."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove all listeners.  Tests only."""
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
