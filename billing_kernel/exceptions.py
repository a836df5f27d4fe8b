"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing errors reach tenants, landlords and operators.  Callers must be able
to tell a rejected over-payment from a lost optimistic-lock race without
parsing message text.

Every exception here:
  1. Is a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (invoice_id, amounts, statuses)

Example:
    try:
        payments.apply_payment(invoice_id, Decimal("600.00"), PaymentMode.CASH)
    except OverpaymentError as e:
        api_response(code=e.code, balance=e.balance, attempted=e.amount)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BillingKernelError:

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidDateRangeError
    |   +-- InvalidPeriodKeyError
    |   +-- MissingReasonError
    |
    +-- NotFoundError
    |   +-- LeaseNotFoundError
    |   +-- BillingSettingsNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- PaymentNotFoundError
    |   +-- ConfirmationRequestNotFoundError
    |
    +-- BusinessRuleViolation
    |   +-- InvalidInvoiceTransitionError
    |   +-- InvalidPaymentTransitionError
    |   +-- InvoiceAlreadyExistsError
    |   +-- InvoiceNotPayableError
    |   +-- OverpaymentError
    |   +-- InvoiceImmutableError
    |   +-- EmptyInvoiceError
    |   +-- ConfirmationNotPendingError
    |   +-- CreditNoteNotAllowedError
    |   +-- CreditNoteExceedsBalanceError
    |   +-- RefundNotAllowedError
    |   +-- RetroactiveSettingsChangeError
    |
    +-- ConcurrencyConflict
    |   +-- OptimisticLockConflictError
    |
    +-- PartialBatchFailure

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | INVALID_AMOUNT                | Amount <= 0 or negative base amount
                | INVALID_DATE_RANGE            | End date before start date
                | INVALID_PERIOD_KEY            | Period key not YYYY-MM / YYYY-Www
                | MISSING_REASON                | Void / reject without a reason
----------------|-------------------------------|---------------------------------------
NotFound        | LEASE_NOT_FOUND               | Lease ID doesn't exist
                | BILLING_SETTINGS_NOT_FOUND    | No settings version effective
                | INVOICE_NOT_FOUND             | Invoice ID doesn't exist
                | PAYMENT_NOT_FOUND             | Payment ID doesn't exist
                | CONFIRMATION_REQUEST_NOT_FOUND| Request ID doesn't exist
----------------|-------------------------------|---------------------------------------
Business rule   | INVALID_INVOICE_TRANSITION    | Event not allowed from current status
                | INVALID_PAYMENT_TRANSITION    | Payment status change not allowed
                | INVOICE_ALREADY_EXISTS        | Second invoice for one idempotency key
                | INVOICE_NOT_PAYABLE           | Payment against non-payable status
                | OVERPAYMENT                   | Amount exceeds outstanding balance
                | INVOICE_IMMUTABLE             | Line edit after Draft
                | EMPTY_INVOICE                 | Issue with no lines / zero total
                | CONFIRMATION_NOT_PENDING      | Review of a non-Pending request
                | CREDIT_NOTE_NOT_ALLOWED       | Credit note on Draft/Voided/Cancelled
                | CREDIT_NOTE_EXCEEDS_BALANCE   | Credit larger than effective balance
                | REFUND_NOT_ALLOWED            | Refund of a non-Completed payment
                | RETROACTIVE_SETTINGS_CHANGE   | Settings change for invoiced period
----------------|-------------------------------|---------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT      | Retries exhausted on version conflict
----------------|-------------------------------|---------------------------------------
Batch           | PARTIAL_BATCH_FAILURE         | Invoice run finished with failures

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Services raise; the BillingEngine facade converts any BillingKernelError
   into a failed Result and never lets it escape.

2. The invoice run converts per-lease errors into Failed outcomes carrying
   ``code`` and ``str(exc)``; one lease never aborts the run.

3. ConcurrencyConflict is raised only after the bounded retry inside the
   unit of work is exhausted.  A retry that re-validates and finds the
   invoice already settled raises a BusinessRuleViolation instead.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation


class ValidationError(BillingKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is zero, negative or otherwise unusable."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Decimal | None, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class InvalidDateRangeError(ValidationError):
    """End date precedes start date."""

    code: str = "INVALID_DATE_RANGE"

    def __init__(self, start: object, end: object, label: str = "period"):
        self.start = start
        self.end = end
        self.label = label
        super().__init__(
            f"End date cannot be before start date for {label}: {start} > {end}"
        )


class InvalidPeriodKeyError(ValidationError):
    """Period key is not a recognised monthly or weekly key."""

    code: str = "INVALID_PERIOD_KEY"

    def __init__(self, period_key: str, reason: str):
        self.period_key = period_key
        self.reason = reason
        super().__init__(f"Invalid period key '{period_key}': {reason}")


class MissingReasonError(ValidationError):
    """An operation that requires a reason was called without one."""

    code: str = "MISSING_REASON"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"A reason is required to {operation}")


class InvalidChoiceError(ValidationError):
    """A value is not one of an enumeration's members."""

    code: str = "INVALID_CHOICE"

    def __init__(self, field_name: str, value: object, allowed: list[str]):
        self.field_name = field_name
        self.value = value
        self.allowed = allowed
        super().__init__(
            f"Invalid {field_name} {value!r}; expected one of {allowed}"
        )


# Not found


class NotFoundError(BillingKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class LeaseNotFoundError(NotFoundError):
    """Lease with given ID was not found."""

    code: str = "LEASE_NOT_FOUND"

    def __init__(self, lease_id: object):
        self.lease_id = str(lease_id)
        super().__init__(f"Lease not found: {lease_id}")


class BillingSettingsNotFoundError(NotFoundError):
    """No billing settings version is effective for the lease on the date."""

    code: str = "BILLING_SETTINGS_NOT_FOUND"

    def __init__(self, lease_id: object, on_date: object):
        self.lease_id = str(lease_id)
        self.on_date = str(on_date)
        super().__init__(
            f"No billing settings effective for lease {lease_id} on {on_date}"
        )


class InvoiceNotFoundError(NotFoundError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: object):
        self.invoice_id = str(invoice_id)
        super().__init__(f"Invoice not found: {invoice_id}")


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: object):
        self.payment_id = str(payment_id)
        super().__init__(f"Payment not found: {payment_id}")


class ConfirmationRequestNotFoundError(NotFoundError):
    """Payment confirmation request with given ID was not found."""

    code: str = "CONFIRMATION_REQUEST_NOT_FOUND"

    def __init__(self, request_id: object):
        self.request_id = str(request_id)
        super().__init__(f"Payment confirmation request not found: {request_id}")


# Business rules


class BusinessRuleViolation(BillingKernelError):
    """Base exception for well-formed requests the current state forbids."""

    code: str = "BUSINESS_RULE_VIOLATION"


class InvalidInvoiceTransitionError(BusinessRuleViolation):
    """The invoice state machine has no transition for (status, event)."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: object, from_status: str, event: str):
        self.invoice_id = str(invoice_id)
        self.from_status = from_status
        self.event = event
        super().__init__(
            f"Invoice {invoice_id}: event '{event}' not allowed "
            f"from status '{from_status}'"
        )


class InvalidPaymentTransitionError(BusinessRuleViolation):
    """Payment status change is not in the payment transition table."""

    code: str = "INVALID_PAYMENT_TRANSITION"

    def __init__(self, payment_id: object, from_status: str, to_status: str):
        self.payment_id = str(payment_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Payment {payment_id}: cannot move from '{from_status}' "
            f"to '{to_status}'"
        )


class InvoiceAlreadyExistsError(BusinessRuleViolation):
    """An invoice already exists for (org, period_key, run_type, lease)."""

    code: str = "INVOICE_ALREADY_EXISTS"

    def __init__(self, idempotency_key: str, invoice_id: object):
        self.idempotency_key = idempotency_key
        self.invoice_id = str(invoice_id)
        super().__init__(
            f"Invoice {invoice_id} already exists for {idempotency_key}"
        )


class InvoiceNotPayableError(BusinessRuleViolation):
    """Invoice status does not accept payments."""

    code: str = "INVOICE_NOT_PAYABLE"

    def __init__(self, invoice_id: object, status: str):
        self.invoice_id = str(invoice_id)
        self.status = status
        super().__init__(
            f"Invoice {invoice_id} is {status} and cannot accept payments"
        )


class OverpaymentError(BusinessRuleViolation):
    """Payment amount exceeds the outstanding balance."""

    code: str = "OVERPAYMENT"

    def __init__(self, invoice_id: object, amount: Decimal, balance: Decimal):
        self.invoice_id = str(invoice_id)
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Payment amount {amount} exceeds outstanding balance {balance} "
            f"on invoice {invoice_id}"
        )


class InvoiceImmutableError(BusinessRuleViolation):
    """Invoice lines cannot change once the invoice has left Draft."""

    code: str = "INVOICE_IMMUTABLE"

    def __init__(self, invoice_id: object, status: str):
        self.invoice_id = str(invoice_id)
        self.status = status
        super().__init__(
            f"Invoice {invoice_id} is {status}; only Draft invoices can be edited"
        )


class EmptyInvoiceError(BusinessRuleViolation):
    """Invoice has no lines or a non-positive total."""

    code: str = "EMPTY_INVOICE"

    def __init__(self, invoice_id: object, reason: str):
        self.invoice_id = str(invoice_id)
        self.reason = reason
        super().__init__(f"Invoice {invoice_id} cannot be issued: {reason}")


class ConfirmationNotPendingError(BusinessRuleViolation):
    """Confirmation request has already been reviewed or cancelled."""

    code: str = "CONFIRMATION_NOT_PENDING"

    def __init__(self, request_id: object, status: str):
        self.request_id = str(request_id)
        self.status = status
        super().__init__(
            f"Payment confirmation request {request_id} is {status}, not Pending"
        )


class CreditNoteNotAllowedError(BusinessRuleViolation):
    """Invoice status does not accept credit notes."""

    code: str = "CREDIT_NOTE_NOT_ALLOWED"

    def __init__(self, invoice_id: object, status: str):
        self.invoice_id = str(invoice_id)
        self.status = status
        super().__init__(
            f"Cannot issue a credit note against invoice {invoice_id} in status {status}"
        )


class CreditNoteExceedsBalanceError(BusinessRuleViolation):
    """Credit note amount is larger than the effective balance."""

    code: str = "CREDIT_NOTE_EXCEEDS_BALANCE"

    def __init__(self, invoice_id: object, amount: Decimal, balance: Decimal):
        self.invoice_id = str(invoice_id)
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Credit note amount {amount} exceeds balance {balance} "
            f"on invoice {invoice_id}"
        )


class RefundNotAllowedError(BusinessRuleViolation):
    """Only completed, non-refund payments can be refunded."""

    code: str = "REFUND_NOT_ALLOWED"

    def __init__(self, payment_id: object, reason: str):
        self.payment_id = str(payment_id)
        self.reason = reason
        super().__init__(f"Payment {payment_id} cannot be refunded: {reason}")


class RetroactiveSettingsChangeError(BusinessRuleViolation):
    """Billing settings change would affect an already invoiced period."""

    code: str = "RETROACTIVE_SETTINGS_CHANGE"

    def __init__(self, lease_id: object, effective_from: object, last_invoiced: object):
        self.lease_id = str(lease_id)
        self.effective_from = str(effective_from)
        self.last_invoiced = str(last_invoiced)
        super().__init__(
            f"Settings for lease {lease_id} cannot take effect on {effective_from}: "
            f"periods up to {last_invoiced} are already invoiced"
        )


# Concurrency


class ConcurrencyConflict(BillingKernelError):
    """Base exception for lost optimistic-concurrency races."""

    code: str = "CONCURRENCY_CONFLICT"


class OptimisticLockConflictError(ConcurrencyConflict):
    """Row version changed underneath us and the retry budget is spent."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: object, attempts: int):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.attempts = attempts
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"entity was modified by another transaction ({attempts} attempts)"
        )


# Batch


class PartialBatchFailure(BillingKernelError):
    """Invoice run completed but one or more leases failed."""

    code: str = "PARTIAL_BATCH_FAILURE"

    def __init__(self, run_id: object, failed: int, total: int):
        self.run_id = str(run_id)
        self.failed = failed
        self.total = total
        super().__init__(
            f"Invoice run {run_id} finished with {failed} of {total} leases failed"
        )
