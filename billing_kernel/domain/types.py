"""
billing_kernel.domain.types -- Enums and frozen DTOs for the billing core.

ZERO I/O.  Resolvers, proration and the state tables work only on these
types; the ORM layer converts rows to them with ``to_dto()``.

Invariants enforced:
    - All DTOs are frozen dataclasses; collections are tuples.  A drafted
      line list cannot be mutated after it has been built.
    - Monetary fields are ``Decimal``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TypeVar
from uuid import UUID

from billing_kernel.exceptions import InvalidChoiceError

E = TypeVar("E", bound=Enum)


# =============================================================================
# Enums
# =============================================================================


class LeaseStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    TERMINATED = "terminated"


class RentTiming(str, Enum):
    """When rent is billed relative to the period it covers."""

    ADVANCE = "advance"  # Invoice for P covers P
    ARREARS = "arrears"  # Invoice for P covers P-1


class ProrationMethod(str, Enum):
    ACTUAL_DAYS_IN_MONTH = "actual_days_in_month"
    THIRTY_DAY_MONTH = "thirty_day_month"


class ChargeKind(str, Enum):
    RENT = "rent"
    RECURRING = "recurring"
    UTILITY = "utility"


class UtilityBillingMode(str, Enum):
    AMOUNT = "amount"  # Flat statement amount
    METER = "meter"  # (end - start) * rate + fixed charge
    SLAB = "slab"  # Consumed units spread over ordered rate slabs


class RunType(str, Enum):
    RENT = "rent"
    UTILITY = "utility"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOIDED = "voided"
    CANCELLED = "cancelled"


PAYABLE_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.ISSUED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
})

CREDITABLE_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.ISSUED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.PAID,
    InvoiceStatus.OVERDUE,
})


class PaymentMode(str, Enum):
    CASH = "cash"
    ONLINE = "online"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    UPI = "upi"
    CARD = "card"
    OTHER = "other"


class PaymentType(str, Enum):
    RENT = "rent"
    UTILITY = "utility"
    INVOICE = "invoice"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PROCESSING = "processing"
    REFUNDED = "refunded"
    PENDING_CONFIRMATION = "pending_confirmation"
    REJECTED = "rejected"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class CreditNoteReason(str, Enum):
    BILLING_ERROR = "billing_error"
    DISCOUNT = "discount"
    GOODWILL = "goodwill"
    REFUND = "refund"
    OTHER = "other"


class GenerationStatus(str, Enum):
    GENERATED = "generated"
    NOTHING_TO_BILL = "nothing_to_bill"


def parse_enum(enum_cls: type[E], value: object, field_name: str) -> E:
    """Coerce caller input to ``enum_cls`` or raise InvalidChoiceError."""
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidChoiceError(
            field_name, value, [member.value for member in enum_cls]
        ) from None


# =============================================================================
# Lease inputs
# =============================================================================


@dataclass(frozen=True)
class LeaseTerms:
    """The lease facts resolvers need: who, and when it is active."""

    lease_id: UUID
    org_id: UUID
    start_date: date
    end_date: date | None = None
    status: LeaseStatus = LeaseStatus.ACTIVE


@dataclass(frozen=True)
class BillingSettings:
    """One version of a lease's billing configuration."""

    billing_day: int = 1
    rent_timing: RentTiming = RentTiming.ADVANCE
    proration_method: ProrationMethod = ProrationMethod.ACTUAL_DAYS_IN_MONTH
    tax_applicable: bool = False
    tax_rate: Decimal = Decimal("0")
    payment_term_days: int = 0
    invoice_prefix: str = "INV"
    effective_from: date | None = None


@dataclass(frozen=True)
class RateSlab:
    """One tier of a utility rate plan.

    Covers consumption from ``from_units`` up to ``to_units``; the last
    slab of a plan may be open-ended (``to_units`` is None).  A slab's
    fixed charge applies only when some units fall in it.
    """

    from_units: Decimal
    to_units: Decimal | None
    rate_per_unit: Decimal
    fixed_charge: Decimal = Decimal("0")


@dataclass(frozen=True)
class SlabCharge:
    """Breakdown entry: how many units one slab billed, unrounded."""

    from_units: Decimal
    to_units: Decimal
    units: Decimal
    rate_per_unit: Decimal
    amount: Decimal
    fixed_charge: Decimal = Decimal("0")


@dataclass(frozen=True)
class UtilityReading:
    """Amount-based, flat-rate meter or slab-rate meter statement detail."""

    utility_type: str
    mode: UtilityBillingMode
    amount: Decimal | None = None
    meter_start: Decimal | None = None
    meter_end: Decimal | None = None
    rate_per_unit: Decimal | None = None
    fixed_charge: Decimal = Decimal("0")
    rate_slabs: tuple[RateSlab, ...] = ()
    biller_id: str | None = None
    consumer_id: str | None = None

    @property
    def units_consumed(self) -> Decimal | None:
        if self.meter_start is None or self.meter_end is None:
            return None
        return self.meter_end - self.meter_start


@dataclass(frozen=True)
class ChargeDefinition:
    """A rent, recurring or utility charge on a lease.

    For utility charges ``effective_from``/``effective_to`` are the
    statement period and ``utility`` carries the reading.
    """

    charge_id: UUID
    kind: ChargeKind
    description: str
    amount: Decimal
    effective_from: date
    effective_to: date | None = None
    taxable: bool = False
    utility: UtilityReading | None = None
    billed_invoice_id: UUID | None = None

    def active_window(
        self,
        lease_start: date,
        lease_end: date | None,
    ) -> tuple[date, date | None]:
        """Intersection of the charge's dates with the lease's."""
        start = max(self.effective_from, lease_start)
        ends = [d for d in (self.effective_to, lease_end) if d is not None]
        return start, (min(ends) if ends else None)


# =============================================================================
# Invoice drafts
# =============================================================================


@dataclass(frozen=True)
class InvoiceLineDraft:
    """One resolved invoice line.  ``amount`` is already rounded."""

    description: str
    amount: Decimal
    charge_kind: ChargeKind
    quantity: Decimal = Decimal("1")
    unit_price: Decimal | None = None
    taxable: bool = False
    source_charge_id: UUID | None = None
    period_start: date | None = None
    period_end: date | None = None
    is_prorated: bool = False


@dataclass(frozen=True)
class InvoiceDraft:
    """A fully priced, not yet persisted invoice."""

    lease_id: UUID
    org_id: UUID
    period_key: str
    run_type: RunType
    period_start: date
    period_end: date
    invoice_date: date
    due_date: date
    proration_method: ProrationMethod
    lines: tuple[InvoiceLineDraft, ...] = field(default_factory=tuple)
    line_taxes: tuple[Decimal, ...] = field(default_factory=tuple)
    sub_total: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    total_amount: Decimal = Decimal("0.00")


# =============================================================================
# Read snapshots returned across the engine boundary
# =============================================================================


@dataclass(frozen=True)
class InvoiceSnapshot:
    """An invoice as stored at the end of the operation that returned it."""

    invoice_id: UUID
    org_id: UUID
    lease_id: UUID
    period_key: str
    run_type: RunType
    status: InvoiceStatus
    invoice_number: str | None
    period_start: date
    period_end: date
    invoice_date: date
    due_date: date
    proration_method: ProrationMethod
    sub_total: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    credited_amount: Decimal
    balance_amount: Decimal
    version_id: int
    lines: tuple[InvoiceLineDraft, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PaymentSnapshot:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    payment_mode: PaymentMode
    payment_type: PaymentType
    status: PaymentStatus
    payment_date: date
    transaction_reference: str | None = None
    refund_of_payment_id: UUID | None = None


@dataclass(frozen=True)
class ConfirmationRequestSnapshot:
    request_id: UUID
    invoice_id: UUID
    amount: Decimal
    status: ConfirmationStatus
    submitted_by: UUID
    reviewed_by: UUID | None = None
    review_response: str | None = None
    payment_id: UUID | None = None


@dataclass(frozen=True)
class CreditNoteSnapshot:
    credit_note_id: UUID
    invoice_id: UUID
    credit_note_number: str
    amount: Decimal
    reason: CreditNoteReason
