"""
billing_services.engine -- BillingEngine, the component boundary of the billing core.

Responsibility:
    Wires configuration, clock, publisher and session factory into the
    kernel and batch services, and runs each public operation as one unit
    of work.  Every kernel failure comes back as ``Result.failure`` with its
    machine-readable code; nothing from ``BillingKernelError`` escapes.

Architecture position:
    Services -- the only layer that reads ``billing_config`` and the only
    place where kernel and batch services are composed.

Invariants enforced:
    - One transaction per operation; the overdue sweep runs one per invoice
      so a conflict on one invoice never rolls back the others.
    - Payment, refund, confirmation and credit-note operations retry lost
      version races up to ``max_concurrency_retries`` times, re-validating
      on every attempt.
    - Domain events reach subscribers only after the commit that produced
      them.

Usage:
    engine = BillingEngine.from_url("sqlite:///billing.db")
    result = engine.run_monthly_invoices(org_id, "2024-03")
    for outcome in result.unwrap().outcomes:
        ...
    receipt = engine.apply_payment(invoice_id, "400.00", PaymentMode.UPI)
    if not receipt.ok:
        print(receipt.error_code)
"""

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Iterable, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from billing_config import BillingConfig, get_active_config
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.db.engine import build_engine, transaction_scope
from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.events import EventPublisher, Handler
from billing_kernel.domain.ports import ProofLinkProvider
from billing_kernel.domain.result import Result
from billing_kernel.domain.types import (
    BillingSettings,
    ConfirmationRequestSnapshot,
    CreditNoteReason,
    CreditNoteSnapshot,
    InvoiceLineDraft,
    InvoiceSnapshot,
    PaymentMode,
    PaymentSnapshot,
    PaymentStatus,
    RunType,
)
from billing_kernel.exceptions import BillingKernelError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.billing_settings_service import BillingSettingsService
from billing_kernel.services.credit_note_service import CreditNoteService
from billing_kernel.services.invoice_generation import InvoiceGenerationService
from billing_kernel.services.invoice_lifecycle import InvoiceLifecycleManager
from billing_kernel.services.payment_application import (
    PaymentApplicationService,
    PaymentReceipt,
)
from billing_kernel.services.payment_confirmation import PaymentConfirmationService
from billing_kernel.services.repository import SqlBillingRepository
from billing_kernel.services.unit_of_work import run_unit_of_work

from billing_batch.domain.types import InvoiceRunResult
from billing_batch.services.invoice_run_service import InvoiceRunService
from billing_batch.services.scheduler import BillingScheduler
from billing_services.orm_registry import create_all_tables

logger = get_logger("services.engine")

T = TypeVar("T")


class BillingEngine:
    """Facade over the billing core.

    Every public method returns a ``Result``.  Values are frozen snapshots
    (``InvoiceSnapshot``, ``PaymentReceipt`` ...), never live ORM rows.

    Args:
        session_factory: Produces one session per unit of work.
        config: Defaults to ``get_active_config()``.
        clock: Defaults to ``SystemClock``.
        publisher: Shared publisher subscribers register on.
        proof_links: Resolves confirmation proof files to URLs.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: BillingConfig | None = None,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        proof_links: ProofLinkProvider | None = None,
    ):
        self._session_factory = session_factory
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._publisher = publisher if publisher is not None else EventPublisher()
        self._proof_links = proof_links
        register_immutability_listeners()

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True, **kwargs: Any) -> "BillingEngine":
        """Build an engine on its own connection pool."""
        db = build_engine(database_url)
        if create_tables:
            create_all_tables(db)
        return cls(sessionmaker(bind=db, expire_on_commit=False), **kwargs)

    @property
    def config(self) -> BillingConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_name`` (or ``"*"``)."""
        self._publisher.subscribe(event_name, handler)

    # -------------------------------------------------------------------------
    # Unit-of-work plumbing
    # -------------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        work: Callable[[Session, EventPublisher], T],
        actor_id: UUID | None = None,
        retries: int = 0,
        entity_type: str = "Invoice",
        entity_id: object = None,
    ) -> Result[T]:
        # Each call queues on its own publisher so concurrent callers
        # cannot discard each other's events; successful events are
        # forwarded to the shared publisher after commit.
        events = EventPublisher()
        events.subscribe("*", self._publisher.publish)
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(actor_id or SYSTEM_ACTOR_ID),
        ):
            try:
                value = run_unit_of_work(
                    self._session_factory,
                    lambda session: work(session, events),
                    publisher=events,
                    max_retries=retries,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
            except BillingKernelError as exc:
                logger.warning(
                    "billing_operation_failed",
                    extra={
                        "operation": operation,
                        "error_code": exc.code,
                        "entity_id": str(entity_id) if entity_id is not None else None,
                        "error": str(exc),
                    },
                )
                return Result.failure(exc)
        self._publisher.flush()
        return Result.success(value)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_effective_settings(self, lease_id: UUID, on_date: date) -> Result[BillingSettings]:
        return self._execute(
            "get_effective_settings",
            lambda session, events: BillingSettingsService(
                session, self._clock, events
            ).get_effective_settings(lease_id, on_date),
            entity_type="Lease",
            entity_id=lease_id,
        )

    def update_settings(
        self,
        lease_id: UUID,
        effective_from: date,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        **changes: Any,
    ) -> Result[BillingSettings]:
        """Version the lease's billing settings from ``effective_from`` onwards.

        A lease's first version starts from the configured invoice prefix
        and payment terms.
        """
        defaults = BillingSettings(
            invoice_prefix=self._config.invoice_prefix,
            payment_term_days=self._config.default_payment_term_days,
        )
        return self._execute(
            "update_settings",
            lambda session, events: BillingSettingsService(
                session, self._clock, events, actor_id
            ).update_settings(lease_id, effective_from, defaults=defaults, **changes),
            actor_id=actor_id,
            entity_type="Lease",
            entity_id=lease_id,
        )

    # -------------------------------------------------------------------------
    # Generation and lifecycle
    # -------------------------------------------------------------------------

    def generate_invoice(
        self,
        lease_id: UUID,
        period_key: str,
        run_type: RunType = RunType.RENT,
        as_of: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Result[InvoiceSnapshot | None]:
        """Generate one Draft invoice.

        Succeeds with ``None`` when the lease has nothing billable for the
        period.  An existing invoice fails with INVOICE_ALREADY_EXISTS.
        """

        def work(session: Session, events: EventPublisher) -> InvoiceSnapshot | None:
            result = InvoiceGenerationService(
                session, self._clock, events, actor_id
            ).generate_invoice(lease_id, period_key, run_type, as_of)
            return result.invoice.to_dto() if result.generated else None

        return self._execute(
            "generate_invoice", work, actor_id=actor_id, entity_type="Lease", entity_id=lease_id
        )

    def _lifecycle_call(
        self,
        operation: str,
        invoice_id: UUID,
        actor_id: UUID,
        call: Callable[[InvoiceLifecycleManager], Any],
    ) -> Result[InvoiceSnapshot]:
        def work(session: Session, events: EventPublisher) -> InvoiceSnapshot:
            manager = InvoiceLifecycleManager(session, self._clock, events, actor_id)
            return call(manager).to_dto()

        return self._execute(operation, work, actor_id=actor_id, entity_id=invoice_id)

    def issue_invoice(
        self, invoice_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[InvoiceSnapshot]:
        return self._lifecycle_call(
            "issue_invoice", invoice_id, actor_id, lambda m: m.issue(invoice_id)
        )

    def void_invoice(
        self, invoice_id: UUID, reason: str, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[InvoiceSnapshot]:
        return self._lifecycle_call(
            "void_invoice", invoice_id, actor_id, lambda m: m.void(invoice_id, reason)
        )

    def cancel_invoice(
        self, invoice_id: UUID, reason: str | None = None, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[InvoiceSnapshot]:
        return self._lifecycle_call(
            "cancel_invoice", invoice_id, actor_id, lambda m: m.cancel(invoice_id, reason)
        )

    def add_line(
        self, invoice_id: UUID, line: InvoiceLineDraft, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[InvoiceSnapshot]:
        return self._lifecycle_call(
            "add_line", invoice_id, actor_id, lambda m: m.add_line(invoice_id, line)
        )

    def remove_line(
        self, invoice_id: UUID, line_number: int, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[InvoiceSnapshot]:
        return self._lifecycle_call(
            "remove_line", invoice_id, actor_id, lambda m: m.remove_line(invoice_id, line_number)
        )

    def replace_lines(
        self,
        invoice_id: UUID,
        lines: Iterable[InvoiceLineDraft],
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Result[InvoiceSnapshot]:
        lines = list(lines)
        return self._lifecycle_call(
            "replace_lines", invoice_id, actor_id, lambda m: m.replace_lines(invoice_id, lines)
        )

    def get_invoice(self, invoice_id: UUID) -> Result[InvoiceSnapshot]:
        return self._execute(
            "get_invoice",
            lambda session, events: SqlBillingRepository(session).get_invoice(invoice_id).to_dto(),
            entity_id=invoice_id,
        )

    def mark_overdue_if_past_due(self, invoice_id: UUID) -> Result[bool]:
        return self._execute(
            "mark_overdue",
            lambda session, events: InvoiceLifecycleManager(
                session, self._clock, events
            ).mark_overdue_if_past_due(invoice_id),
            retries=self._config.max_concurrency_retries,
            entity_id=invoice_id,
        )

    def sweep_overdue(self, org_id: UUID | None = None) -> Result[list[UUID]]:
        """Mark every past-due invoice Overdue, one transaction per invoice.

        An invoice that fails is logged and left for the next sweep.
        """
        with transaction_scope(self._session_factory) as session:
            candidates = [
                invoice.id
                for invoice in SqlBillingRepository(session).list_overdue_candidates(
                    org_id, self._clock.today()
                )
            ]

        marked: list[UUID] = []
        failed = 0
        for invoice_id in candidates:
            result = self.mark_overdue_if_past_due(invoice_id)
            if not result.ok:
                failed += 1
            elif result.value:
                marked.append(invoice_id)

        logger.info(
            "overdue_sweep_completed",
            extra={
                "org_id": str(org_id) if org_id else None,
                "candidates": len(candidates),
                "marked": len(marked),
                "failed": failed,
            },
        )
        return Result.success(marked)

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def _payment_call(
        self,
        operation: str,
        entity_id: UUID,
        actor_id: UUID,
        call: Callable[[PaymentApplicationService], T],
        entity_type: str = "Invoice",
    ) -> Result[T]:
        return self._execute(
            operation,
            lambda session, events: call(
                PaymentApplicationService(session, self._clock, events, actor_id)
            ),
            actor_id=actor_id,
            retries=self._config.max_concurrency_retries,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    def apply_payment(
        self,
        invoice_id: UUID,
        amount: Any,
        mode: PaymentMode,
        reference: str | None = None,
        payment_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        **metadata: Any,
    ) -> Result[PaymentReceipt]:
        """Apply a Completed payment; over-payment and closed invoices fail."""
        return self._payment_call(
            "apply_payment",
            invoice_id,
            actor_id,
            lambda svc: svc.apply_payment(
                invoice_id, amount, mode, reference, payment_date, **metadata
            ),
        )

    def record_pending_payment(
        self,
        invoice_id: UUID,
        amount: Any,
        mode: PaymentMode,
        reference: str | None = None,
        payment_date: date | None = None,
        status: PaymentStatus = PaymentStatus.PENDING,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        **metadata: Any,
    ) -> Result[PaymentSnapshot]:
        return self._payment_call(
            "record_pending_payment",
            invoice_id,
            actor_id,
            lambda svc: svc.record_pending_payment(
                invoice_id, amount, mode, reference, payment_date, status, **metadata
            ).to_dto(),
        )

    def record_payment_status(
        self,
        payment_id: UUID,
        to_status: PaymentStatus,
        reason: str | None = None,
        gateway_response: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Result[PaymentReceipt]:
        return self._payment_call(
            "record_payment_status",
            payment_id,
            actor_id,
            lambda svc: svc.record_payment_status(
                payment_id, to_status, reason, gateway_response
            ),
            entity_type="Payment",
        )

    def refund_payment(
        self, payment_id: UUID, reason: str, actor_id: UUID = SYSTEM_ACTOR_ID
    ) -> Result[PaymentReceipt]:
        return self._payment_call(
            "refund_payment",
            payment_id,
            actor_id,
            lambda svc: svc.refund_payment(payment_id, reason),
            entity_type="Payment",
        )

    def list_payments(self, invoice_id: UUID) -> Result[list[PaymentSnapshot]]:
        return self._execute(
            "list_payments",
            lambda session, events: [
                payment.to_dto()
                for payment in SqlBillingRepository(session).list_payments(invoice_id)
            ],
            entity_id=invoice_id,
        )

    # -------------------------------------------------------------------------
    # Cash confirmation requests
    # -------------------------------------------------------------------------

    def _confirmation_service(
        self, session: Session, events: EventPublisher, actor_id: UUID
    ) -> PaymentConfirmationService:
        return PaymentConfirmationService(
            session,
            self._clock,
            events,
            actor_id,
            proof_links=self._proof_links,
            proof_link_ttl_seconds=self._config.proof_link_ttl_seconds,
        )

    def create_confirmation_request(
        self,
        invoice_id: UUID,
        amount: Any,
        submitted_by: UUID,
        payment_date: date | None = None,
        receipt_number: str | None = None,
        notes: str | None = None,
        proof_file_ref: str | None = None,
    ) -> Result[ConfirmationRequestSnapshot]:
        return self._execute(
            "create_confirmation_request",
            lambda session, events: self._confirmation_service(
                session, events, submitted_by
            ).create_request(
                invoice_id, amount, payment_date, receipt_number, notes, proof_file_ref
            ).to_dto(),
            actor_id=submitted_by,
            entity_id=invoice_id,
        )

    def confirm_request(
        self, request_id: UUID, reviewer: UUID, response: str | None = None
    ) -> Result[ConfirmationRequestSnapshot]:
        """Approve a cash claim: applies a Cash payment and marks it Confirmed."""
        return self._execute(
            "confirm_request",
            lambda session, events: self._confirmation_service(
                session, events, reviewer
            ).confirm_request(request_id, response).to_dto(),
            actor_id=reviewer,
            retries=self._config.max_concurrency_retries,
            entity_type="PaymentConfirmationRequest",
            entity_id=request_id,
        )

    def reject_request(
        self, request_id: UUID, reviewer: UUID, reason: str
    ) -> Result[ConfirmationRequestSnapshot]:
        return self._execute(
            "reject_request",
            lambda session, events: self._confirmation_service(
                session, events, reviewer
            ).reject_request(request_id, reason).to_dto(),
            actor_id=reviewer,
            retries=self._config.max_concurrency_retries,
            entity_type="PaymentConfirmationRequest",
            entity_id=request_id,
        )

    def cancel_request(
        self, request_id: UUID, actor_id: UUID
    ) -> Result[ConfirmationRequestSnapshot]:
        return self._execute(
            "cancel_request",
            lambda session, events: self._confirmation_service(
                session, events, actor_id
            ).cancel_request(request_id).to_dto(),
            actor_id=actor_id,
            retries=self._config.max_concurrency_retries,
            entity_type="PaymentConfirmationRequest",
            entity_id=request_id,
        )

    def get_proof_url(self, request_id: UUID) -> Result[str | None]:
        return self._execute(
            "get_proof_url",
            lambda session, events: self._confirmation_service(
                session, events, SYSTEM_ACTOR_ID
            ).get_proof_url(request_id),
            entity_type="PaymentConfirmationRequest",
            entity_id=request_id,
        )

    # -------------------------------------------------------------------------
    # Credit notes
    # -------------------------------------------------------------------------

    def issue_credit_note(
        self,
        invoice_id: UUID,
        amount: Any,
        reason: CreditNoteReason,
        notes: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Result[CreditNoteSnapshot]:
        return self._execute(
            "issue_credit_note",
            lambda session, events: CreditNoteService(
                session, self._clock, events, actor_id,
                prefix=self._config.credit_note_prefix,
            ).issue_credit_note(invoice_id, amount, reason, notes).to_dto(),
            actor_id=actor_id,
            retries=self._config.max_concurrency_retries,
            entity_id=invoice_id,
        )

    # -------------------------------------------------------------------------
    # Runs and scheduling
    # -------------------------------------------------------------------------

    def _run_service(self, actor_id: UUID = SYSTEM_ACTOR_ID) -> InvoiceRunService:
        return InvoiceRunService(
            self._session_factory,
            clock=self._clock,
            publisher=self._publisher,
            actor_id=actor_id,
            max_workers=self._config.run_max_workers,
            auto_issue=self._config.auto_issue_generated_invoices,
        )

    def run_monthly_invoices(
        self,
        org_id: UUID,
        period_key: str,
        run_type: RunType = RunType.RENT,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Result[InvoiceRunResult]:
        """Generate the period's invoices for every eligible lease of ``org_id``.

        Per-lease failures are outcomes inside a successful result; only a
        malformed period key fails the whole call.
        """
        with LogContext.bind(correlation_id=str(uuid4()), org_id=str(org_id)):
            try:
                return Result.success(
                    self._run_service(actor_id).run_monthly_invoices(org_id, period_key, run_type)
                )
            except BillingKernelError as exc:
                logger.warning(
                    "billing_operation_failed",
                    extra={
                        "operation": "run_monthly_invoices",
                        "error_code": exc.code,
                        "period_key": period_key,
                        "error": str(exc),
                    },
                )
                return Result.failure(exc)

    def trigger(self, org_id: UUID, period_key: str, run_type: RunType) -> Result[InvoiceRunResult]:
        """Scheduler entry point for rent and utility runs."""
        return self.run_monthly_invoices(org_id, period_key, run_type)

    def get_run(
        self, org_id: UUID, period_key: str, run_type: RunType = RunType.RENT
    ) -> InvoiceRunResult | None:
        return self._run_service().get_run(org_id, period_key, run_type)

    def list_org_ids(self) -> list[UUID]:
        with transaction_scope(self._session_factory) as session:
            return SqlBillingRepository(session).list_org_ids()

    def build_scheduler(
        self, org_ids: Callable[[], Iterable[UUID]] | None = None
    ) -> BillingScheduler:
        """A scheduler wired to this engine's runs and overdue sweep."""
        return BillingScheduler(
            self._config.schedules,
            trigger=self.trigger,
            sweep=self.sweep_overdue,
            org_ids=org_ids or self.list_org_ids,
            clock=self._clock,
            tick_interval_seconds=self._config.scheduler_tick_seconds,
        )
