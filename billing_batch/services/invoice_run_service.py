"""
InvoiceRunService -- generate one period's invoices for every lease of an organization.

Contract:
    ``run_monthly_invoices(org_id, period_key, run_type)`` generates a Draft
    invoice per eligible lease, records a per-lease outcome, and persists
    the run summary.  It always returns an ``InvoiceRunResult``; per-lease
    errors become Failed outcomes.

Architecture: billing_batch/services.  Imports billing_kernel services and
    billing_batch domain/models.

Invariants enforced:
    - Session-per-lease: each lease is generated (and optionally issued)
      in its own transaction on a bounded thread pool.  One lease never
      aborts the run.
    - Idempotency: an existing invoice for (org, period_key, run_type,
      lease) is Skipped.  A concurrent run that loses the insert race hits
      uq_invoices_idempotency and is Skipped too.
    - Exactly one InvoiceRunModel per (org, period_key, run_type); a re-run
      increments ``attempt_count`` and replaces the items.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.db.engine import transaction_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.events import DomainEvent, EventPublisher, InvoiceRunCompleted
from billing_kernel.domain.periods import (
    PeriodKind,
    previous_period_key,
    resolve_period,
)
from billing_kernel.domain.types import RunType, parse_enum
from billing_kernel.exceptions import (
    BillingKernelError,
    InvalidPeriodKeyError,
    InvoiceAlreadyExistsError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.invoice_generation import InvoiceGenerationService
from billing_kernel.services.invoice_lifecycle import InvoiceLifecycleManager
from billing_kernel.services.repository import SqlBillingRepository

from billing_batch.domain.types import (
    InvoiceRunResult,
    LeaseOutcome,
    LeaseOutcomeStatus,
    RunStatus,
    derive_run_status,
)
from billing_batch.models.invoice_run import InvoiceRunItemModel, InvoiceRunModel

logger = get_logger("batch.invoice_run")

# Utility statements from a lease's last weeks are still billed after it ends.
_UTILITY_LOOKBACK = timedelta(days=35)


class InvoiceRunService:
    """Per-organization invoice run.

    Contract:
        - Owns its transactions (one per lease, plus the run row's).
        - Queued domain events are delivered after the run completes.

    Non-goals:
        - Does NOT issue invoices unless ``auto_issue`` is set.
        - NOT a distributed job runner.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        max_workers: int = 4,
        auto_issue: bool = False,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._publisher = publisher if publisher is not None else EventPublisher()
        self._actor_id = actor_id
        self._max_workers = max_workers
        self._auto_issue = auto_issue

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_monthly_invoices(
        self,
        org_id: UUID,
        period_key: str,
        run_type: RunType = RunType.RENT,
    ) -> InvoiceRunResult:
        """Generate invoices for every eligible lease and record the run.

        Raises:
            InvalidPeriodKeyError: Malformed key, or a rent run on a week key.
        """
        run_type = parse_enum(RunType, run_type, "run_type")
        period = resolve_period(period_key)
        if run_type is RunType.RENT and period.kind is not PeriodKind.MONTH:
            raise InvalidPeriodKeyError(period_key, "rent runs require a YYYY-MM period key")

        start_time = time.monotonic()
        lease_ids = self._eligible_leases(org_id, period_key, run_type)
        run_id, run_number = self._begin_run(org_id, period_key, run_type)

        with LogContext.bind(org_id=str(org_id), run_id=str(run_id)):
            logger.info(
                "invoice_run_started",
                extra={
                    "run_number": run_number,
                    "period_key": period_key,
                    "run_type": run_type.value,
                    "lease_count": len(lease_ids),
                },
            )

            with ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="invoice-run"
            ) as pool:
                results = list(
                    pool.map(
                        lambda lease_id: self._process_lease(
                            org_id, lease_id, period_key, run_type, run_id
                        ),
                        lease_ids,
                    )
                )

            outcomes = tuple(outcome for outcome, _ in results)
            for _, events in results:
                for event in events:
                    self._publisher.publish(event)

            result = self._finish_run(run_id, outcomes)
            self._publisher.publish(
                InvoiceRunCompleted(
                    org_id=org_id,
                    occurred_at=self._clock.now_utc(),
                    run_id=run_id,
                    period_key=period_key,
                    run_type=run_type.value,
                    succeeded=result.succeeded,
                    skipped=result.skipped,
                    failed=result.failed,
                )
            )
            self._publisher.flush()

            logger.info(
                "invoice_run_completed",
                extra={
                    "run_number": run_number,
                    "status": result.status.value,
                    "attempt_count": result.attempt_count,
                    "succeeded": result.succeeded,
                    "skipped": result.skipped,
                    "failed": result.failed,
                    "duration_ms": int((time.monotonic() - start_time) * 1000),
                },
            )
            return result

    def get_run(
        self, org_id: UUID, period_key: str, run_type: RunType = RunType.RENT
    ) -> InvoiceRunResult | None:
        with transaction_scope(self._session_factory) as session:
            run_type = parse_enum(RunType, run_type, "run_type")
            run = self._find_run(session, org_id, period_key, run_type)
            return run.to_dto() if run is not None else None

    # -------------------------------------------------------------------------
    # Per-lease work
    # -------------------------------------------------------------------------

    def _process_lease(
        self,
        org_id: UUID,
        lease_id: UUID,
        period_key: str,
        run_type: RunType,
        run_id: UUID,
    ) -> tuple[LeaseOutcome, list[DomainEvent]]:
        publisher = EventPublisher()
        item_start = time.monotonic()

        def _outcome(status: LeaseOutcomeStatus, **fields) -> LeaseOutcome:
            return LeaseOutcome(
                lease_id=lease_id,
                status=status,
                duration_ms=int((time.monotonic() - item_start) * 1000),
                **fields,
            )

        with LogContext.bind(org_id=str(org_id), run_id=str(run_id), lease_id=str(lease_id)):
            try:
                with transaction_scope(self._session_factory) as session:
                    generated = InvoiceGenerationService(
                        session, self._clock, publisher, self._actor_id
                    ).generate_invoice(lease_id, period_key, run_type)

                    if not generated.generated:
                        return _outcome(LeaseOutcomeStatus.SKIPPED, reason=generated.reason), []

                    invoice_id = generated.invoice.id
                    if self._auto_issue:
                        InvoiceLifecycleManager(
                            session, self._clock, publisher, self._actor_id
                        ).issue(invoice_id)

                return _outcome(LeaseOutcomeStatus.SUCCEEDED, invoice_id=invoice_id), publisher.drain()

            except InvoiceAlreadyExistsError as exc:
                return _outcome(
                    LeaseOutcomeStatus.SKIPPED,
                    invoice_id=UUID(exc.invoice_id),
                    reason="Invoice already exists for this period",
                ), []

            except IntegrityError as exc:
                existing = self._existing_invoice_id(org_id, lease_id, period_key, run_type)
                if existing is not None:
                    logger.info("invoice_run_lease_lost_insert_race")
                    return _outcome(
                        LeaseOutcomeStatus.SKIPPED,
                        invoice_id=existing,
                        reason="Invoice already exists for this period",
                    ), []
                logger.warning("invoice_run_lease_failed", extra={"error_code": "INTEGRITY_ERROR"})
                return _outcome(
                    LeaseOutcomeStatus.FAILED,
                    error_code="INTEGRITY_ERROR",
                    reason=str(exc.orig),
                ), []

            except BillingKernelError as exc:
                logger.warning(
                    "invoice_run_lease_failed",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                return _outcome(
                    LeaseOutcomeStatus.FAILED, error_code=exc.code, reason=str(exc)
                ), []

            except Exception as exc:
                logger.exception("invoice_run_lease_failed")
                return _outcome(
                    LeaseOutcomeStatus.FAILED,
                    error_code="UNEXPECTED_ERROR",
                    reason=str(exc),
                ), []

    def _existing_invoice_id(
        self, org_id: UUID, lease_id: UUID, period_key: str, run_type: RunType
    ) -> UUID | None:
        with transaction_scope(self._session_factory) as session:
            invoice = SqlBillingRepository(session).find_invoice_by_key(
                org_id, period_key, run_type, lease_id
            )
            return invoice.id if invoice is not None else None

    def _eligible_leases(
        self, org_id: UUID, period_key: str, run_type: RunType
    ) -> list[UUID]:
        """Active or ended leases that may owe something for this key.

        The window is generous (billing days shift month windows, arrears
        bills the previous period); a lease with nothing due ends Skipped.
        """
        period = resolve_period(period_key)
        if run_type is RunType.RENT:
            start: date = resolve_period(previous_period_key(period_key)).start
            end: date = resolve_period(period_key, 28).end
        else:
            start, end = period.start - _UTILITY_LOOKBACK, period.end
        with transaction_scope(self._session_factory) as session:
            leases = SqlBillingRepository(session).list_billable_leases(org_id, start, end)
            return [lease.id for lease in leases]

    # -------------------------------------------------------------------------
    # Run row
    # -------------------------------------------------------------------------

    @staticmethod
    def _find_run(
        session: Session, org_id: UUID, period_key: str, run_type: RunType
    ) -> InvoiceRunModel | None:
        return session.execute(
            select(InvoiceRunModel).where(
                InvoiceRunModel.org_id == org_id,
                InvoiceRunModel.period_key == period_key,
                InvoiceRunModel.run_type == run_type.value,
            )
        ).scalar_one_or_none()

    def _upsert_run(self, org_id: UUID, period_key: str, run_type: RunType) -> tuple[UUID, str]:
        now = self._clock.now_utc()
        with transaction_scope(self._session_factory) as session:
            run = self._find_run(session, org_id, period_key, run_type)
            if run is None:
                run = InvoiceRunModel(
                    org_id=org_id,
                    period_key=period_key,
                    run_type=run_type.value,
                    run_number=f"RUN-{now:%Y%m}-{uuid4().hex[:8].upper()}",
                    attempt_count=0,
                    created_by_id=self._actor_id,
                )
                session.add(run)
            run.status = RunStatus.RUNNING.value
            run.attempt_count += 1
            run.started_at = now
            run.completed_at = None
            session.flush()
            return run.id, run.run_number

    def _begin_run(self, org_id: UUID, period_key: str, run_type: RunType) -> tuple[UUID, str]:
        """Get-or-create the run row, mark it running and count the attempt."""
        try:
            return self._upsert_run(org_id, period_key, run_type)
        except IntegrityError:
            # Another trigger created the row first; update that one.
            return self._upsert_run(org_id, period_key, run_type)

    def _finish_run(self, run_id: UUID, outcomes: tuple[LeaseOutcome, ...]) -> InvoiceRunResult:
        with transaction_scope(self._session_factory) as session:
            run = session.get(InvoiceRunModel, run_id)
            run.items.clear()
            session.flush()
            for index, outcome in enumerate(outcomes):
                run.items.append(InvoiceRunItemModel.from_dto(outcome, index, self._actor_id))

            run.total_leases = len(outcomes)
            run.succeeded_count = sum(1 for o in outcomes if o.status is LeaseOutcomeStatus.SUCCEEDED)
            run.skipped_count = sum(1 for o in outcomes if o.status is LeaseOutcomeStatus.SKIPPED)
            run.failed_count = sum(1 for o in outcomes if o.status is LeaseOutcomeStatus.FAILED)
            run.status = derive_run_status(outcomes).value
            run.completed_at = self._clock.now_utc()
            run.updated_by_id = self._actor_id
            session.flush()
            return run.to_dto()
