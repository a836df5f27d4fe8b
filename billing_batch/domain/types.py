"""
billing_batch.domain.types -- Pure frozen dataclasses for invoice runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from billing_kernel.domain.types import RunType
from billing_kernel.exceptions import PartialBatchFailure


class RunStatus(str, Enum):
    """Run-level status after an attempt."""

    RUNNING = "running"
    COMPLETED = "completed"  # No lease failed
    COMPLETED_WITH_ERRORS = "completed_with_errors"  # Some leases failed
    FAILED = "failed"  # Every attempted lease failed


class LeaseOutcomeStatus(str, Enum):
    """Per-lease result within a run."""

    SUCCEEDED = "succeeded"  # Invoice generated
    SKIPPED = "skipped"  # Already invoiced, or nothing to bill
    FAILED = "failed"


class ScheduledJob(str, Enum):
    RENT_RUN = "rent_run"
    UTILITY_RUN = "utility_run"
    OVERDUE_SWEEP = "overdue_sweep"


@dataclass(frozen=True)
class LeaseOutcome:
    lease_id: UUID
    status: LeaseOutcomeStatus
    invoice_id: UUID | None = None
    reason: str | None = None
    error_code: str | None = None
    duration_ms: int = 0


def derive_run_status(outcomes: tuple[LeaseOutcome, ...]) -> RunStatus:
    """COMPLETED unless a lease failed; FAILED when nothing else happened."""
    failed = sum(1 for o in outcomes if o.status is LeaseOutcomeStatus.FAILED)
    if failed == 0:
        return RunStatus.COMPLETED
    if failed == len(outcomes):
        return RunStatus.FAILED
    return RunStatus.COMPLETED_WITH_ERRORS


@dataclass(frozen=True)
class InvoiceRunResult:
    """Immutable result of one run attempt.

    Returned by ``InvoiceRunService.run_monthly_invoices()``.
    """

    run_id: UUID
    run_number: str
    org_id: UUID
    period_key: str
    run_type: RunType
    status: RunStatus
    attempt_count: int
    outcomes: tuple[LeaseOutcome, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def _count(self, status: LeaseOutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(LeaseOutcomeStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(LeaseOutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(LeaseOutcomeStatus.FAILED)

    @property
    def invoice_ids(self) -> tuple[UUID, ...]:
        return tuple(o.invoice_id for o in self.outcomes if o.invoice_id is not None)

    def outcome_for(self, lease_id: UUID) -> LeaseOutcome | None:
        return next((o for o in self.outcomes if o.lease_id == lease_id), None)

    def raise_for_failures(self) -> InvoiceRunResult:
        """Raise PartialBatchFailure if any lease failed; otherwise return self."""
        if self.failed:
            raise PartialBatchFailure(self.run_id, self.failed, self.total)
        return self
