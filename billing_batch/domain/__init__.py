"""
billing_batch.domain -- Pure types and schedule evaluation for invoice runs.

ZERO I/O.  All types are frozen dataclasses.
"""

from billing_batch.domain.types import (
    InvoiceRunResult,
    LeaseOutcome,
    LeaseOutcomeStatus,
    RunStatus,
    ScheduledJob,
)

__all__ = [
    "InvoiceRunResult",
    "LeaseOutcome",
    "LeaseOutcomeStatus",
    "RunStatus",
    "ScheduledJob",
]
