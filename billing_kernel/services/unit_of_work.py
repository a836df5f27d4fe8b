"""
Unit-of-work runner with optimistic-concurrency retry.

Responsibility:
    Runs one callable inside ``transaction_scope`` and, when the commit or
    an intermediate flush loses a version race (``StaleDataError``), runs
    the whole callable again on a fresh session.  Every attempt re-reads
    and re-validates, so a retry that finds the invoice already settled
    fails with the business rule, not with a conflict.

Event delivery:
    Events queued on the publisher during a failed attempt are discarded.
    Events from the successful attempt are delivered after commit.

Failure modes:
    - OptimisticLockConflictError once ``max_retries`` retries are spent.
    - Any other exception propagates unchanged after rollback.
"""

from typing import Callable, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_kernel.db.engine import transaction_scope
from billing_kernel.domain.events import EventPublisher
from billing_kernel.exceptions import OptimisticLockConflictError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.unit_of_work")

T = TypeVar("T")


def run_unit_of_work(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    publisher: EventPublisher | None = None,
    max_retries: int = 0,
    entity_type: str = "Invoice",
    entity_id: object = None,
) -> T:
    """Run ``work(session)`` in its own transaction, retrying lost races.

    Args:
        session_factory: Produces a new session per attempt.
        work: Does the whole unit of work with the given session.
        publisher: Flushed after commit, discarded after a failed attempt.
        max_retries: Extra attempts after the first one.
        entity_type, entity_id: Identify the contended row in logs and in
            the final OptimisticLockConflictError.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            with transaction_scope(session_factory) as session:
                result = work(session)
        except StaleDataError as exc:
            if publisher is not None:
                publisher.discard()
            if attempts > max_retries:
                logger.warning(
                    "optimistic_lock_conflict_exhausted",
                    extra={
                        "entity_type": entity_type,
                        "entity_id": str(entity_id),
                        "attempts": attempts,
                    },
                )
                raise OptimisticLockConflictError(entity_type, entity_id, attempts) from exc
            logger.info(
                "optimistic_lock_conflict_retry",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "attempt": attempts,
                },
            )
            continue
        except Exception:
            if publisher is not None:
                publisher.discard()
            raise

        if publisher is not None:
            publisher.flush()
        return result
