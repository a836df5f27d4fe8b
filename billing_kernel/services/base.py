"""
BaseService -- common constructor for the billing kernel services.

Responsibility:
    Holds the caller's ``Session``, the injected ``Clock``, the
    ``EventPublisher`` events are queued on, and the acting user.  Every
    concrete service inherits from it and works through
    ``SqlBillingRepository``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Flush-only.  Services never call ``session.commit()`` or
      ``session.rollback()``; ``transaction_scope`` (or the caller) owns
      the boundary.
    - Events are queued, never delivered, inside a service.  The owner of
      the transaction flushes the publisher after commit.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.events import EventPublisher
from billing_kernel.services.repository import SqlBillingRepository


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT deliver events.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._publisher = publisher if publisher is not None else EventPublisher()
        self._actor_id = actor_id
        self._repo = SqlBillingRepository(session)

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def repository(self) -> SqlBillingRepository:
        return self._repo
