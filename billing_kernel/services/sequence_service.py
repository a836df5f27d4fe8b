"""
SequenceService -- per-organization document numbering via locked counter rows.

Responsibility:
    Allocates invoice and credit-note numbers.  Each organization has its
    own counter per document type; the counter row is locked with
    ``SELECT ... FOR UPDATE`` so two concurrent issues in one org can never
    receive the same number.

Architecture position:
    Kernel > Services.  Called by InvoiceLifecycleManager (issue) and
    CreditNoteService.

Invariants enforced:
    - Numbers are strictly increasing per (org, document type).  The
      aggregate-max-plus-one pattern is never used.
    - Allocation is transactional: a rolled-back issue does not consume
      its number.
    - uq_invoices_org_number / uq_credit_notes_org_number back this up at
      the storage layer.

Failure modes:
    - IntegrityError on a concurrent first-use counter insert is absorbed
      with a savepoint and a locked re-read.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One named counter.  Row-level locking serializes allocation."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def format_document_number(prefix: str, yyyymm: str, value: int) -> str:
    """``INV-202403-000042`` style numbers."""
    return f"{prefix}-{yyyymm}-{value:06d}"


class SequenceService:
    """
    Transactional sequence allocation.

    Contract:
        ``next_value(name)`` returns the next integer for ``name``; the
        increment commits with the caller's transaction.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Numbers are not gap-free across rolled-back transactions that
          already flushed other work after allocation.
    """

    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def sequence_name(document_type: str, org_id: object, prefix: str) -> str:
        return f"{document_type}:{org_id}:{prefix}"

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock (or create) the counter row, increment it and return the value.

        Returns:
            The next sequence value (always > 0).
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_document_number(
        self,
        document_type: str,
        org_id: object,
        prefix: str,
        yyyymm: str,
    ) -> str:
        value = self.next_value(self.sequence_name(document_type, org_id, prefix))
        return format_document_number(prefix, yyyymm, value)

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing; None if never used."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
