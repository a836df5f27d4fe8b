"""
Module: billing_kernel.db.engine
Responsibility: SQLAlchemy engine construction and the transactional scope
    used by every unit of work.  Single point of database connection
    configuration for the billing engine.
Architecture position: Kernel > DB.  MUST NOT import from services/ or outer
    layers.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with QueuePool and pre-ping; the
      optimistic version column on invoices and the locked sequence rows
      provide the stronger guarantees where they are needed.
    - SQLite (tests, local runs) gets a thread-shareable connection pool and
      a generous busy timeout so invoice-run workers queue for the write lock
      instead of failing.
    - There is no process-wide engine.  Callers own their engine and hand a
      session factory to ``BillingEngine``.
"""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import QueuePool

from billing_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_busy_timeout: float = 30.0,
) -> Engine:
    """
    Create an engine for ``database_url``.

    Args:
        database_url: ``postgresql://...`` (psycopg2) or ``sqlite:///path``.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (PostgreSQL only).
        max_overflow: Connections beyond pool_size (PostgreSQL only).
        pool_pre_ping: Test connections before use (PostgreSQL only).
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.
        sqlite_busy_timeout: Seconds a SQLite writer waits for the lock.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": sqlite_busy_timeout,
            },
        )

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


@contextmanager
def transaction_scope(
    session_factory: Callable[[], Session],
) -> Generator[Session, None, None]:
    """
    Commit-or-rollback scope around a session from ``session_factory``.

    Postconditions: On normal exit, session is committed and closed.  On
        exception, session is rolled back and closed and the exception is
        re-raised.

    Usage:
        with transaction_scope(factory) as session:
            InvoiceLifecycleManager(session, clock).issue(invoice_id)
    """
    session = session_factory()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()
