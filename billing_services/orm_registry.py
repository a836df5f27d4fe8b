"""
ORM registry (``billing_services.orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy model in the billing packages is imported so that
``Base.metadata`` holds all table definitions before tables are created.
Kernel models alone do not cover the invoice-run tables, which
live in ``billing_batch``.

Architecture position
---------------------
**Services layer** -- utility.  Imports ``billing_kernel`` and
``billing_batch``.  MUST NOT be imported by either of them.

Usage
-----
Entrypoints and ``tests/conftest.py`` call ``create_all_tables(engine)``.
"""

from __future__ import annotations

from sqlalchemy.engine import Engine


def import_all_orm_models() -> None:
    """Import kernel and batch models.  Idempotent."""
    # Kernel tables first; run items reference invoices and leases.
    import billing_kernel.models  # noqa: F401
    import billing_batch.models  # noqa: F401


def create_all_tables(engine: Engine) -> None:
    """Create every billing table on ``engine``.

    Postconditions:
        Kernel, sequence and invoice-run tables exist.
    """
    from billing_kernel.db.base import Base

    import_all_orm_models()
    Base.metadata.create_all(engine)


def drop_all_tables(engine: Engine) -> None:
    """Drop every billing table.  Tests and local resets only."""
    from billing_kernel.db.base import Base

    import_all_orm_models()
    Base.metadata.drop_all(engine)
