"""
Pytest fixtures for the billing test suite.

Provides:
- A file-backed SQLite database per test (tables created through the ORM
  registry, so run tables are included)
- A deterministic clock
- Lease / settings / charge builders and a helper that produces an issued
  invoice
- Captured structured logs

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL).
  Defaults to a SQLite file under the test's tmp_path.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from billing_config import BillingConfig
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.db.engine import build_engine, transaction_scope
from billing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.domain.events import EventPublisher
from billing_kernel.domain.types import (
    ChargeKind,
    LeaseStatus,
    ProrationMethod,
    RentTiming,
    UtilityBillingMode,
)
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.charge import ChargeDefinitionModel
from billing_kernel.models.lease import LeaseBillingSettingsModel, LeaseModel
from billing_kernel.services.invoice_generation import InvoiceGenerationService
from billing_kernel.services.invoice_lifecycle import InvoiceLifecycleManager
from billing_services.engine import BillingEngine
from billing_services.orm_registry import create_all_tables, drop_all_tables


# Test actor ID for interactive operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, engine):
            engine.apply_payment(...)
            logs = captured_logs()
            assert any(r["message"] == "payment_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Fresh schema per test."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'billing.db'}"
    engine = build_engine(url)
    create_all_tables(engine)
    register_immutability_listeners()
    yield engine
    if not url.startswith("sqlite"):
        drop_all_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A session whose work is rolled back at the end of the test."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def without_immutability_listeners():
    """Disable the ORM guards for tests that check the service-level checks."""
    unregister_immutability_listeners()
    yield
    register_immutability_listeners()


# =============================================================================
# Time, events, config
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def test_actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def billing_config():
    return BillingConfig(max_concurrency_retries=2, run_max_workers=4)


@pytest.fixture
def engine(session_factory, billing_config, deterministic_clock, publisher):
    """BillingEngine facade over the test database."""
    return BillingEngine(
        session_factory,
        config=billing_config,
        clock=deterministic_clock,
        publisher=publisher,
    )


# =============================================================================
# Builders
# =============================================================================


def add_lease(
    session,
    org_id,
    start_date: date = date(2024, 1, 1),
    end_date: date | None = None,
    rent: Decimal | str | None = "1000.00",
    status: LeaseStatus = LeaseStatus.ACTIVE,
    lease_number: str | None = None,
    charges: tuple[dict, ...] = (),
    statements: tuple[dict, ...] = (),
    with_settings: bool = True,
    **settings,
) -> LeaseModel:
    """Insert a lease with one settings version and (optionally) a rent charge.

    ``charges`` and ``statements`` are keyword dicts for ``add_charge`` and
    ``add_utility_statement``.  ``settings`` overrides
    LeaseBillingSettingsModel columns (billing_day, rent_timing,
    proration_method, tax_applicable, tax_rate, payment_term_days,
    invoice_prefix).
    """
    lease = LeaseModel(
        org_id=org_id,
        lease_number=lease_number or f"L-{uuid4().hex[:8]}",
        start_date=start_date,
        end_date=end_date,
        status=status.value,
        created_by_id=SYSTEM_ACTOR_ID,
    )
    session.add(lease)
    session.flush()

    values = {
        "billing_day": 1,
        "rent_timing": RentTiming.ADVANCE.value,
        "proration_method": ProrationMethod.ACTUAL_DAYS_IN_MONTH.value,
        "tax_applicable": False,
        "tax_rate": Decimal("0"),
        "payment_term_days": 5,
        "invoice_prefix": "INV",
    }
    values.update({k: getattr(v, "value", v) for k, v in settings.items()})
    if with_settings:
        session.add(
            LeaseBillingSettingsModel(
                lease_id=lease.id,
                effective_from=start_date,
                created_by_id=SYSTEM_ACTOR_ID,
                **values,
            )
        )
    if rent is not None:
        add_charge(session, lease, ChargeKind.RENT, rent, start_date, end_date, "Monthly rent")
    for charge in charges:
        add_charge(session, lease, **charge)
    for statement in statements:
        add_utility_statement(session, lease, **statement)
    session.flush()
    return lease


def add_charge(
    session,
    lease: LeaseModel,
    kind: ChargeKind,
    amount: Decimal | str,
    effective_from: date,
    effective_to: date | None = None,
    description: str = "Charge",
    taxable: bool = False,
    **utility,
) -> ChargeDefinitionModel:
    """Insert a charge.  ``utility`` sets utility_* / meter_* columns."""
    charge = ChargeDefinitionModel(
        lease_id=lease.id,
        org_id=lease.org_id,
        kind=kind.value,
        description=description,
        amount=Decimal(amount),
        effective_from=effective_from,
        effective_to=effective_to,
        taxable=taxable,
        created_by_id=SYSTEM_ACTOR_ID,
        **{k: getattr(v, "value", v) for k, v in utility.items()},
    )
    session.add(charge)
    session.flush()
    return charge


def add_utility_statement(
    session,
    lease: LeaseModel,
    start: date,
    end: date,
    amount: Decimal | str = "0",
    utility_type: str = "Electricity",
    **meter,
) -> ChargeDefinitionModel:
    default_mode = UtilityBillingMode.METER if meter else UtilityBillingMode.AMOUNT
    mode = meter.pop("utility_mode", default_mode)
    return add_charge(
        session,
        lease,
        ChargeKind.UTILITY,
        amount,
        start,
        end,
        f"{utility_type} statement",
        utility_type=utility_type,
        utility_mode=mode,
        **meter,
    )


@pytest.fixture
def lease_builder(session_factory, org_id):
    """Commit a lease (and its settings/rent) in its own transaction.

    Returns the lease id.
    """

    def _build(**kwargs):
        kwargs.setdefault("org_id", org_id)
        with transaction_scope(session_factory) as s:
            return add_lease(s, **kwargs).id

    return _build


@pytest.fixture
def issued_invoice(session_factory, deterministic_clock, lease_builder):
    """Commit a lease and an issued invoice for it; returns the invoice id.

    Keyword arguments go to the lease builder; ``period_key`` defaults to
    ``2024-03``.
    """

    def _build(period_key: str = "2024-03", **lease_kwargs):
        lease_id = lease_builder(**lease_kwargs)
        with transaction_scope(session_factory) as s:
            result = InvoiceGenerationService(s, deterministic_clock).generate_invoice(
                lease_id, period_key
            )
            InvoiceLifecycleManager(s, deterministic_clock).issue(result.invoice.id)
            return result.invoice.id

    return _build


@pytest.fixture
def make_lease(session, org_id):
    """Insert a lease into the test session (flushed, not committed)."""

    def _make(**kwargs):
        kwargs.setdefault("org_id", org_id)
        return add_lease(session, **kwargs)

    return _make
