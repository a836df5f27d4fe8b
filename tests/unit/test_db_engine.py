"""Engine construction and the commit-or-rollback transaction scope."""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.orm import sessionmaker

from billing_kernel.db.engine import build_engine, transaction_scope
from billing_services.engine import BillingEngine
from billing_services.orm_registry import create_all_tables, drop_all_tables


@pytest.fixture
def file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'scope.db'}")
    yield engine
    engine.dispose()


class TestBuildEngine:

    def test_sqlite_engine_is_thread_shareable(self, file_engine):
        assert file_engine.dialect.name == "sqlite"
        with file_engine.connect() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1

    def test_create_and_drop_all_tables(self, file_engine):
        create_all_tables(file_engine)
        tables = set(inspect(file_engine).get_table_names())
        assert {"invoices", "payments", "leases", "invoice_runs"} <= tables

        drop_all_tables(file_engine)
        assert "invoices" not in inspect(file_engine).get_table_names()

    def test_facade_from_url_owns_its_engine(self, tmp_path):
        facade = BillingEngine.from_url(f"sqlite:///{tmp_path / 'facade.db'}")
        assert facade.list_org_ids() == []


class TestTransactionScope:

    def test_commits_on_success(self, file_engine):
        factory = sessionmaker(bind=file_engine)
        with transaction_scope(factory) as session:
            session.execute(text("CREATE TABLE marker (id INTEGER)"))
            session.execute(text("INSERT INTO marker VALUES (1)"))

        with factory() as session:
            assert session.execute(text("SELECT count(*) FROM marker")).scalar() == 1

    def test_rolls_back_and_reraises(self, file_engine):
        factory = sessionmaker(bind=file_engine)
        with transaction_scope(factory) as session:
            session.execute(text("CREATE TABLE marker (id INTEGER)"))

        with pytest.raises(ZeroDivisionError):
            with transaction_scope(factory) as session:
                session.execute(text("INSERT INTO marker VALUES (1)"))
                1 / 0

        with factory() as session:
            assert session.execute(text("SELECT count(*) FROM marker")).scalar() == 0
