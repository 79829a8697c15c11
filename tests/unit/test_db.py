"""Unit tests for skillops.db."""

import pytest

from skillops.config.models import DatabaseConfig
from skillops.db import (
    Base,
    ConfigurationError,
    create_engine,
    create_engine_from_config,
    create_session_factory,
    dispose_engine,
    get_engine,
    get_session,
)
from skillops.db.engine import SYNC_DRIVER, postgres_url
from skillops.executions.orm import ExecutionModel  # noqa: F401
from skillops.ledger.orm import AccountModel  # noqa: F401
from skillops.schedules.orm import ScheduleModel  # noqa: F401


def test_base_metadata_lists_all_tables():
    """Base exposes metadata for Alembic and db init."""
    assert {
        "accounts",
        "credit_transactions",
        "credit_reservations",
        "skill_schedules",
        "skill_executions",
    } <= set(Base.metadata.tables)


def test_transaction_idempotency_is_unique_per_account():
    table = Base.metadata.tables["credit_transactions"]
    unique = [c for c in table.constraints if c.name == "uq_credit_transactions_account_idempotency"]
    assert unique
    assert [col.name for col in unique[0].columns] == ["account_id", "idempotency_key"]


def test_create_engine_requires_postgresql_url():
    """create_engine raises ConfigurationError for non-PostgreSQL URL."""
    with pytest.raises(ConfigurationError) as exc_info:
        create_engine("mysql://localhost/db")
    assert "PostgreSQL" in str(exc_info.value)


def test_get_engine_without_url_raises_when_env_unset(monkeypatch):
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    with pytest.raises(ConfigurationError) as exc_info:
        get_engine()
    assert "SKILLOPS_DATABASE__URL" in str(exc_info.value)


def test_create_engine_normalizes_postgresql_to_asyncpg():
    eng = create_engine("postgresql://u:p@localhost/db")
    assert eng.url.drivername == "postgresql+asyncpg"


def test_create_engine_from_config_uses_pool_settings():
    eng = create_engine_from_config(DatabaseConfig(url="postgres://u:p@localhost/db", pool_size=3))
    assert eng.url.drivername == "postgresql+asyncpg"
    assert eng.pool.size() == 3


@pytest.mark.asyncio
async def test_get_engine_caches_by_url(monkeypatch):
    """get_engine returns same engine for same URL."""
    monkeypatch.setenv("SKILLOPS_DATABASE__URL", "postgresql://u:p@host/db1")
    e1 = get_engine()
    e2 = get_engine()
    assert e1 is e2
    await dispose_engine()
    assert get_engine() is not e1
    await dispose_engine()


def test_session_factory_does_not_expire_on_commit():
    factory = create_session_factory(create_engine("postgresql://u:p@localhost/db"))
    assert factory.kw["expire_on_commit"] is False


def test_get_session_returns_async_context_manager():
    cm = get_session(create_engine("postgresql://u:p@localhost/db"))
    assert hasattr(cm, "__aenter__") and hasattr(cm, "__aexit__")


def test_postgres_url_rewrites_driver_for_alembic():
    url = postgres_url("postgresql+asyncpg://u:p@localhost:5432/db", driver=SYNC_DRIVER)
    assert url == "postgresql+psycopg2://u:p@localhost:5432/db"


def test_postgres_url_reads_env(monkeypatch):
    monkeypatch.setenv("SKILLOPS_DATABASE__URL", "postgres://u:p@db/skillops")
    assert postgres_url() == "postgresql+asyncpg://u:p@db/skillops"
