"""Integration test defaults: a real PostgreSQL with the SkillOps schema."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from skillops.db import Base, create_session_factory
from skillops.executions.orm import ExecutionModel  # noqa: F401
from skillops.ledger.orm import AccountModel  # noqa: F401
from skillops.schedules.orm import ScheduleModel  # noqa: F401

pytestmark = pytest.mark.requires_postgres

_TABLES = "skill_executions, skill_schedules, credit_reservations, credit_transactions, accounts"


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Apply default PostgreSQL requirement marker to all integration tests."""
    for item in items:
        if "tests/integration/" in item.nodeid.replace("\\", "/"):
            item.add_marker(pytest.mark.requires_postgres)


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Engine on a clean schema; NullPool keeps connections off other event loops."""
    engine = create_async_engine(db_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text(f"TRUNCATE {_TABLES} CASCADE"))
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)
