"""Session factories and units of work for the SQL stores."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from skillops.db.engine import get_engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Stores hand detached records back to callers after commit.
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@asynccontextmanager
async def transaction(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """One session, one transaction.

    Every store method runs its conditional update and the rows written
    alongside it inside this block, so they commit or roll back together.
    """
    async with factory() as session:
        async with session.begin():
            yield session


@asynccontextmanager
async def get_session(engine: AsyncEngine | None = None) -> AsyncIterator[AsyncSession]:
    """Transactional session on ``engine``, or on :func:`get_engine` when omitted."""
    async with transaction(create_session_factory(engine or get_engine())) as session:
        yield session
