"""Async engines for the PostgreSQL-backed stores."""

from __future__ import annotations

import logging
import os

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from skillops.config.models import DatabaseConfig
from skillops.db.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "SKILLOPS_DATABASE__URL"
ASYNC_DRIVER = "postgresql+asyncpg"
SYNC_DRIVER = "postgresql+psycopg2"

_POSTGRES_DRIVERS = frozenset({"postgres", "postgresql", ASYNC_DRIVER, SYNC_DRIVER})
_engines: dict[str, AsyncEngine] = {}


def postgres_url(database_url: str | None = None, *, driver: str = ASYNC_DRIVER) -> str:
    """Resolve a PostgreSQL URL and rewrite it for ``driver``.

    Falls back to ``SKILLOPS_DATABASE__URL`` when ``database_url`` is empty.
    The async stores use asyncpg; Alembic runs on psycopg2.

    Raises:
        ConfigurationError: no URL configured, or the URL is not PostgreSQL.
    """
    raw = (database_url or os.environ.get(DATABASE_URL_ENV, "")).strip()
    if not raw:
        raise ConfigurationError(f"Database URL not set. Set {DATABASE_URL_ENV} or pass database_url.")
    try:
        url = make_url(raw)
    except ArgumentError as exc:
        raise ConfigurationError("Database URL could not be parsed.") from exc
    if url.drivername not in _POSTGRES_DRIVERS:
        raise ConfigurationError("Database URL must be PostgreSQL (postgresql:// or postgresql+asyncpg://).")
    return url.set(drivername=driver).render_as_string(hide_password=False)


def create_engine(
    database_url: str | None = None,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: float = 30.0,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> AsyncEngine:
    """Create an asyncpg engine with a pre-pinged, recycled pool."""
    url = postgres_url(database_url)
    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
    )
    logger.debug("db_engine_created host=%s database=%s pool_size=%d", engine.url.host, engine.url.database, pool_size)
    return engine


def create_engine_from_config(config: DatabaseConfig) -> AsyncEngine:
    """Create an engine from the ``database`` config section."""
    return create_engine(
        config.url or None,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        echo=config.echo,
    )


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """Return the process-wide engine for a URL, creating it on first use."""
    url = postgres_url(database_url)
    engine = _engines.get(url)
    if engine is None:
        engine = _engines[url] = create_engine(url)
    return engine


async def dispose_engine(database_url: str | None = None) -> None:
    """Dispose the cached engine for ``database_url``, or every cached engine."""
    urls = list(_engines) if database_url is None else [postgres_url(database_url)]
    for url in urls:
        engine = _engines.pop(url, None)
        if engine is not None:
            await engine.dispose()
