"""Alembic environment: uses SKILLOPS_DATABASE__URL and skillops.db.Base."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection

# Import models so their tables are attached to Base.metadata for Alembic
from skillops.db import Base
from skillops.db.engine import SYNC_DRIVER, postgres_url
from skillops.executions.orm import ExecutionModel  # noqa: F401
from skillops.ledger.orm import AccountModel, CreditReservationModel, CreditTransactionModel  # noqa: F401
from skillops.schedules.orm import ScheduleModel  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _get_sync_url() -> str:
    """Sync psycopg2 URL from SKILLOPS_DATABASE__URL or alembic.ini."""
    return postgres_url(config.get_main_option("sqlalchemy.url") or None, driver=SYNC_DRIVER)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL only, no DB connection)."""
    context.configure(
        url=_get_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    connectable = context.config.attributes.get("connection", None)
    if connectable is None:
        from sqlalchemy import create_engine

        connectable = create_engine(_get_sync_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        do_run_migrations(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
