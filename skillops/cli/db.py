"""skillops db: create tables and run Alembic migrations."""

from __future__ import annotations

import asyncio
import os

import typer
from alembic import command
from alembic.config import Config

from skillops.db import Base, ConfigurationError, create_engine
from skillops.db.engine import DATABASE_URL_ENV

db_app = typer.Typer(
    name="db",
    help="Database operations: init, migrate.",
)


def _resolve_url(database_url: str) -> str:
    url = database_url.strip() or os.environ.get(DATABASE_URL_ENV, "").strip()
    if not url:
        typer.echo(f"Error: Set {DATABASE_URL_ENV} or pass --database-url.", err=True)
        raise typer.Exit(2)
    return url


def _register_models() -> None:
    # Importing the ORM modules registers their tables on Base.metadata.
    import skillops.executions.orm  # noqa: F401
    import skillops.ledger.orm  # noqa: F401
    import skillops.schedules.orm  # noqa: F401


async def _create_all(url: str) -> None:
    engine = create_engine(url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


@db_app.command("init")
def init_command(
    database_url: str = typer.Option("", "--database-url", help=f"Database URL (default: {DATABASE_URL_ENV})."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List tables without creating them."),
) -> None:
    """Create all SkillOps tables that do not exist yet."""
    _register_models()
    tables = sorted(Base.metadata.tables)
    if dry_run:
        typer.echo("--dry-run: would create tables " + ", ".join(tables))
        return
    url = _resolve_url(database_url)
    try:
        asyncio.run(_create_all(url))
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc
    typer.echo("Created tables: " + ", ".join(tables))


@db_app.command("migrate")
def migrate_command(
    target: str = typer.Option("head", "--target", "-t", help="Revision to upgrade to (default: head)."),
    database_url: str = typer.Option("", "--database-url", help=f"Database URL (default: {DATABASE_URL_ENV})."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show pending migrations without applying."),
    config_file: str = typer.Option("alembic.ini", "--alembic-config", help="Path to alembic.ini."),
) -> None:
    """Run schema migrations (Alembic upgrade)."""
    normalized_target = target.strip()
    if not normalized_target:
        typer.echo("Error: --target must be a non-empty revision string.", err=True)
        raise typer.Exit(2)
    url = _resolve_url(database_url)
    os.environ[DATABASE_URL_ENV] = url
    alembic_cfg = Config(config_file)
    if dry_run:
        command.current(alembic_cfg)
        command.heads(alembic_cfg)
        typer.echo("--dry-run: run without --dry-run to apply migrations.")
        return
    command.upgrade(alembic_cfg, normalized_target)
    typer.echo("Migrations applied.")
