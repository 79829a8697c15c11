"""CLI tools: skillops tick, serve, balance, db."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import typer

from skillops.app import SkillOpsApp, build_app
from skillops.cli.db import db_app
from skillops.config import ConfigManager, SkillOpsConfig
from skillops.errors import NotFoundError

app = typer.Typer(
    name="skillops",
    help="SkillOps: skill execution engine with a credit ledger.",
)
app.add_typer(db_app, name="db")

logger = logging.getLogger(__name__)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: str = typer.Option("", "--config", "-c", help="Path to skillops.yaml (default: SKILLOPS_CONFIG or ./skillops.yaml)."),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level."),
) -> None:
    """Load configuration and configure logging for every command."""
    level = getattr(logging, log_level.strip().upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Error: unknown log level '{log_level}'.", err=True)
        raise typer.Exit(2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    ctx.obj = {"config_path": config or None}


def _load_config(ctx: typer.Context) -> SkillOpsConfig:
    config_path = (ctx.obj or {}).get("config_path")
    return ConfigManager.load(config_path=config_path).get()


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command("tick")
def tick_command(
    ctx: typer.Context,
    watch: bool = typer.Option(False, "--watch", help="Keep ticking every dispatcher.tick_interval_minutes."),
) -> None:
    """Run one dispatcher tick and wait for the runs it started."""
    config = _load_config(ctx)
    skillops = build_app(config)
    interval = config.dispatcher.tick_interval_minutes * 60

    async def _run() -> None:
        try:
            while True:
                report = await skillops.dispatcher.tick(wait=not watch)
                _echo_json(report.to_dict())
                if not watch:
                    return
                await asyncio.sleep(interval)
        finally:
            await skillops.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("skillops_tick_stopped")


@app.command("balance")
def balance_command(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id."),
) -> None:
    """Print the balance summary of an account."""
    skillops = build_app(_load_config(ctx))

    async def _run() -> dict[str, Any]:
        try:
            summary = await skillops.ledger.get_balance(account_id, recent=5)
        finally:
            await skillops.close()
        return {
            "account_id": summary.account_id,
            "balance": summary.balance,
            "reserved": summary.reserved,
            "available": summary.available,
            "lifetime_earned": summary.lifetime_earned,
            "lifetime_spent": summary.lifetime_spent,
        }

    try:
        _echo_json(asyncio.run(_run()))
    except NotFoundError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8080, "--port", help="Bind port."),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    skillops: SkillOpsApp = build_app(_load_config(ctx))
    logger.info("skillops_serve host=%s port=%d", host, port)
    uvicorn.run(skillops.asgi, host=host, port=port, log_level="info")


def main() -> None:
    """Console script entry point."""
    app()
