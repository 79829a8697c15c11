"""Unit tests for skillops db CLI (init, migrate)."""

from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from skillops.cli import app

runner = CliRunner()


def test_db_migrate_without_url(monkeypatch):
    """migrate without SKILLOPS_DATABASE__URL exits 2."""
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    result = runner.invoke(app, ["db", "migrate"])
    assert result.exit_code == 2
    assert "SKILLOPS_DATABASE__URL" in result.output


def test_db_migrate_rejects_blank_target(monkeypatch):
    """migrate with blank --target should fail fast."""
    monkeypatch.setenv("SKILLOPS_DATABASE__URL", "postgresql://u:p@localhost/skillops")
    result = runner.invoke(app, ["db", "migrate", "--target", "  "])
    assert result.exit_code == 2
    assert "--target" in result.output


def test_db_migrate_runs_alembic_upgrade(monkeypatch):
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    with patch("skillops.cli.db.command.upgrade") as upgrade:
        result = runner.invoke(
            app, ["db", "migrate", "--database-url", "postgresql://u:p@localhost/skillops", "-t", "001_initial"]
        )
    assert result.exit_code == 0, result.output
    upgrade.assert_called_once()
    assert upgrade.call_args[0][1] == "001_initial"
    assert "Migrations applied." in result.output


def test_db_init_dry_run_lists_tables(monkeypatch):
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    result = runner.invoke(app, ["db", "init", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "accounts" in result.output
    assert "skill_executions" in result.output


def test_db_init_creates_tables_with_url(monkeypatch):
    monkeypatch.setenv("SKILLOPS_DATABASE__URL", "postgresql://u:p@localhost/skillops")
    with patch("skillops.cli.db._create_all", new_callable=AsyncMock) as create_all:
        result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 0, result.output
    create_all.assert_awaited_once_with("postgresql://u:p@localhost/skillops")
    assert "Created tables" in result.output


def test_db_init_without_url_exits_2(monkeypatch):
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 2
