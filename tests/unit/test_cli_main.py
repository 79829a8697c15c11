"""Unit tests for the top-level skillops CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from skillops.cli import app
from skillops.config import ConfigManager

runner = CliRunner()


@pytest.fixture(autouse=True)
def _memory_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SKILLOPS_DATABASE__URL", raising=False)
    monkeypatch.delenv("SKILLOPS_CONFIG", raising=False)
    ConfigManager._reset_for_tests()


def _config(tmp_path: Path) -> str:
    path = tmp_path / "skillops.yaml"
    path.write_text("skills:\n  - skill_id: listing-writer\n    credit_cost: 25\n", encoding="utf-8")
    return str(path)


def test_tick_prints_report_json(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--config", _config(tmp_path), "tick"])
    assert result.exit_code == 0, result.output
    report, _ = json.JSONDecoder().raw_decode(result.output, result.output.index("{"))
    assert report["enqueued"] == []
    assert report["reconciled"] == 0


def test_balance_unknown_account_exits_1(tmp_path: Path) -> None:
    result = runner.invoke(app, ["-c", _config(tmp_path), "balance", "ghost"])
    assert result.exit_code == 1
    assert "ghost" in result.output


def test_invalid_log_level_exits_2(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--log-level", "chatty", "-c", _config(tmp_path), "tick"])
    assert result.exit_code == 2
    assert "unknown log level" in result.output


def test_serve_hands_app_to_uvicorn(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    def fake_run(asgi, **kwargs) -> None:  # type: ignore[no-untyped-def]
        calls.append({"asgi": asgi, **kwargs})

    monkeypatch.setattr("uvicorn.run", fake_run)
    result = runner.invoke(app, ["-c", _config(tmp_path), "serve", "--port", "9001"])

    assert result.exit_code == 0, result.output
    assert calls[0]["port"] == 9001
    assert calls[0]["host"] == "127.0.0.1"


def test_tick_watch_sleeps_for_configured_interval(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        raise KeyboardInterrupt

    monkeypatch.setattr("skillops.cli.asyncio.sleep", fake_sleep)
    monkeypatch.setenv("SKILLOPS_DISPATCHER__TICK_INTERVAL_MINUTES", "5")
    result = runner.invoke(app, ["-c", _config(tmp_path), "tick", "--watch"])

    assert result.exit_code == 0, result.output
    assert delays == [300]
    assert result.output.count('"enqueued"') == 1
