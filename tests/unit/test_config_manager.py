"""Unit tests for ConfigManager."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from pydantic import ValidationError

from skillops.config.manager import ConfigManager


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("SKILLOPS_CONFIG", "SKILLOPS_DATABASE__URL", "SKILLOPS_ENGINE__MAX_CONCURRENT"):
        monkeypatch.delenv(key, raising=False)
    ConfigManager._reset_for_tests()


def _write_yaml(path: Path, text: str) -> None:
    path.write_text(text, encoding="utf-8")


def test_config_manager_singleton() -> None:
    m1 = ConfigManager.instance()
    m2 = ConfigManager.instance()
    assert m1 is m2


def test_config_manager_defaults_without_file(tmp_path: Path) -> None:
    cfg = ConfigManager.load(config_path=str(tmp_path / "missing.yaml")).get()
    assert cfg.database.url == ""
    assert cfg.engine.max_concurrent == 10
    assert cfg.ledger.low_balance_thresholds == [50, 25, 10]
    assert cfg.skills == []


def test_config_manager_load_get_and_override(tmp_path: Path) -> None:
    cfg_path = tmp_path / "skillops.yaml"
    _write_yaml(
        cfg_path,
        "engine:\n  max_concurrent: 4\n  default_timeout_seconds: 60\n"
        "skills:\n  - skill_id: listing-writer\n    credit_cost: 25\n",
    )
    manager = ConfigManager.load(config_path=str(cfg_path), overrides={"engine": {"max_concurrent": 8}})
    cfg = manager.get()
    assert cfg.engine.max_concurrent == 8
    assert cfg.engine.default_timeout_seconds == 60
    assert cfg.skills[0].skill_id == "listing-writer"


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "skillops.yaml"
    _write_yaml(cfg_path, "engine:\n  max_concurrent: 4\n")
    monkeypatch.setenv("SKILLOPS_ENGINE__MAX_CONCURRENT", "12")
    monkeypatch.setenv("SKILLOPS_DATABASE__URL", "postgresql+asyncpg://u:p@db:5432/skillops")
    cfg = ConfigManager.load(config_path=str(cfg_path)).get()
    assert cfg.engine.max_concurrent == 12
    assert cfg.database.url == "postgresql+asyncpg://u:p@db:5432/skillops"


def test_invalid_config_raises_validation_error(tmp_path: Path) -> None:
    cfg_path = tmp_path / "skillops.yaml"
    _write_yaml(cfg_path, "engine:\n  max_concurrent: 0\n")
    with pytest.raises(ValidationError):
        ConfigManager.load(config_path=str(cfg_path))


def test_thresholds_are_sorted_descending(tmp_path: Path) -> None:
    cfg = ConfigManager.load(
        config_path=str(tmp_path / "missing.yaml"),
        overrides={"ledger": {"low_balance_thresholds": [10, 50, 25, 10]}},
    ).get()
    assert cfg.ledger.low_balance_thresholds == [50, 25, 10]


def test_config_manager_concurrent_get() -> None:
    manager = ConfigManager.instance()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: manager.get(), range(32)))
    assert all(item is results[0] for item in results)


def test_source_records_resolved_path(tmp_path: Path) -> None:
    cfg_path = tmp_path / "skillops.yaml"
    _write_yaml(cfg_path, "dispatcher:\n  tick_interval_minutes: 5\n")
    manager = ConfigManager.load(config_path=str(cfg_path))
    assert manager.source == cfg_path
    assert manager.get().dispatcher.tick_interval_minutes == 5
