"""Unit tests for YAMLConfigLoader."""

from __future__ import annotations

from pathlib import Path

import pytest

from skillops.config.loader import ConfigLoadError, YAMLConfigLoader


def test_resolve_path_prefers_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKILLOPS_CONFIG", "/tmp/from-env.yaml")
    resolved = YAMLConfigLoader.resolve_path("/tmp/from-cli.yaml")
    assert str(resolved).endswith("from-cli.yaml")


def test_resolve_path_uses_env_when_cli_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKILLOPS_CONFIG", "/tmp/from-env.yaml")
    resolved = YAMLConfigLoader.resolve_path(" ")
    assert str(resolved).endswith("from-env.yaml")


def test_resolve_path_defaults_to_cwd(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("SKILLOPS_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    assert YAMLConfigLoader.resolve_path() == tmp_path / "skillops.yaml"


def test_load_dict_missing_file_returns_empty(tmp_path: Path) -> None:
    assert YAMLConfigLoader.load_dict(tmp_path / "missing.yaml") == {}


def test_load_dict_empty_file_returns_empty(tmp_path: Path) -> None:
    target = tmp_path / "skillops.yaml"
    target.write_text("   \n", encoding="utf-8")
    assert YAMLConfigLoader.load_dict(target) == {}


def test_load_dict_returns_mapping(tmp_path: Path) -> None:
    target = tmp_path / "skillops.yaml"
    target.write_text("engine:\n  max_concurrent: 4\n", encoding="utf-8")
    loaded = YAMLConfigLoader.load_dict(target)
    assert loaded["engine"]["max_concurrent"] == 4


def test_load_dict_rejects_non_mapping_root(tmp_path: Path) -> None:
    target = tmp_path / "skillops.yaml"
    target.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigLoadError, match="Config root must be mapping"):
        YAMLConfigLoader.load_dict(target)


def test_load_dict_reports_yaml_position(tmp_path: Path) -> None:
    target = tmp_path / "skillops.yaml"
    target.write_text("engine:\n  max_concurrent: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigLoadError, match=r"Invalid YAML at .*skillops.yaml:\d+:\d+"):
        YAMLConfigLoader.load_dict(target)


def test_load_dict_expands_env_placeholders(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNNER_KEY", "secret-1")
    monkeypatch.delenv("MISSING_TOKEN", raising=False)
    target = tmp_path / "skillops.yaml"
    target.write_text(
        "invoker:\n  api_key: ${RUNNER_KEY}\napi:\n  staff_tokens: ['${MISSING_TOKEN}', static]\n",
        encoding="utf-8",
    )
    loaded = YAMLConfigLoader.load_dict(target)
    assert loaded["invoker"]["api_key"] == "secret-1"
    assert loaded["api"]["staff_tokens"] == ["", "static"]
