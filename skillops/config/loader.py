"""Locate and parse skillops.yaml."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigLoadError(ValueError):
    """skillops.yaml exists but is not a usable mapping."""


def _expand_placeholders(value: Any) -> Any:
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda match: os.environ.get(match.group(1), ""), value)
    if isinstance(value, dict):
        return {key: _expand_placeholders(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_placeholders(item) for item in value]
    return value


class YAMLConfigLoader:
    """Find skillops.yaml (CLI flag, then ``SKILLOPS_CONFIG``, then cwd) and read it.

    String values may reference environment variables as ``${NAME}`` so that
    bearer tokens and runner keys can stay out of the file. Unset variables
    expand to an empty string.
    """

    DEFAULT_FILENAME = "skillops.yaml"
    PATH_ENV = "SKILLOPS_CONFIG"

    @classmethod
    def resolve_path(cls, cli_path: str | None = None) -> Path:
        for candidate in (cli_path, os.environ.get(cls.PATH_ENV)):
            if candidate and candidate.strip():
                return Path(candidate.strip())
        return Path.cwd() / cls.DEFAULT_FILENAME

    @classmethod
    def load_dict(cls, path: str | Path | None = None) -> dict[str, Any]:
        """Return the file as a dict; a missing or blank file is ``{}``."""
        target = cls.resolve_path() if path is None else Path(path)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigLoadError(cls._describe_error(target, exc)) from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config root must be mapping: {target}")
        return _expand_placeholders(data)

    @staticmethod
    def _describe_error(target: Path, exc: yaml.YAMLError) -> str:
        mark = getattr(exc, "problem_mark", None)
        if mark is None:
            return f"Invalid YAML at {target}"
        return f"Invalid YAML at {target}:{mark.line + 1}:{mark.column + 1}"
