"""Cron evaluation capability injected into the dispatcher."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

from croniter import croniter  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@runtime_checkable
class CronEvaluator(Protocol):
    """Answers the three questions the dispatcher asks about cron expressions."""

    def is_valid(self, expression: str) -> bool: ...

    def next_fire(self, expression: str, after: datetime) -> datetime: ...

    def is_due(self, expression: str, last_run_at: datetime | None, now: datetime) -> bool: ...


class CroniterEvaluator:
    """Default evaluator backed by ``croniter``; all times are UTC."""

    def is_valid(self, expression: str) -> bool:
        try:
            return bool(expression) and bool(croniter.is_valid(expression))
        except Exception as exc:
            logger.debug("cron_invalid expression=%s error=%s", expression, exc)
            return False

    def next_fire(self, expression: str, after: datetime) -> datetime:
        base = _as_utc(after)
        next_dt = croniter(expression, base).get_next(datetime)
        return _as_utc(next_dt)

    def is_due(self, expression: str, last_run_at: datetime | None, now: datetime) -> bool:
        current = _as_utc(now)
        base = _as_utc(last_run_at) if last_run_at is not None else current - timedelta(minutes=1)
        return self.next_fire(expression, base) <= current


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
