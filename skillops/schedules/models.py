"""Schedule definitions and validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from skillops.errors import ScheduleConfigError
from skillops.schedules.cron import CronEvaluator


class ScheduleType(str, Enum):
    """How a schedule fires."""

    INTERVAL = "interval"
    CRON = "cron"
    EVENT = "event"


class ScheduleSpec(BaseModel):
    """Requested schedule, as accepted from API clients and configuration."""

    agent_slug: str
    account_id: str
    schedule_type: ScheduleType
    interval_minutes: int | None = None
    cron_expression: str | None = None
    event_trigger: str | None = None
    max_concurrent: int = 1
    timeout_seconds: float | None = None
    default_context: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


@dataclass(slots=True)
class ScheduleRecord:
    """Stored schedule. Schedules are deactivated, never deleted."""

    id: str
    agent_slug: str
    account_id: str
    schedule_type: ScheduleType
    interval_minutes: int | None = None
    cron_expression: str | None = None
    event_trigger: str | None = None
    max_concurrent: int = 1
    timeout_seconds: float | None = None
    default_context: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    failure_count: int = 0
    created_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_slug": self.agent_slug,
            "account_id": self.account_id,
            "schedule_type": self.schedule_type.value,
            "interval_minutes": self.interval_minutes,
            "cron_expression": self.cron_expression,
            "event_trigger": self.event_trigger,
            "max_concurrent": self.max_concurrent,
            "timeout_seconds": self.timeout_seconds,
            "default_context": self.default_context,
            "is_active": self.is_active,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


_TRIGGER_FIELDS = {
    ScheduleType.INTERVAL: "interval_minutes",
    ScheduleType.CRON: "cron_expression",
    ScheduleType.EVENT: "event_trigger",
}


def validate_schedule(spec: ScheduleSpec, cron: CronEvaluator) -> None:
    """Raise :class:`ScheduleConfigError` when the definition is inconsistent."""
    if not spec.agent_slug.strip():
        raise ScheduleConfigError("agent_slug must be non-empty")
    if not spec.account_id.strip():
        raise ScheduleConfigError("account_id must be non-empty")
    present = [name for name in _TRIGGER_FIELDS.values() if getattr(spec, name) not in (None, "")]
    if len(present) != 1:
        raise ScheduleConfigError(
            "exactly one of interval_minutes, cron_expression, event_trigger must be set "
            f"(got {', '.join(present) or 'none'})"
        )
    expected = _TRIGGER_FIELDS[spec.schedule_type]
    if present[0] != expected:
        raise ScheduleConfigError(f"{spec.schedule_type.value} schedules require {expected}, got {present[0]}")
    if spec.max_concurrent < 1:
        raise ScheduleConfigError("max_concurrent must be >= 1")
    if spec.timeout_seconds is not None and spec.timeout_seconds <= 0:
        raise ScheduleConfigError("timeout_seconds must be > 0")
    if spec.schedule_type == ScheduleType.INTERVAL and (spec.interval_minutes or 0) < 1:
        raise ScheduleConfigError("interval_minutes must be >= 1")
    if spec.schedule_type == ScheduleType.CRON and not cron.is_valid(spec.cron_expression or ""):
        raise ScheduleConfigError(f"invalid cron expression: {spec.cron_expression!r}")
    if spec.schedule_type == ScheduleType.EVENT and not (spec.event_trigger or "").strip():
        raise ScheduleConfigError("event_trigger must be non-empty")
