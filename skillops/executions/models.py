"""Execution records and query filters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    """Lifecycle of one skill invocation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})


class TriggerSource(str, Enum):
    """What caused an execution to be enqueued."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"


@dataclass(slots=True)
class ExecutionRecord:
    """One invocation of a skill and everything billed or observed about it."""

    id: str
    skill_id: str
    account_id: str
    trigger_source: TriggerSource
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_by: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error_message: str | None = None
    schedule_id: str | None = None
    dedupe_key: str | None = None
    retry_of: str | None = None
    retry_count: int = 0
    reservation_id: str | None = None
    reserved_credits: int = 0
    credits_charged: int | None = None
    billing_note: str | None = None
    tokens_used: int | None = None
    cost: int | None = None
    duration_ms: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "skill_id": self.skill_id,
            "account_id": self.account_id,
            "status": self.status.value,
            "trigger_source": self.trigger_source.value,
            "triggered_by": self.triggered_by,
            "input": self.input,
            "output": self.output,
            "error_message": self.error_message,
            "schedule_id": self.schedule_id,
            "retry_of": self.retry_of,
            "retry_count": self.retry_count,
            "reserved_credits": self.reserved_credits,
            "credits_charged": self.credits_charged,
            "billing_note": self.billing_note,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class ExecutionQuery:
    """Filters for listing executions, newest first."""

    skill_id: str | None = None
    account_id: str | None = None
    status: ExecutionStatus | None = None
    trigger_source: TriggerSource | None = None
    schedule_id: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = 50
    offset: int = 0
