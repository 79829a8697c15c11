"""Execution record store."""

from skillops.executions.models import (
    TERMINAL_STATUSES,
    ExecutionQuery,
    ExecutionRecord,
    ExecutionStatus,
    TriggerSource,
)
from skillops.executions.repository import (
    ExecutionRepository,
    InMemoryExecutionRepository,
    SqlExecutionRepository,
)

__all__ = [
    "ExecutionQuery",
    "ExecutionRecord",
    "ExecutionRepository",
    "ExecutionStatus",
    "InMemoryExecutionRepository",
    "SqlExecutionRepository",
    "TERMINAL_STATUSES",
    "TriggerSource",
]
