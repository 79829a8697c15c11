"""Execution engine and trigger dispatcher."""

from skillops.engine.dispatcher import TickReport, TriggerDispatcher
from skillops.engine.engine import ConcurrencyController, ExecutionEngine, ExecutionRequest

__all__ = [
    "ConcurrencyController",
    "ExecutionEngine",
    "ExecutionRequest",
    "TickReport",
    "TriggerDispatcher",
]
