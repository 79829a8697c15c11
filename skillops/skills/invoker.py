"""Skill invocation contract and the in-process implementation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from skillops.errors import SkillError, UnknownSkillError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SkillResult:
    """What a skill returned and what it reports having consumed."""

    output: dict[str, Any] = field(default_factory=dict)
    tokens_used: int | None = None
    cost_credits: int | None = None


@runtime_checkable
class SkillInvoker(Protocol):
    """Runs a skill. Failures are reported by raising :class:`SkillError`.

    Implementations may also provide ``async def cancel(execution_id)``; the
    engine calls it on a best-effort basis when an execution is cancelled.
    """

    async def invoke(self, skill_id: str, payload: dict[str, Any], *, execution_id: str) -> SkillResult: ...


SkillHandler = Callable[[dict[str, Any]], Awaitable[SkillResult | dict[str, Any]]]


class LocalSkillInvoker:
    """Registry of in-process async handlers keyed by skill id."""

    def __init__(self, handlers: dict[str, SkillHandler] | None = None) -> None:
        self._handlers: dict[str, SkillHandler] = dict(handlers or {})

    def register(self, skill_id: str, handler: SkillHandler) -> None:
        self._handlers[skill_id] = handler

    def handler(self, skill_id: str) -> Callable[[SkillHandler], SkillHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: SkillHandler) -> SkillHandler:
            self.register(skill_id, func)
            return func

        return decorator

    async def invoke(self, skill_id: str, payload: dict[str, Any], *, execution_id: str) -> SkillResult:
        handler = self._handlers.get(skill_id)
        if handler is None:
            raise UnknownSkillError(skill_id)
        logger.debug("skill_invoke skill_id=%s execution_id=%s", skill_id, execution_id)
        try:
            result = await handler(payload)
        except SkillError:
            raise
        except Exception as exc:
            raise SkillError(f"{type(exc).__name__}: {exc}") from exc
        if isinstance(result, SkillResult):
            return result
        return SkillResult(output=dict(result or {}))
