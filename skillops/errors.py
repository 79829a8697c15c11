"""Domain exceptions for the skill execution engine and credit ledger.

Every exception carries enough structured detail for the HTTP layer to build
a response body without parsing messages.
"""

from __future__ import annotations

from typing import Any


class SkillOpsError(Exception):
    """Base exception for SkillOps domain failures."""

    code = "skillops_error"

    def details(self) -> dict[str, Any]:
        """Structured fields exposed to API clients."""
        return {}


class NotFoundError(SkillOpsError):
    """Raised when an account, execution, schedule or reservation is missing."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")

    def details(self) -> dict[str, Any]:
        return {"entity": self.entity, "id": self.entity_id}


class InsufficientCredits(SkillOpsError):
    """Raised when an account cannot cover the requested amount."""

    code = "insufficient_credits"

    def __init__(self, account_id: str, required: int, available: int) -> None:
        self.account_id = account_id
        self.required = required
        self.available = available
        super().__init__(
            f"Account '{account_id}' has {available} credits available, {required} required"
        )

    def details(self) -> dict[str, Any]:
        return {"account_id": self.account_id, "required": self.required, "available": self.available}


class InvalidState(SkillOpsError):
    """Raised when an operation is not permitted in the entity's current state."""

    code = "invalid_state"

    def __init__(self, entity: str, entity_id: str, status: str, operation: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} {entity} '{entity_id}' with status '{status}'")

    def details(self) -> dict[str, Any]:
        return {"entity": self.entity, "id": self.entity_id, "status": self.status, "operation": self.operation}


class SkillError(SkillOpsError):
    """Raised by a skill invoker when the underlying work fails."""

    code = "skill_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UnknownSkillError(SkillOpsError):
    """Raised when a skill id is not present in the catalog."""

    code = "unknown_skill"

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(f"Skill '{skill_id}' is not registered")

    def details(self) -> dict[str, Any]:
        return {"skill_id": self.skill_id}


class ScheduleConfigError(SkillOpsError):
    """Raised when a schedule definition is inconsistent."""

    code = "schedule_config_error"


class ConcurrencyConflict(SkillOpsError):
    """Raised when an optimistic write keeps losing races past the retry budget."""

    code = "concurrency_conflict"

    def __init__(self, resource: str, attempts: int) -> None:
        self.resource = resource
        self.attempts = attempts
        super().__init__(f"Concurrent modification of {resource} persisted after {attempts} attempts")

    def details(self) -> dict[str, Any]:
        return {"resource": self.resource, "attempts": self.attempts}


class ExecutionFailed(SkillOpsError):
    """Raised to manual callers when the execution finished in ``failed``."""

    code = "execution_failed"

    def __init__(self, execution_id: str, error_message: str | None) -> None:
        self.execution_id = execution_id
        self.error_message = error_message or "unknown error"
        super().__init__(f"Execution '{execution_id}' failed: {self.error_message}")

    def details(self) -> dict[str, Any]:
        return {"execution_id": self.execution_id, "error_message": self.error_message}
