"""Bearer-token authentication for the SkillOps API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass

from starlette.requests import Request

ROLE_STAFF = "staff"
ROLE_SCHEDULER = "scheduler"


@dataclass(slots=True)
class AuthResult:
    """Authentication result payload."""

    ok: bool
    identity: str | None = None
    role: str | None = None
    reason: str | None = None


class AuthProvider(ABC):
    """Authentication provider contract."""

    @abstractmethod
    async def authenticate(self, request: Request) -> AuthResult: ...


class BearerTokenAuthProvider(AuthProvider):
    """Validate ``Authorization: Bearer`` tokens and map them to roles.

    Staff tokens may call every route; scheduler tokens only the dispatcher
    tick and event routes.
    """

    def __init__(self, staff_tokens: Iterable[str] = (), scheduler_tokens: Iterable[str] = ()) -> None:
        self._roles: dict[str, str] = {}
        for token in scheduler_tokens:
            if token and token.strip():
                self._roles[token.strip()] = ROLE_SCHEDULER
        for token in staff_tokens:
            if token and token.strip():
                self._roles[token.strip()] = ROLE_STAFF

    async def authenticate(self, request: Request) -> AuthResult:
        raw = request.headers.get("Authorization", "")
        if not raw.startswith("Bearer "):
            return AuthResult(ok=False, reason="missing_bearer")
        token = raw[len("Bearer ") :].strip()
        role = self._roles.get(token)
        if role is None:
            return AuthResult(ok=False, reason="invalid_bearer")
        return AuthResult(ok=True, identity=f"{role}:{token[:6]}", role=role)
