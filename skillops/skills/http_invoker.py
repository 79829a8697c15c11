"""Invoker that delegates skills to an external runner over HTTP."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from skillops.config.models import InvokerConfig
from skillops.errors import SkillError
from skillops.skills.invoker import SkillResult

logger = logging.getLogger(__name__)


class HttpSkillInvoker:
    """POST ``{base_url}/skills/{skill_id}/invoke`` and map the JSON reply to a result.

    The runner answers ``{"output": {...}, "tokens_used": n, "cost_credits": n}``
    with a 2xx status; anything else is a skill failure.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_config(cls, config: InvokerConfig, transport: httpx.AsyncBaseTransport | None = None) -> HttpSkillInvoker:
        return cls(config.base_url, api_key=config.api_key, timeout_seconds=config.timeout_seconds, transport=transport)

    async def invoke(self, skill_id: str, payload: dict[str, Any], *, execution_id: str) -> SkillResult:
        url = f"{self._base_url}/skills/{skill_id}/invoke"
        body = {"execution_id": execution_id, "input": payload}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=body, headers=self._headers())
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise SkillError(f"skill runner unreachable: {exc}") from exc
        data = self._safe_json(response)
        if response.status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            raise SkillError(f"skill runner returned {response.status_code}: {message or response.text}")
        if not isinstance(data, dict):
            raise SkillError("skill runner returned a non-object body")
        output = data.get("output")
        return SkillResult(
            output=output if isinstance(output, dict) else {"result": output},
            tokens_used=_optional_int(data.get("tokens_used")),
            cost_credits=_optional_int(data.get("cost_credits")),
        )

    async def cancel(self, execution_id: str) -> None:
        url = f"{self._base_url}/executions/{execution_id}/cancel"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("skill_cancel_failed execution_id=%s error=%s", execution_id, exc)
            return
        if response.status_code >= 400:
            logger.warning("skill_cancel_rejected execution_id=%s status=%d", execution_id, response.status_code)

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"text": response.text}


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
