"""Starlette JSON API over the execution engine, dispatcher and ledger."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from skillops.api.auth import ROLE_SCHEDULER, ROLE_STAFF, AuthProvider, AuthResult
from skillops.engine.dispatcher import TriggerDispatcher
from skillops.engine.engine import ExecutionEngine, ExecutionRequest
from skillops.errors import (
    ConcurrencyConflict,
    ExecutionFailed,
    InsufficientCredits,
    InvalidState,
    NotFoundError,
    ScheduleConfigError,
    SkillError,
    SkillOpsError,
    UnknownSkillError,
)
from skillops.executions.models import ExecutionQuery, ExecutionRecord, ExecutionStatus, TriggerSource
from skillops.ledger.models import BalanceSummary, CreditTransaction, LedgerResult, TransactionType
from skillops.ledger.service import CreditLedger
from skillops.schedules.models import ScheduleSpec

logger = logging.getLogger(__name__)

Endpoint = Callable[[Request, AuthResult], Awaitable[JSONResponse]]

STATUS_CODES: dict[type[SkillOpsError], int] = {
    InsufficientCredits: 402,
    NotFoundError: 404,
    UnknownSkillError: 404,
    InvalidState: 409,
    ScheduleConfigError: 422,
    ExecutionFailed: 502,
    SkillError: 502,
    ConcurrencyConflict: 503,
}


class ExecuteBody(BaseModel):
    account_id: str
    input: dict[str, Any] = Field(default_factory=dict)


class ActionBody(BaseModel):
    action: Literal["retry", "cancel"]


class CreditBody(BaseModel):
    amount: int = 0
    description: str = ""
    type: Literal["purchase", "adjustment", "refund"] = "purchase"
    idempotency_key: str | None = None
    transaction_id: str | None = None


class TickBody(BaseModel):
    wait: bool = False


class SkillOpsAPI:
    """Builds the Starlette application and maps domain errors to responses."""

    def __init__(
        self,
        *,
        engine: ExecutionEngine,
        dispatcher: TriggerDispatcher,
        ledger: CreditLedger,
        auth_provider: AuthProvider,
        cors_origins: list[str] | None = None,
    ) -> None:
        self._engine = engine
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._auth_provider = auth_provider
        staff = (ROLE_STAFF,)
        scheduler = (ROLE_STAFF, ROLE_SCHEDULER)
        routes = [
            Route("/health", endpoint=self._health, methods=["GET"]),
            Route("/api/skills/{skill_id}/execute", endpoint=self._guard(self._execute, staff), methods=["POST"]),
            Route("/api/schedules", endpoint=self._guard(self._list_schedules, staff), methods=["GET"]),
            Route("/api/schedules", endpoint=self._guard(self._create_schedule, staff), methods=["POST"]),
            Route(
                "/api/schedules/{schedule_id}", endpoint=self._guard(self._deactivate_schedule, staff), methods=["DELETE"]
            ),
            Route("/api/executions", endpoint=self._guard(self._list_executions, staff), methods=["GET"]),
            Route("/api/executions/{execution_id}", endpoint=self._guard(self._get_execution, staff), methods=["GET"]),
            Route(
                "/api/executions/{execution_id}", endpoint=self._guard(self._cancel_execution, staff), methods=["DELETE"]
            ),
            Route(
                "/api/executions/{execution_id}", endpoint=self._guard(self._execution_action, staff), methods=["POST"]
            ),
            Route("/api/dispatcher/tick", endpoint=self._guard(self._tick, scheduler), methods=["POST"]),
            Route("/api/events/{event_name}", endpoint=self._guard(self._event, scheduler), methods=["POST"]),
            Route("/api/accounts/{account_id}/balance", endpoint=self._guard(self._balance, staff), methods=["GET"]),
            Route(
                "/api/accounts/{account_id}/transactions",
                endpoint=self._guard(self._transactions, staff),
                methods=["GET"],
            ),
            Route(
                "/api/accounts/{account_id}/credits", endpoint=self._guard(self._add_credits, staff), methods=["POST"]
            ),
            Route("/api/accounts/{account_id}/usage", endpoint=self._guard(self._usage, staff), methods=["GET"]),
        ]
        self._app = Starlette(
            routes=routes,
            exception_handlers={
                SkillOpsError: self._domain_error,
                ValidationError: self._validation_error,
                ValueError: self._value_error,
            },
        )
        if cors_origins:
            self._app.add_middleware(
                CORSMiddleware, allow_origins=cors_origins, allow_methods=["*"], allow_headers=["*"]
            )

    @property
    def app(self) -> Starlette:
        return self._app

    # -- plumbing -----------------------------------------------------------

    def _guard(self, endpoint: Endpoint, roles: tuple[str, ...]) -> Callable[[Request], Awaitable[JSONResponse]]:
        async def guarded(request: Request) -> JSONResponse:
            result = await self._auth_provider.authenticate(request)
            if not result.ok:
                return JSONResponse(
                    {"error": "unauthorized", "message": result.reason or "auth_failed"}, status_code=401
                )
            if result.role not in roles:
                return JSONResponse({"error": "forbidden", "message": f"role '{result.role}' not allowed"}, status_code=403)
            return await endpoint(request, result)

        return guarded

    async def _domain_error(self, request: Request, exc: SkillOpsError) -> JSONResponse:
        status_code = 500
        for cls in type(exc).__mro__:
            if cls in STATUS_CODES:
                status_code = STATUS_CODES[cls]
                break
        if status_code >= 500:
            logger.warning("api_error path=%s code=%s message=%s", request.url.path, exc.code, exc)
        return JSONResponse({"error": exc.code, "message": str(exc), **exc.details()}, status_code=status_code)

    async def _validation_error(self, request: Request, exc: ValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(part) for part in item["loc"]], "msg": item["msg"], "type": item["type"]}
            for item in exc.errors()
        ]
        return JSONResponse({"error": "validation_error", "message": "invalid request", "errors": errors}, status_code=422)

    async def _value_error(self, request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": "validation_error", "message": str(exc)}, status_code=422)

    @staticmethod
    async def _json_body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON body: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("JSON body must be an object")
        return parsed

    # -- routes -------------------------------------------------------------

    async def _health(self, request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "active_runs": self._engine.active_runs})

    async def _execute(self, request: Request, auth: AuthResult) -> JSONResponse:
        body = ExecuteBody.model_validate(await self._json_body(request))
        record = await self._engine.execute(
            ExecutionRequest(
                skill_id=request.path_params["skill_id"],
                account_id=body.account_id,
                input=body.input,
                trigger_source=TriggerSource.MANUAL,
                triggered_by=auth.identity,
            )
        )
        payload = {
            "execution_id": record.id,
            "status": record.status.value,
            "output": record.output,
            "tokens_used": record.tokens_used,
            "credits_charged": record.credits_charged,
        }
        if record.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            return JSONResponse(payload, status_code=202)
        return JSONResponse(payload)

    async def _list_schedules(self, request: Request, auth: AuthResult) -> JSONResponse:
        active = _parse_bool(request.query_params.get("active"))
        records = await self._dispatcher.list_schedules(active=active)
        return JSONResponse({"schedules": [record.to_dict() for record in records]})

    async def _create_schedule(self, request: Request, auth: AuthResult) -> JSONResponse:
        spec = ScheduleSpec.model_validate(await self._json_body(request))
        record = await self._dispatcher.create_schedule(spec, created_by=auth.identity)
        return JSONResponse(record.to_dict(), status_code=201)

    async def _deactivate_schedule(self, request: Request, auth: AuthResult) -> JSONResponse:
        record = await self._dispatcher.deactivate_schedule(request.path_params["schedule_id"])
        return JSONResponse(record.to_dict())

    async def _list_executions(self, request: Request, auth: AuthResult) -> JSONResponse:
        params = request.query_params
        query = ExecutionQuery(
            skill_id=params.get("skill_id"),
            account_id=params.get("account_id"),
            status=ExecutionStatus(params["status"]) if params.get("status") else None,
            trigger_source=TriggerSource(params["trigger_source"]) if params.get("trigger_source") else None,
            schedule_id=params.get("schedule_id"),
            limit=min(int(params.get("limit", "50")), 500),
            offset=int(params.get("offset", "0")),
        )
        records = await self._engine.list(query)
        return JSONResponse({"executions": [record.to_dict() for record in records]})

    async def _get_execution(self, request: Request, auth: AuthResult) -> JSONResponse:
        record = await self._engine.get(request.path_params["execution_id"])
        return JSONResponse(record.to_dict())

    async def _cancel_execution(self, request: Request, auth: AuthResult) -> JSONResponse:
        record = await self._engine.cancel(request.path_params["execution_id"])
        return JSONResponse(record.to_dict())

    async def _execution_action(self, request: Request, auth: AuthResult) -> JSONResponse:
        body = ActionBody.model_validate(await self._json_body(request))
        execution_id = request.path_params["execution_id"]
        if body.action == "cancel":
            record = await self._engine.cancel(execution_id)
            return JSONResponse(record.to_dict())
        record = await self._engine.retry(execution_id, triggered_by=auth.identity)
        record = await self._start_if_admitted(record)
        return JSONResponse(record.to_dict(), status_code=202)

    async def _tick(self, request: Request, auth: AuthResult) -> JSONResponse:
        body = TickBody.model_validate(await self._json_body(request))
        report = await self._dispatcher.tick(wait=body.wait)
        return JSONResponse(report.to_dict())

    async def _event(self, request: Request, auth: AuthResult) -> JSONResponse:
        event_name = request.path_params["event_name"]
        payload = await self._json_body(request)
        records = await self._dispatcher.dispatch_event(event_name, payload, triggered_by=auth.identity)
        return JSONResponse(
            {"event": event_name, "executions": [record.to_dict() for record in records]}, status_code=202
        )

    async def _balance(self, request: Request, auth: AuthResult) -> JSONResponse:
        summary = await self._ledger.get_balance(request.path_params["account_id"])
        return JSONResponse(_balance_to_dict(summary))

    async def _transactions(self, request: Request, auth: AuthResult) -> JSONResponse:
        params = request.query_params
        items = await self._ledger.history(
            request.path_params["account_id"],
            limit=min(int(params.get("limit", "50")), 500),
            offset=int(params.get("offset", "0")),
            type=TransactionType(params["type"]) if params.get("type") else None,
        )
        return JSONResponse({"transactions": [_transaction_to_dict(item) for item in items]})

    async def _add_credits(self, request: Request, auth: AuthResult) -> JSONResponse:
        body = CreditBody.model_validate(await self._json_body(request))
        account_id = request.path_params["account_id"]
        description = body.description or f"Credits added by {auth.identity}"
        if body.type == "refund":
            result = await self._refund(account_id, body)
        elif body.type == "adjustment":
            result = await self._ledger.adjust(
                account_id, body.amount, description, idempotency_key=body.idempotency_key
            )
        else:
            result = await self._ledger.credit(
                account_id,
                body.amount,
                description,
                type=TransactionType.PURCHASE,
                idempotency_key=body.idempotency_key,
            )
        return JSONResponse(
            {
                "account_id": account_id,
                "new_balance": result.new_balance,
                "replayed": result.replayed,
                "transaction": _transaction_to_dict(result.transaction) if result.transaction else None,
            },
            status_code=200 if result.replayed else 201,
        )

    async def _refund(self, account_id: str, body: CreditBody) -> LedgerResult:
        # Refunds only ever credit back an existing redemption, once.
        if not body.transaction_id:
            raise ValueError("refunds require transaction_id")
        original = await self._ledger.get_transaction(body.transaction_id)
        if original.account_id != account_id:
            raise NotFoundError("transaction", body.transaction_id)
        return await self._ledger.refund(original.id, body.description)

    async def _usage(self, request: Request, auth: AuthResult) -> JSONResponse:
        params = request.query_params
        account_id = request.path_params["account_id"]
        await self._ledger.get_account(account_id)
        stats = await self._engine.usage_stats(
            account_id,
            _parse_datetime(params.get("start")),
            _parse_datetime(params.get("end")),
        )
        return JSONResponse(stats)

    async def _start_if_admitted(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.status != ExecutionStatus.PENDING:
            return record
        try:
            admitted = await self._engine.admit(record.id)
        except InvalidState:
            return await self._engine.get(record.id)
        if admitted is None:
            return record
        self._engine.start(admitted.id)
        return admitted


def _parse_bool(value: str | None) -> bool | None:
    if value is None or value == "":
        return None
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def _parse_datetime(value: str | None) -> datetime | None:
    """ISO-8601 query value; a value without an offset is taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"invalid datetime: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _transaction_to_dict(item: CreditTransaction) -> dict[str, Any]:
    return {
        "id": item.id,
        "account_id": item.account_id,
        "amount": item.amount,
        "type": item.type.value,
        "description": item.description,
        "balance_after": item.balance_after,
        "reference": item.reference,
        "created_at": item.created_at.isoformat(),
    }


def _balance_to_dict(summary: BalanceSummary) -> dict[str, Any]:
    return {
        "account_id": summary.account_id,
        "balance": summary.balance,
        "reserved": summary.reserved,
        "available": summary.available,
        "lifetime_earned": summary.lifetime_earned,
        "lifetime_spent": summary.lifetime_spent,
        "recent_transactions": [_transaction_to_dict(item) for item in summary.recent_transactions],
    }


def create_app(
    *,
    engine: ExecutionEngine,
    dispatcher: TriggerDispatcher,
    ledger: CreditLedger,
    auth_provider: AuthProvider,
    cors_origins: list[str] | None = None,
) -> Starlette:
    """Shortcut returning the Starlette app of a :class:`SkillOpsAPI`."""
    return SkillOpsAPI(
        engine=engine,
        dispatcher=dispatcher,
        ledger=ledger,
        auth_provider=auth_provider,
        cors_origins=cors_origins,
    ).app
