"""Execution engine: enqueue, admit, run, cancel and retry skill executions.

Credits are reserved before an execution exists, so an account that cannot
pay never produces a record. A run finishes with exactly one status
compare-and-set; the winner of that race decides whether the reservation is
settled into a debit (``completed``) or released (``failed``/``cancelled``).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from skillops.errors import ExecutionFailed, InvalidState, NotFoundError, SkillOpsError
from skillops.executions.models import ExecutionQuery, ExecutionRecord, ExecutionStatus, TriggerSource
from skillops.executions.repository import ExecutionRepository
from skillops.ledger.models import new_id
from skillops.ledger.service import CreditLedger
from skillops.schedules.store import ScheduleStore
from skillops.skills.catalog import SkillCatalog, SkillDefinition
from skillops.skills.invoker import SkillInvoker, SkillResult

logger = logging.getLogger(__name__)

RESERVATION_REFERENCE_PREFIX = "execution:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionRequest:
    """Everything needed to enqueue one execution."""

    skill_id: str
    account_id: str
    input: dict[str, Any] = field(default_factory=dict)
    trigger_source: TriggerSource | str = TriggerSource.MANUAL
    triggered_by: str | None = None
    schedule_id: str | None = None
    dedupe_key: str | None = None
    retry_of: str | None = None
    retry_count: int = 0


class ConcurrencyController:
    """Limit concurrent background runs with active task tracking."""

    def __init__(self, max_concurrency: int = 10) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._active_tasks: dict[str, asyncio.Task[Any]] = {}

    def spawn(self, task_id: str, task_factory: Callable[[], Awaitable[Any]]) -> asyncio.Task[Any]:
        """Start ``task_factory()`` as a tracked task under the concurrency limit."""

        async def _runner() -> Any:
            async with self._semaphore:
                return await task_factory()

        task = asyncio.create_task(_runner(), name=f"skillops-run:{task_id}")
        self._active_tasks[task_id] = task

        def _done(finished: asyncio.Task[Any]) -> None:
            if self._active_tasks.get(task_id) is finished:
                self._active_tasks.pop(task_id, None)

        task.add_done_callback(_done)
        return task

    def get_active_count(self) -> int:
        """Return number of currently active tasks."""
        return len(self._active_tasks)

    async def wait_all(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, has finished."""
        while self._active_tasks:
            await asyncio.gather(*list(self._active_tasks.values()), return_exceptions=True)


class ExecutionEngine:
    """Drives executions through pending → running → completed/failed/cancelled."""

    def __init__(
        self,
        executions: ExecutionRepository,
        ledger: CreditLedger,
        catalog: SkillCatalog,
        invoker: SkillInvoker,
        *,
        schedules: ScheduleStore | None = None,
        max_concurrent: int = 10,
        default_timeout_seconds: float = 300.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._executions = executions
        self._ledger = ledger
        self._catalog = catalog
        self._invoker = invoker
        self._schedules = schedules
        self._max_concurrent = max_concurrent
        self._default_timeout_seconds = default_timeout_seconds
        self._clock = clock or _utcnow
        self._controller = ConcurrencyController(max_concurrent)
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def catalog(self) -> SkillCatalog:
        return self._catalog

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    # -- lifecycle ----------------------------------------------------------

    async def enqueue(self, request: ExecutionRequest) -> ExecutionRecord:
        """Reserve credits and create a pending execution.

        A repeated ``dedupe_key`` returns the record created the first time
        without reserving anything.
        """
        skill = self._catalog.get(request.skill_id)
        if not request.account_id or not request.account_id.strip():
            raise ValueError("account_id is required")
        trigger_source = TriggerSource(request.trigger_source)
        if request.dedupe_key is not None:
            existing = await self._executions.get_by_dedupe_key(request.dedupe_key)
            if existing is not None:
                return existing

        execution_id = new_id()
        amount = skill.reservation_amount
        reservation = await self._ledger.reserve(
            request.account_id,
            amount,
            f"Reserved for skill {skill.skill_id}",
            reference=f"{RESERVATION_REFERENCE_PREFIX}{execution_id}",
        )
        record = ExecutionRecord(
            id=execution_id,
            skill_id=skill.skill_id,
            account_id=request.account_id,
            trigger_source=trigger_source,
            triggered_by=request.triggered_by,
            input=dict(request.input),
            schedule_id=request.schedule_id,
            dedupe_key=request.dedupe_key,
            retry_of=request.retry_of,
            retry_count=request.retry_count,
            reservation_id=reservation.id,
            reserved_credits=amount,
            created_at=self._clock(),
        )
        created = await self._executions.create(record)
        if created is None:
            await self._ledger.release(reservation.id)
            existing = await self._executions.get_by_dedupe_key(request.dedupe_key or "")
            if existing is None:
                raise NotFoundError("execution", request.dedupe_key or execution_id)
            return existing
        logger.info(
            "execution_enqueued execution_id=%s skill_id=%s account_id=%s trigger=%s reserved=%d",
            created.id,
            created.skill_id,
            created.account_id,
            trigger_source.value,
            amount,
        )
        return created

    async def admit(self, execution_id: str) -> ExecutionRecord | None:
        """Move a pending execution to running, or return None when at capacity."""
        record = await self.get(execution_id)
        if record.status != ExecutionStatus.PENDING:
            raise InvalidState("execution", execution_id, record.status.value, "admit")
        max_per_schedule: int | None = None
        if record.schedule_id is not None and self._schedules is not None:
            schedule = await self._schedules.get(record.schedule_id)
            if schedule is not None:
                max_per_schedule = schedule.max_concurrent
        admitted = await self._executions.admit(
            execution_id,
            max_per_schedule=max_per_schedule,
            max_global=self._max_concurrent,
            now=self._clock(),
        )
        if admitted is not None:
            logger.info("execution_admitted execution_id=%s", execution_id)
            return admitted
        current = await self.get(execution_id)
        if current.status != ExecutionStatus.PENDING:
            raise InvalidState("execution", execution_id, current.status.value, "admit")
        logger.debug("execution_deferred execution_id=%s schedule_id=%s", execution_id, record.schedule_id)
        return None

    async def run(self, execution_id: str) -> ExecutionRecord:
        """Invoke the skill for a running execution and record the outcome."""
        record = await self.get(execution_id)
        if record.status != ExecutionStatus.RUNNING:
            raise InvalidState("execution", execution_id, record.status.value, "run")
        try:
            skill = self._catalog.get(record.skill_id)
        except SkillOpsError as exc:
            return await self._fail(record, str(exc), 0)
        timeout = await self._timeout_for(record, skill)
        cancel_event = self._cancel_events.setdefault(execution_id, asyncio.Event())
        logger.info("execution_start execution_id=%s skill_id=%s timeout=%.1f", execution_id, skill.skill_id, timeout)
        started = time.monotonic()
        invoke_task = asyncio.create_task(
            self._invoker.invoke(record.skill_id, dict(record.input), execution_id=execution_id)
        )
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {invoke_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            self._cancel_events.pop(execution_id, None)
        duration_ms = int((time.monotonic() - started) * 1000)

        if invoke_task not in done:
            invoke_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await invoke_task
            if cancel_event.is_set():
                logger.info("execution_interrupted execution_id=%s", execution_id)
                return await self.get(execution_id)
            return await self._fail(record, f"skill timed out after {timeout:g}s", duration_ms)
        try:
            result = invoke_task.result()
        except asyncio.CancelledError:
            return await self._fail(record, "skill invocation was cancelled", duration_ms)
        except SkillOpsError as exc:
            return await self._fail(record, getattr(exc, "message", None) or str(exc), duration_ms)
        except Exception as exc:
            logger.exception("execution_invoker_error execution_id=%s", execution_id)
            return await self._fail(record, f"{type(exc).__name__}: {exc}", duration_ms)
        return await self._complete(record, skill, result, duration_ms)

    def start(self, execution_id: str) -> asyncio.Task[Any]:
        """Run an admitted execution in the background."""
        return self._controller.spawn(execution_id, lambda: self._run_background(execution_id))

    async def wait_all(self) -> None:
        await self._controller.wait_all()

    @property
    def active_runs(self) -> int:
        return self._controller.get_active_count()

    async def execute(self, request: ExecutionRequest) -> ExecutionRecord:
        """Manual path: enqueue, admit and run inline.

        Returns the still pending record when admission is deferred, and
        raises :class:`ExecutionFailed` when the run ends in ``failed``.
        """
        record = await self.enqueue(request)
        if record.status != ExecutionStatus.PENDING:
            return record
        try:
            admitted = await self.admit(record.id)
        except InvalidState:
            # Another caller admitted it first and owns the run.
            return await self.get(record.id)
        if admitted is None:
            return record
        finished = await self.run(admitted.id)
        if finished.status == ExecutionStatus.FAILED:
            raise ExecutionFailed(finished.id, finished.error_message)
        return finished

    async def cancel(self, execution_id: str) -> ExecutionRecord:
        """Cancel a running execution and release its credits."""
        record = await self.get(execution_id)
        if record.status != ExecutionStatus.RUNNING:
            raise InvalidState("execution", execution_id, record.status.value, "cancel")
        cancelled = await self._executions.transition(
            execution_id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.CANCELLED,
            completed_at=self._clock(),
        )
        if cancelled is None:
            current = await self.get(execution_id)
            raise InvalidState("execution", execution_id, current.status.value, "cancel")
        await self._release(cancelled)
        event = self._cancel_events.get(execution_id)
        if event is not None:
            event.set()
        cancel = getattr(self._invoker, "cancel", None)
        if callable(cancel):
            try:
                await cancel(execution_id)
            except Exception as exc:
                logger.warning("execution_cancel_signal_failed execution_id=%s error=%s", execution_id, exc)
        logger.info("execution_cancelled execution_id=%s", execution_id)
        return cancelled

    async def retry(self, execution_id: str, *, triggered_by: str | None = None) -> ExecutionRecord:
        """Enqueue a new execution repeating a failed one."""
        record = await self.get(execution_id)
        if record.status != ExecutionStatus.FAILED:
            raise InvalidState("execution", execution_id, record.status.value, "retry")
        retried = await self.enqueue(
            ExecutionRequest(
                skill_id=record.skill_id,
                account_id=record.account_id,
                input=dict(record.input),
                trigger_source=record.trigger_source,
                triggered_by=triggered_by or record.triggered_by,
                schedule_id=record.schedule_id,
                dedupe_key=f"retry:{record.id}",
                retry_of=record.id,
                retry_count=record.retry_count + 1,
            )
        )
        logger.info("execution_retried execution_id=%s retry_id=%s", execution_id, retried.id)
        return retried

    # -- queries ------------------------------------------------------------

    async def get(self, execution_id: str) -> ExecutionRecord:
        record = await self._executions.get(execution_id)
        if record is None:
            raise NotFoundError("execution", execution_id)
        return record

    async def list(self, query: ExecutionQuery | None = None) -> list[ExecutionRecord]:
        return await self._executions.list(query or ExecutionQuery())

    async def list_pending(self, *, limit: int = 100) -> list[ExecutionRecord]:
        return await self._executions.list_pending(limit=limit)

    async def usage_stats(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """Totals and per-skill usage of completed executions in a time window."""
        by_skill: dict[str, dict[str, int]] = {}
        page_size = 500
        offset = 0
        while True:
            page = await self._executions.list(
                ExecutionQuery(
                    account_id=account_id,
                    status=ExecutionStatus.COMPLETED,
                    created_after=start,
                    created_before=end,
                    limit=page_size,
                    offset=offset,
                )
            )
            for record in page:
                stats = by_skill.setdefault(record.skill_id, {"executions": 0, "tokens": 0, "credits": 0})
                stats["executions"] += 1
                stats["tokens"] += record.tokens_used or 0
                stats["credits"] += record.credits_charged or 0
            if len(page) < page_size:
                break
            offset += page_size
        return {
            "account_id": account_id,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "total_executions": sum(item["executions"] for item in by_skill.values()),
            "total_tokens": sum(item["tokens"] for item in by_skill.values()),
            "total_credits": sum(item["credits"] for item in by_skill.values()),
            "by_skill": by_skill,
        }

    async def reconcile_reservations(self, *, orphan_grace_seconds: float = 60.0) -> int:
        """Resolve held reservations whose execution already finished.

        Completed executions are settled for ``credits_charged``; failed and
        cancelled ones are released. A reservation whose execution was never
        created is released once it is older than ``orphan_grace_seconds``.
        """
        resolved = 0
        now = self._clock()
        for reservation in await self._ledger.open_reservations():
            reference = reservation.reference or ""
            if not reference.startswith(RESERVATION_REFERENCE_PREFIX):
                continue
            execution_id = reference[len(RESERVATION_REFERENCE_PREFIX) :]
            try:
                record = await self._executions.get(execution_id)
                if record is None:
                    if now - reservation.created_at < timedelta(seconds=orphan_grace_seconds):
                        continue
                    await self._ledger.release(reservation.id)
                elif record.status == ExecutionStatus.COMPLETED:
                    await self._ledger.settle(
                        reservation.id,
                        min(record.credits_charged or 0, reservation.amount),
                        f"Skill {record.skill_id}",
                    )
                elif record.status in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
                    await self._ledger.release(reservation.id)
                else:
                    continue
            except SkillOpsError as exc:
                logger.warning(
                    "reservation_reconcile_failed reservation_id=%s execution_id=%s error=%s",
                    reservation.id,
                    execution_id,
                    exc,
                )
                continue
            resolved += 1
            logger.info("reservation_reconciled reservation_id=%s execution_id=%s", reservation.id, execution_id)
        return resolved

    # -- internals ----------------------------------------------------------

    async def _timeout_for(self, record: ExecutionRecord, skill: SkillDefinition) -> float:
        if record.schedule_id is not None and self._schedules is not None:
            schedule = await self._schedules.get(record.schedule_id)
            if schedule is not None and schedule.timeout_seconds:
                return float(schedule.timeout_seconds)
        if skill.timeout_seconds:
            return float(skill.timeout_seconds)
        return float(self._default_timeout_seconds)

    async def _complete(
        self,
        record: ExecutionRecord,
        skill: SkillDefinition,
        result: SkillResult,
        duration_ms: int,
    ) -> ExecutionRecord:
        charged, note = skill.charge_for(result.cost_credits, record.reserved_credits)
        completed = await self._executions.transition(
            record.id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.COMPLETED,
            output=dict(result.output),
            tokens_used=result.tokens_used,
            cost=result.cost_credits,
            credits_charged=charged,
            billing_note=note,
            duration_ms=duration_ms,
            completed_at=self._clock(),
        )
        if completed is None:
            current = await self.get(record.id)
            logger.info(
                "execution_completion_discarded execution_id=%s status=%s", record.id, current.status.value
            )
            return current
        if note is not None:
            logger.warning("execution_charge_capped execution_id=%s note=%s", record.id, note)
        if completed.reservation_id is not None:
            try:
                await self._ledger.settle(completed.reservation_id, charged, f"Skill {record.skill_id}")
            except SkillOpsError as exc:
                logger.error("execution_settle_failed execution_id=%s error=%s", record.id, exc)
                updated = await self._executions.transition(
                    record.id,
                    [ExecutionStatus.COMPLETED],
                    ExecutionStatus.COMPLETED,
                    billing_note=f"settlement pending: {exc}",
                )
                completed = updated or completed
        logger.info(
            "execution_completed execution_id=%s skill_id=%s charged=%d duration_ms=%d",
            record.id,
            record.skill_id,
            charged,
            duration_ms,
        )
        return completed

    async def _fail(self, record: ExecutionRecord, error_message: str, duration_ms: int) -> ExecutionRecord:
        failed = await self._executions.transition(
            record.id,
            [ExecutionStatus.RUNNING],
            ExecutionStatus.FAILED,
            error_message=error_message,
            duration_ms=duration_ms,
            completed_at=self._clock(),
        )
        if failed is None:
            return await self.get(record.id)
        await self._release(failed)
        if failed.schedule_id is not None and self._schedules is not None:
            await self._schedules.record_failure(failed.schedule_id)
        logger.error("execution_failed execution_id=%s skill_id=%s error=%s", record.id, record.skill_id, error_message)
        return failed

    async def _release(self, record: ExecutionRecord) -> None:
        if record.reservation_id is None:
            return
        try:
            await self._ledger.release(record.reservation_id)
        except SkillOpsError as exc:
            logger.error("reservation_release_failed execution_id=%s error=%s", record.id, exc)

    async def _run_background(self, execution_id: str) -> ExecutionRecord | None:
        try:
            return await self.run(execution_id)
        except InvalidState as exc:
            logger.warning("execution_run_skipped execution_id=%s reason=%s", execution_id, exc)
        except Exception:
            logger.exception("execution_run_crashed execution_id=%s", execution_id)
        return None
