"""Trigger dispatcher: turns due schedules and events into executions.

``tick`` is safe to run from several processes at once. Each due instant of
a schedule is claimed by a compare-and-set of ``next_run_at`` and only the
claimant enqueues, with a dedupe key derived from that instant.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from skillops.engine.engine import ExecutionEngine, ExecutionRequest
from skillops.errors import InvalidState, NotFoundError, ScheduleConfigError, SkillOpsError
from skillops.executions.models import ExecutionRecord, TriggerSource
from skillops.ledger.models import new_id
from skillops.schedules.cron import CronEvaluator, CroniterEvaluator
from skillops.schedules.models import ScheduleRecord, ScheduleSpec, ScheduleType, validate_schedule
from skillops.schedules.store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one dispatcher tick did."""

    now: datetime
    enqueued: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    initialized: list[str] = field(default_factory=list)
    reconciled: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "enqueued": list(self.enqueued),
            "started": list(self.started),
            "deferred": list(self.deferred),
            "skipped": list(self.skipped),
            "initialized": list(self.initialized),
            "reconciled": self.reconciled,
        }


class TriggerDispatcher:
    """Owns schedule definitions and feeds the execution engine."""

    def __init__(
        self,
        engine: ExecutionEngine,
        schedules: ScheduleStore,
        *,
        cron: CronEvaluator | None = None,
        admission_batch_size: int = 100,
        system_actor: str = "dispatcher",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._schedules = schedules
        self._cron = cron or CroniterEvaluator()
        self._admission_batch_size = max(1, admission_batch_size)
        self._system_actor = system_actor
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -- schedule management ------------------------------------------------

    async def create_schedule(self, spec: ScheduleSpec, created_by: str | None = None) -> ScheduleRecord:
        validate_schedule(spec, self._cron)
        if spec.agent_slug not in self._engine.catalog:
            raise ScheduleConfigError(f"unknown skill '{spec.agent_slug}'")
        try:
            await self._engine.ledger.get_account(spec.account_id)
        except NotFoundError as exc:
            raise ScheduleConfigError(f"unknown account '{spec.account_id}'") from exc
        now = self._clock()
        next_run_at = None
        if spec.schedule_type == ScheduleType.CRON:
            next_run_at = self._cron.next_fire(spec.cron_expression or "", now)
        record = ScheduleRecord(
            id=new_id(),
            agent_slug=spec.agent_slug,
            account_id=spec.account_id,
            schedule_type=spec.schedule_type,
            interval_minutes=spec.interval_minutes,
            cron_expression=spec.cron_expression,
            event_trigger=spec.event_trigger,
            max_concurrent=spec.max_concurrent,
            timeout_seconds=spec.timeout_seconds,
            default_context=dict(spec.default_context),
            is_active=spec.is_active,
            next_run_at=next_run_at,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        created = await self._schedules.create(record)
        logger.info(
            "schedule_created schedule_id=%s skill_id=%s type=%s next_run_at=%s",
            created.id,
            created.agent_slug,
            created.schedule_type.value,
            created.next_run_at,
        )
        return created

    async def list_schedules(self, *, active: bool | None = None) -> list[ScheduleRecord]:
        return await self._schedules.list(active=active)

    async def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        record = await self._schedules.get(schedule_id)
        if record is None:
            raise NotFoundError("schedule", schedule_id)
        return record

    async def deactivate_schedule(self, schedule_id: str) -> ScheduleRecord:
        record = await self._schedules.deactivate(schedule_id)
        if record is None:
            raise NotFoundError("schedule", schedule_id)
        logger.info("schedule_deactivated schedule_id=%s", schedule_id)
        return record

    # -- triggering ---------------------------------------------------------

    async def tick(self, now: datetime | None = None, *, wait: bool = False) -> TickReport:
        """Enqueue due schedules, admit pending executions and sweep reservations."""
        now = now or self._clock()
        report = TickReport(now=now)
        for schedule in await self._schedules.list_due(now):
            await self._fire(schedule, now, report)
        await self._admit_pending(report)
        report.reconciled = await self._engine.reconcile_reservations()
        if wait:
            await self._engine.wait_all()
        logger.info(
            "dispatcher_tick now=%s enqueued=%d started=%d deferred=%d skipped=%d reconciled=%d",
            now.isoformat(),
            len(report.enqueued),
            len(report.started),
            len(report.deferred),
            len(report.skipped),
            report.reconciled,
        )
        return report

    async def dispatch_event(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> list[ExecutionRecord]:
        """Enqueue one run per active schedule listening for ``event_name``."""
        records: list[ExecutionRecord] = []
        for schedule in await self._schedules.list_for_event(event_name):
            request = ExecutionRequest(
                skill_id=schedule.agent_slug,
                account_id=schedule.account_id,
                input={**schedule.default_context, **(payload or {})},
                trigger_source=TriggerSource.EVENT,
                triggered_by=triggered_by or self._system_actor,
                schedule_id=schedule.id,
            )
            try:
                record = await self._engine.enqueue(request)
            except SkillOpsError as exc:
                logger.warning(
                    "event_skip event=%s schedule_id=%s reason=%s error=%s", event_name, schedule.id, exc.code, exc
                )
                continue
            admitted = await self._try_admit(record)
            if admitted is not None:
                self._engine.start(admitted.id)
                record = admitted
            records.append(record)
        logger.info("event_dispatched event=%s executions=%d", event_name, len(records))
        return records

    async def _fire(self, schedule: ScheduleRecord, now: datetime, report: TickReport) -> None:
        if schedule.schedule_type == ScheduleType.CRON and schedule.next_run_at is None:
            next_run_at = self._cron.next_fire(schedule.cron_expression or "", now)
            if await self._schedules.initialize_next_run(schedule.id, next_run_at):
                report.initialized.append(schedule.id)
            return
        due = schedule.next_run_at or now
        try:
            if schedule.schedule_type == ScheduleType.CRON and not self._cron.is_due(
                schedule.cron_expression or "", schedule.last_run_at or schedule.created_at, now
            ):
                logger.debug("schedule_not_due schedule_id=%s next_run_at=%s", schedule.id, due.isoformat())
                return
            next_run_at = self._next_run_after(schedule, due, now)
        except (ValueError, KeyError) as exc:
            logger.warning("schedule_skip schedule_id=%s reason=%s", schedule.id, exc)
            report.skipped.append({"schedule_id": schedule.id, "reason": f"invalid schedule: {exc}"})
            return
        claimed = await self._schedules.claim(
            schedule.id,
            expected_next_run_at=schedule.next_run_at,
            next_run_at=next_run_at,
            now=now,
        )
        if not claimed:
            logger.debug("schedule_claim_lost schedule_id=%s due=%s", schedule.id, due.isoformat())
            return
        request = ExecutionRequest(
            skill_id=schedule.agent_slug,
            account_id=schedule.account_id,
            input=dict(schedule.default_context),
            trigger_source=TriggerSource.SCHEDULE,
            triggered_by=self._system_actor,
            schedule_id=schedule.id,
            dedupe_key=f"{schedule.id}:{due.isoformat()}",
        )
        try:
            record = await self._engine.enqueue(request)
        except SkillOpsError as exc:
            logger.warning("schedule_skip schedule_id=%s reason=%s error=%s", schedule.id, exc.code, exc)
            report.skipped.append({"schedule_id": schedule.id, "reason": exc.code})
            return
        report.enqueued.append(record.id)

    def _next_run_after(self, schedule: ScheduleRecord, due: datetime, now: datetime) -> datetime:
        if schedule.schedule_type == ScheduleType.CRON:
            return self._cron.next_fire(schedule.cron_expression or "", now)
        minutes = schedule.interval_minutes or 0
        if minutes < 1:
            raise ValueError("interval_minutes must be >= 1")
        step = timedelta(minutes=minutes)
        # Missed slots are skipped; the next run is the first slot after now.
        missed = max(0, (now - due) // step)
        return due + step * (missed + 1)

    async def _admit_pending(self, report: TickReport) -> None:
        for record in await self._engine.list_pending(limit=self._admission_batch_size):
            try:
                admitted = await self._engine.admit(record.id)
            except InvalidState:
                continue
            if admitted is None:
                report.deferred.append(record.id)
                continue
            self._engine.start(admitted.id)
            report.started.append(admitted.id)

    async def _try_admit(self, record: ExecutionRecord) -> ExecutionRecord | None:
        try:
            return await self._engine.admit(record.id)
        except InvalidState:
            # Admitted by a concurrent caller.
            return None
