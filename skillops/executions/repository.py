"""Repositories for execution records.

Status changes are compare-and-set: a transition names the statuses it is
allowed to start from and reports ``None`` when another writer got there
first. Admission additionally counts running executions under a lock so two
admissions can never both take the last slot.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillops.db import transaction
from skillops.executions.models import ExecutionQuery, ExecutionRecord, ExecutionStatus, TriggerSource
from skillops.executions.orm import ExecutionModel

# Key for the transaction-scoped advisory lock that serializes admissions.
ADMISSION_LOCK_KEY = 0x534B494C


class ExecutionRepository(ABC):
    """Storage contract for execution records."""

    @abstractmethod
    async def create(self, record: ExecutionRecord) -> ExecutionRecord | None:
        """Insert a record. Returns None when its dedupe key already exists."""

    @abstractmethod
    async def get(self, execution_id: str) -> ExecutionRecord | None: ...

    @abstractmethod
    async def get_by_dedupe_key(self, dedupe_key: str) -> ExecutionRecord | None: ...

    @abstractmethod
    async def list(self, query: ExecutionQuery) -> list[ExecutionRecord]: ...

    @abstractmethod
    async def list_pending(self, *, limit: int = 100) -> list[ExecutionRecord]:
        """Pending executions, oldest first."""

    @abstractmethod
    async def count_running(self, *, schedule_id: str | None = None) -> int: ...

    @abstractmethod
    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> ExecutionRecord | None:
        """Move to ``new_status`` only if the current status is in ``expected``."""

    @abstractmethod
    async def admit(
        self,
        execution_id: str,
        *,
        max_per_schedule: int | None,
        max_global: int,
        now: datetime,
    ) -> ExecutionRecord | None:
        """Atomically move a pending execution to running if capacity allows."""


class InMemoryExecutionRepository(ExecutionRepository):
    """Dictionary-backed repository for tests and single-process runs."""

    def __init__(self) -> None:
        self._records: dict[str, ExecutionRecord] = {}
        self._dedupe: dict[str, str] = {}
        self._admission_lock = asyncio.Lock()

    async def create(self, record: ExecutionRecord) -> ExecutionRecord | None:
        if record.dedupe_key is not None and record.dedupe_key in self._dedupe:
            return None
        self._records[record.id] = dataclasses.replace(record)
        if record.dedupe_key is not None:
            self._dedupe[record.dedupe_key] = record.id
        return dataclasses.replace(record)

    async def get(self, execution_id: str) -> ExecutionRecord | None:
        record = self._records.get(execution_id)
        return dataclasses.replace(record) if record is not None else None

    async def get_by_dedupe_key(self, dedupe_key: str) -> ExecutionRecord | None:
        execution_id = self._dedupe.get(dedupe_key)
        return await self.get(execution_id) if execution_id is not None else None

    async def list(self, query: ExecutionQuery) -> list[ExecutionRecord]:
        items = [record for record in self._records.values() if _matches(record, query)]
        items.sort(key=lambda record: record.created_at, reverse=True)
        start = max(0, query.offset)
        return [dataclasses.replace(record) for record in items[start : start + max(1, query.limit)]]

    async def list_pending(self, *, limit: int = 100) -> list[ExecutionRecord]:
        items = [record for record in self._records.values() if record.status == ExecutionStatus.PENDING]
        items.sort(key=lambda record: record.created_at)
        return [dataclasses.replace(record) for record in items[: max(1, limit)]]

    async def count_running(self, *, schedule_id: str | None = None) -> int:
        return self._count_running(schedule_id)

    def _count_running(self, schedule_id: str | None) -> int:
        return sum(
            1
            for record in self._records.values()
            if record.status == ExecutionStatus.RUNNING and (schedule_id is None or record.schedule_id == schedule_id)
        )

    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> ExecutionRecord | None:
        record = self._records.get(execution_id)
        if record is None or record.status not in set(expected):
            return None
        record.status = new_status
        for name, value in fields.items():
            setattr(record, name, value)
        return dataclasses.replace(record)

    async def admit(
        self,
        execution_id: str,
        *,
        max_per_schedule: int | None,
        max_global: int,
        now: datetime,
    ) -> ExecutionRecord | None:
        async with self._admission_lock:
            record = self._records.get(execution_id)
            if record is None or record.status != ExecutionStatus.PENDING:
                return None
            if self._count_running(None) >= max_global:
                return None
            if (
                record.schedule_id is not None
                and max_per_schedule is not None
                and self._count_running(record.schedule_id) >= max_per_schedule
            ):
                return None
            record.status = ExecutionStatus.RUNNING
            record.started_at = now
            return dataclasses.replace(record)


class SqlExecutionRepository(ExecutionRepository):
    """PostgreSQL-backed repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: ExecutionRecord) -> ExecutionRecord | None:
        try:
            async with transaction(self._session_factory) as session:
                session.add(_to_model(record))
        except IntegrityError:
            if record.dedupe_key is None:
                raise
            return None
        return dataclasses.replace(record)

    async def get(self, execution_id: str) -> ExecutionRecord | None:
        async with self._session_factory() as session:
            row = await session.get(ExecutionModel, execution_id)
            return _to_record(row) if row is not None else None

    async def get_by_dedupe_key(self, dedupe_key: str) -> ExecutionRecord | None:
        async with self._session_factory() as session:
            row = await session.scalar(select(ExecutionModel).where(ExecutionModel.dedupe_key == dedupe_key))
            return _to_record(row) if row is not None else None

    async def list(self, query: ExecutionQuery) -> list[ExecutionRecord]:
        stmt = select(ExecutionModel)
        if query.skill_id is not None:
            stmt = stmt.where(ExecutionModel.skill_id == query.skill_id)
        if query.account_id is not None:
            stmt = stmt.where(ExecutionModel.account_id == query.account_id)
        if query.status is not None:
            stmt = stmt.where(ExecutionModel.status == query.status.value)
        if query.trigger_source is not None:
            stmt = stmt.where(ExecutionModel.trigger_source == query.trigger_source.value)
        if query.schedule_id is not None:
            stmt = stmt.where(ExecutionModel.schedule_id == query.schedule_id)
        if query.created_after is not None:
            stmt = stmt.where(ExecutionModel.created_at >= query.created_after)
        if query.created_before is not None:
            stmt = stmt.where(ExecutionModel.created_at <= query.created_before)
        stmt = stmt.order_by(ExecutionModel.created_at.desc()).offset(max(0, query.offset)).limit(max(1, query.limit))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def list_pending(self, *, limit: int = 100) -> list[ExecutionRecord]:
        stmt = (
            select(ExecutionModel)
            .where(ExecutionModel.status == ExecutionStatus.PENDING.value)
            .order_by(ExecutionModel.created_at.asc())
            .limit(max(1, limit))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def count_running(self, *, schedule_id: str | None = None) -> int:
        async with self._session_factory() as session:
            return await _count_running(session, schedule_id)

    async def transition(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        new_status: ExecutionStatus,
        **fields: Any,
    ) -> ExecutionRecord | None:
        values = {name: _column_value(value) for name, value in fields.items()}
        values["status"] = new_status.value
        stmt = (
            update(ExecutionModel)
            .where(
                ExecutionModel.id == execution_id,
                ExecutionModel.status.in_([status.value for status in expected]),
            )
            .values(**values)
            .returning(ExecutionModel)
        )
        async with transaction(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def admit(
        self,
        execution_id: str,
        *,
        max_per_schedule: int | None,
        max_global: int,
        now: datetime,
    ) -> ExecutionRecord | None:
        async with transaction(self._session_factory) as session:
            await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": ADMISSION_LOCK_KEY})
            row = await session.scalar(
                select(ExecutionModel).where(ExecutionModel.id == execution_id).with_for_update()
            )
            if row is None or row.status != ExecutionStatus.PENDING.value:
                return None
            if await _count_running(session, None) >= max_global:
                return None
            if (
                row.schedule_id is not None
                and max_per_schedule is not None
                and await _count_running(session, row.schedule_id) >= max_per_schedule
            ):
                return None
            row.status = ExecutionStatus.RUNNING.value
            row.started_at = now
            await session.flush()
            return _to_record(row)


async def _count_running(session: AsyncSession, schedule_id: str | None) -> int:
    stmt = select(func.count()).select_from(ExecutionModel).where(
        ExecutionModel.status == ExecutionStatus.RUNNING.value
    )
    if schedule_id is not None:
        stmt = stmt.where(ExecutionModel.schedule_id == schedule_id)
    return int(await session.scalar(stmt) or 0)


def _matches(record: ExecutionRecord, query: ExecutionQuery) -> bool:
    if query.skill_id is not None and record.skill_id != query.skill_id:
        return False
    if query.account_id is not None and record.account_id != query.account_id:
        return False
    if query.status is not None and record.status != query.status:
        return False
    if query.trigger_source is not None and record.trigger_source != query.trigger_source:
        return False
    if query.schedule_id is not None and record.schedule_id != query.schedule_id:
        return False
    if query.created_after is not None and record.created_at < query.created_after:
        return False
    if query.created_before is not None and record.created_at > query.created_before:
        return False
    return True


def _column_value(value: Any) -> Any:
    if isinstance(value, (ExecutionStatus, TriggerSource)):
        return value.value
    return value


def _to_model(record: ExecutionRecord) -> ExecutionModel:
    return ExecutionModel(
        id=record.id,
        skill_id=record.skill_id,
        account_id=record.account_id,
        status=record.status.value,
        trigger_source=record.trigger_source.value,
        triggered_by=record.triggered_by,
        input=record.input,
        output=record.output,
        error_message=record.error_message,
        schedule_id=record.schedule_id,
        dedupe_key=record.dedupe_key,
        retry_of=record.retry_of,
        retry_count=record.retry_count,
        reservation_id=record.reservation_id,
        reserved_credits=record.reserved_credits,
        credits_charged=record.credits_charged,
        billing_note=record.billing_note,
        tokens_used=record.tokens_used,
        cost=record.cost,
        duration_ms=record.duration_ms,
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _to_record(row: ExecutionModel) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        skill_id=row.skill_id,
        account_id=row.account_id,
        status=ExecutionStatus(row.status),
        trigger_source=TriggerSource(row.trigger_source),
        triggered_by=row.triggered_by,
        input=dict(row.input or {}),
        output=row.output,
        error_message=row.error_message,
        schedule_id=row.schedule_id,
        dedupe_key=row.dedupe_key,
        retry_of=row.retry_of,
        retry_count=row.retry_count,
        reservation_id=row.reservation_id,
        reserved_credits=row.reserved_credits,
        credits_charged=row.credits_charged,
        billing_note=row.billing_note,
        tokens_used=row.tokens_used,
        cost=row.cost,
        duration_ms=row.duration_ms,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )
