"""Schedule repositories.

``claim`` is the only way ``next_run_at`` advances for a due schedule: it is a
compare-and-set on the value the caller observed, so overlapping ticks agree
on a single claimant per due instant.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillops.db import transaction
from skillops.schedules.models import ScheduleRecord, ScheduleType
from skillops.schedules.orm import ScheduleModel

_RECURRING = (ScheduleType.INTERVAL, ScheduleType.CRON)


class ScheduleStore(ABC):
    """Storage contract for schedules."""

    @abstractmethod
    async def create(self, record: ScheduleRecord) -> ScheduleRecord: ...

    @abstractmethod
    async def get(self, schedule_id: str) -> ScheduleRecord | None: ...

    @abstractmethod
    async def list(self, *, active: bool | None = None) -> list[ScheduleRecord]: ...

    @abstractmethod
    async def list_due(self, now: datetime) -> list[ScheduleRecord]:
        """Active interval/cron schedules with ``next_run_at`` unset or not after ``now``."""

    @abstractmethod
    async def list_for_event(self, event_name: str) -> list[ScheduleRecord]: ...

    @abstractmethod
    async def claim(
        self,
        schedule_id: str,
        *,
        expected_next_run_at: datetime | None,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        """Advance ``next_run_at`` if it still equals the observed value."""

    @abstractmethod
    async def initialize_next_run(self, schedule_id: str, next_run_at: datetime) -> bool:
        """Set ``next_run_at`` only while it is still unset."""

    @abstractmethod
    async def deactivate(self, schedule_id: str) -> ScheduleRecord | None: ...

    @abstractmethod
    async def record_failure(self, schedule_id: str) -> None: ...


class InMemoryScheduleStore(ScheduleStore):
    """Dictionary-backed schedule store."""

    def __init__(self) -> None:
        self._records: dict[str, ScheduleRecord] = {}

    async def create(self, record: ScheduleRecord) -> ScheduleRecord:
        self._records[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    async def get(self, schedule_id: str) -> ScheduleRecord | None:
        record = self._records.get(schedule_id)
        return dataclasses.replace(record) if record is not None else None

    async def list(self, *, active: bool | None = None) -> list[ScheduleRecord]:
        items = [item for item in self._records.values() if active is None or item.is_active == active]
        return [dataclasses.replace(item) for item in sorted(items, key=lambda item: item.created_at)]

    async def list_due(self, now: datetime) -> list[ScheduleRecord]:
        items = [
            item
            for item in self._records.values()
            if item.is_active
            and item.schedule_type in _RECURRING
            and (item.next_run_at is None or item.next_run_at <= now)
        ]
        return [dataclasses.replace(item) for item in sorted(items, key=lambda item: item.created_at)]

    async def list_for_event(self, event_name: str) -> list[ScheduleRecord]:
        items = [
            item
            for item in self._records.values()
            if item.is_active and item.schedule_type == ScheduleType.EVENT and item.event_trigger == event_name
        ]
        return [dataclasses.replace(item) for item in sorted(items, key=lambda item: item.created_at)]

    async def claim(
        self,
        schedule_id: str,
        *,
        expected_next_run_at: datetime | None,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        record = self._records.get(schedule_id)
        if record is None or not record.is_active or record.next_run_at != expected_next_run_at:
            return False
        record.next_run_at = next_run_at
        record.last_run_at = now
        record.run_count += 1
        record.updated_at = now
        return True

    async def initialize_next_run(self, schedule_id: str, next_run_at: datetime) -> bool:
        record = self._records.get(schedule_id)
        if record is None or record.next_run_at is not None:
            return False
        record.next_run_at = next_run_at
        return True

    async def deactivate(self, schedule_id: str) -> ScheduleRecord | None:
        record = self._records.get(schedule_id)
        if record is None:
            return None
        record.is_active = False
        record.updated_at = datetime.now(timezone.utc)
        return dataclasses.replace(record)

    async def record_failure(self, schedule_id: str) -> None:
        record = self._records.get(schedule_id)
        if record is not None:
            record.failure_count += 1


class SqlScheduleStore(ScheduleStore):
    """PostgreSQL-backed schedule store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: ScheduleRecord) -> ScheduleRecord:
        async with transaction(self._session_factory) as session:
            session.add(
                ScheduleModel(
                    id=record.id,
                    agent_slug=record.agent_slug,
                    account_id=record.account_id,
                    schedule_type=record.schedule_type.value,
                    interval_minutes=record.interval_minutes,
                    cron_expression=record.cron_expression,
                    event_trigger=record.event_trigger,
                    max_concurrent=record.max_concurrent,
                    timeout_seconds=record.timeout_seconds,
                    default_context=record.default_context,
                    is_active=record.is_active,
                    next_run_at=record.next_run_at,
                    last_run_at=record.last_run_at,
                    run_count=record.run_count,
                    failure_count=record.failure_count,
                    created_by=record.created_by,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
        return dataclasses.replace(record)

    async def get(self, schedule_id: str) -> ScheduleRecord | None:
        async with self._session_factory() as session:
            row = await session.get(ScheduleModel, schedule_id)
            return _to_record(row) if row is not None else None

    async def list(self, *, active: bool | None = None) -> list[ScheduleRecord]:
        stmt = select(ScheduleModel)
        if active is not None:
            stmt = stmt.where(ScheduleModel.is_active == active)
        return await self._fetch(stmt.order_by(ScheduleModel.created_at.asc()))

    async def list_due(self, now: datetime) -> list[ScheduleRecord]:
        stmt = (
            select(ScheduleModel)
            .where(
                ScheduleModel.is_active.is_(True),
                ScheduleModel.schedule_type.in_([item.value for item in _RECURRING]),
                or_(ScheduleModel.next_run_at.is_(None), ScheduleModel.next_run_at <= now),
            )
            .order_by(ScheduleModel.created_at.asc())
        )
        return await self._fetch(stmt)

    async def list_for_event(self, event_name: str) -> list[ScheduleRecord]:
        stmt = (
            select(ScheduleModel)
            .where(
                ScheduleModel.is_active.is_(True),
                ScheduleModel.schedule_type == ScheduleType.EVENT.value,
                ScheduleModel.event_trigger == event_name,
            )
            .order_by(ScheduleModel.created_at.asc())
        )
        return await self._fetch(stmt)

    async def claim(
        self,
        schedule_id: str,
        *,
        expected_next_run_at: datetime | None,
        next_run_at: datetime,
        now: datetime,
    ) -> bool:
        stmt = (
            update(ScheduleModel)
            .where(
                ScheduleModel.id == schedule_id,
                ScheduleModel.is_active.is_(True),
                ScheduleModel.next_run_at.is_not_distinct_from(expected_next_run_at),
            )
            .values(
                next_run_at=next_run_at,
                last_run_at=now,
                run_count=ScheduleModel.run_count + 1,
                updated_at=now,
            )
        )
        async with transaction(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def initialize_next_run(self, schedule_id: str, next_run_at: datetime) -> bool:
        stmt = (
            update(ScheduleModel)
            .where(ScheduleModel.id == schedule_id, ScheduleModel.next_run_at.is_(None))
            .values(next_run_at=next_run_at)
        )
        async with transaction(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def deactivate(self, schedule_id: str) -> ScheduleRecord | None:
        async with transaction(self._session_factory) as session:
            row = await session.get(ScheduleModel, schedule_id)
            if row is None:
                return None
            row.is_active = False
            row.updated_at = datetime.now(timezone.utc)
            await session.flush()
            return _to_record(row)

    async def record_failure(self, schedule_id: str) -> None:
        stmt = (
            update(ScheduleModel)
            .where(ScheduleModel.id == schedule_id)
            .values(failure_count=ScheduleModel.failure_count + 1)
        )
        async with transaction(self._session_factory) as session:
            await session.execute(stmt)

    async def _fetch(self, stmt) -> list[ScheduleRecord]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]


def _to_record(row: ScheduleModel) -> ScheduleRecord:
    return ScheduleRecord(
        id=row.id,
        agent_slug=row.agent_slug,
        account_id=row.account_id,
        schedule_type=ScheduleType(row.schedule_type),
        interval_minutes=row.interval_minutes,
        cron_expression=row.cron_expression,
        event_trigger=row.event_trigger,
        max_concurrent=row.max_concurrent,
        timeout_seconds=row.timeout_seconds,
        default_context=dict(row.default_context or {}),
        is_active=row.is_active,
        next_run_at=row.next_run_at,
        last_run_at=row.last_run_at,
        run_count=row.run_count,
        failure_count=row.failure_count,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
