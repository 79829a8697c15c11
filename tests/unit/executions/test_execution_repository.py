"""Unit tests for InMemoryExecutionRepository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from skillops.executions import (
    ExecutionQuery,
    ExecutionRecord,
    ExecutionStatus,
    InMemoryExecutionRepository,
    TriggerSource,
)

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _record(execution_id: str, **kwargs) -> ExecutionRecord:  # type: ignore[no-untyped-def]
    defaults = {
        "skill_id": "listing-writer",
        "account_id": "acct-1",
        "trigger_source": TriggerSource.MANUAL,
        "created_at": T0,
    }
    defaults.update(kwargs)
    return ExecutionRecord(id=execution_id, **defaults)


def test_terminal_statuses() -> None:
    assert ExecutionStatus.COMPLETED.is_terminal
    assert ExecutionStatus.FAILED.is_terminal
    assert ExecutionStatus.CANCELLED.is_terminal
    assert not ExecutionStatus.PENDING.is_terminal
    assert not ExecutionStatus.RUNNING.is_terminal


def test_record_to_dict_hides_internal_keys() -> None:
    data = _record("e1", dedupe_key="k", reservation_id="r").to_dict()
    assert data["status"] == "pending"
    assert data["trigger_source"] == "manual"
    assert "dedupe_key" not in data
    assert "reservation_id" not in data


@pytest.mark.asyncio
async def test_create_rejects_duplicate_dedupe_key() -> None:
    repo = InMemoryExecutionRepository()
    assert await repo.create(_record("e1", dedupe_key="sched:1")) is not None
    assert await repo.create(_record("e2", dedupe_key="sched:1")) is None
    existing = await repo.get_by_dedupe_key("sched:1")
    assert existing is not None
    assert existing.id == "e1"


@pytest.mark.asyncio
async def test_returned_records_are_copies() -> None:
    repo = InMemoryExecutionRepository()
    await repo.create(_record("e1"))
    fetched = await repo.get("e1")
    assert fetched is not None
    fetched.status = ExecutionStatus.FAILED
    again = await repo.get("e1")
    assert again is not None
    assert again.status == ExecutionStatus.PENDING


@pytest.mark.asyncio
async def test_transition_is_compare_and_set() -> None:
    repo = InMemoryExecutionRepository()
    await repo.create(_record("e1", status=ExecutionStatus.RUNNING))

    cancelled = await repo.transition("e1", [ExecutionStatus.RUNNING], ExecutionStatus.CANCELLED, completed_at=T0)
    completed = await repo.transition("e1", [ExecutionStatus.RUNNING], ExecutionStatus.COMPLETED)

    assert cancelled is not None
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.completed_at == T0
    assert completed is None
    assert await repo.transition("missing", [ExecutionStatus.RUNNING], ExecutionStatus.FAILED) is None


@pytest.mark.asyncio
async def test_admit_respects_global_limit() -> None:
    repo = InMemoryExecutionRepository()
    await repo.create(_record("e1"))
    await repo.create(_record("e2"))

    first = await repo.admit("e1", max_per_schedule=None, max_global=1, now=T0)
    second = await repo.admit("e2", max_per_schedule=None, max_global=1, now=T0)

    assert first is not None
    assert first.status == ExecutionStatus.RUNNING
    assert first.started_at == T0
    assert second is None
    assert await repo.count_running() == 1


@pytest.mark.asyncio
async def test_admit_respects_per_schedule_limit() -> None:
    repo = InMemoryExecutionRepository()
    await repo.create(_record("a1", schedule_id="s-a"))
    await repo.create(_record("a2", schedule_id="s-a"))
    await repo.create(_record("b1", schedule_id="s-b"))

    assert await repo.admit("a1", max_per_schedule=1, max_global=10, now=T0) is not None
    assert await repo.admit("a2", max_per_schedule=1, max_global=10, now=T0) is None
    assert await repo.admit("b1", max_per_schedule=1, max_global=10, now=T0) is not None
    assert await repo.count_running(schedule_id="s-a") == 1


@pytest.mark.asyncio
async def test_concurrent_admissions_share_last_slot() -> None:
    repo = InMemoryExecutionRepository()
    for index in range(5):
        await repo.create(_record(f"e{index}", schedule_id="s-1"))

    results = await asyncio.gather(
        *(repo.admit(f"e{index}", max_per_schedule=2, max_global=10, now=T0) for index in range(5))
    )

    assert sum(1 for item in results if item is not None) == 2


@pytest.mark.asyncio
async def test_list_filters_and_orders_newest_first() -> None:
    repo = InMemoryExecutionRepository()
    await repo.create(_record("old", created_at=T0))
    await repo.create(_record("new", created_at=T0 + timedelta(minutes=5)))
    await repo.create(_record("other", skill_id="market-report", created_at=T0 + timedelta(minutes=1)))

    listed = await repo.list(ExecutionQuery(skill_id="listing-writer"))
    windowed = await repo.list(ExecutionQuery(created_after=T0 + timedelta(minutes=1)))
    pending = await repo.list_pending(limit=10)

    assert [item.id for item in listed] == ["new", "old"]
    assert {item.id for item in windowed} == {"new", "other"}
    assert [item.id for item in pending] == ["old", "other", "new"]
