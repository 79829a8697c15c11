"""Build the SkillOps component graph from configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.applications import Starlette

from skillops.api import BearerTokenAuthProvider, SkillOpsAPI
from skillops.config.models import SkillOpsConfig
from skillops.db import create_engine_from_config, create_session_factory
from skillops.engine import ExecutionEngine, TriggerDispatcher
from skillops.executions import ExecutionRepository, InMemoryExecutionRepository, SqlExecutionRepository
from skillops.ledger import CreditLedger, InMemoryLedgerStore, LedgerStore, LowBalanceNotifier, SqlLedgerStore
from skillops.schedules import CronEvaluator, InMemoryScheduleStore, ScheduleStore, SqlScheduleStore
from skillops.skills import HttpSkillInvoker, LocalSkillInvoker, SkillCatalog, SkillInvoker

logger = logging.getLogger(__name__)


@dataclass
class SkillOpsApp:
    """Wired components sharing one set of stores."""

    config: SkillOpsConfig
    ledger: CreditLedger
    engine: ExecutionEngine
    dispatcher: TriggerDispatcher
    api: SkillOpsAPI
    db_engine: AsyncEngine | None = None

    @property
    def asgi(self) -> Starlette:
        return self.api.app

    async def close(self) -> None:
        await self.engine.wait_all()
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_app(
    config: SkillOpsConfig,
    *,
    invoker: SkillInvoker | None = None,
    notifier: LowBalanceNotifier | None = None,
    cron: CronEvaluator | None = None,
    clock: Callable[[], datetime] | None = None,
) -> SkillOpsApp:
    """Create stores, ledger, engine, dispatcher and API.

    An empty ``database.url`` selects in-memory stores; otherwise every store
    uses PostgreSQL through one async engine.
    """
    db_engine: AsyncEngine | None = None
    ledger_store: LedgerStore
    executions: ExecutionRepository
    schedules: ScheduleStore
    if config.database.url:
        db_engine = create_engine_from_config(config.database)
        session_factory = create_session_factory(db_engine)
        ledger_store = SqlLedgerStore(session_factory)
        executions = SqlExecutionRepository(session_factory)
        schedules = SqlScheduleStore(session_factory)
        logger.info("skillops_storage backend=postgresql")
    else:
        ledger_store = InMemoryLedgerStore()
        executions = InMemoryExecutionRepository()
        schedules = InMemoryScheduleStore()
        logger.info("skillops_storage backend=memory")

    if invoker is None:
        if config.invoker.base_url:
            invoker = HttpSkillInvoker.from_config(config.invoker)
        else:
            invoker = LocalSkillInvoker()

    ledger = CreditLedger(
        ledger_store,
        max_attempts=config.ledger.max_attempts,
        backoff_base_seconds=config.ledger.conflict_backoff_seconds,
        low_balance_thresholds=config.ledger.low_balance_thresholds,
        notifier=notifier,
    )
    engine = ExecutionEngine(
        executions,
        ledger,
        SkillCatalog.from_config(config.skills),
        invoker,
        schedules=schedules,
        max_concurrent=config.engine.max_concurrent,
        default_timeout_seconds=config.engine.default_timeout_seconds,
        clock=clock,
    )
    dispatcher = TriggerDispatcher(
        engine,
        schedules,
        cron=cron,
        admission_batch_size=config.dispatcher.admission_batch_size,
        system_actor=config.dispatcher.system_actor,
        clock=clock,
    )
    api = SkillOpsAPI(
        engine=engine,
        dispatcher=dispatcher,
        ledger=ledger,
        auth_provider=BearerTokenAuthProvider(config.api.staff_tokens, config.api.scheduler_tokens),
        cors_origins=config.api.cors_origins,
    )
    return SkillOpsApp(
        config=config,
        ledger=ledger,
        engine=engine,
        dispatcher=dispatcher,
        api=api,
        db_engine=db_engine,
    )
