"""Schedule store and cron evaluation."""

from skillops.schedules.cron import CronEvaluator, CroniterEvaluator
from skillops.schedules.models import ScheduleRecord, ScheduleSpec, ScheduleType, validate_schedule
from skillops.schedules.store import InMemoryScheduleStore, ScheduleStore, SqlScheduleStore

__all__ = [
    "CronEvaluator",
    "CroniterEvaluator",
    "InMemoryScheduleStore",
    "ScheduleRecord",
    "ScheduleSpec",
    "ScheduleStore",
    "ScheduleType",
    "SqlScheduleStore",
    "validate_schedule",
]
