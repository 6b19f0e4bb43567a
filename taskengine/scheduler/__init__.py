"""Task scheduling engine: models, evaluation, storage, execution, and persistence."""

from taskengine.scheduler.engine import SchedulerEngine
from taskengine.scheduler.errors import (
    HandlerResolutionError,
    SchedulerError,
    TaskHandlerError,
    TaskNotFoundError,
    TaskPersistenceError,
    TaskRunningError,
    TaskTimeoutError,
    TaskValidationError,
)
from taskengine.scheduler.evaluator import next_due
from taskengine.scheduler.executor import TaskExecutor
from taskengine.scheduler.handlers import HandlerRegistry, handlers
from taskengine.scheduler.models import (
    CronSchedule,
    DateSchedule,
    HandlerRef,
    ImmediateSchedule,
    IntervalSchedule,
    ScheduledTask,
    TaskDescriptor,
    TaskStatus,
)
from taskengine.scheduler.persistence import TaskPersistence
from taskengine.scheduler.stats import ExecutionLog, ExecutionRecord, SchedulerStats
from taskengine.scheduler.store import TaskStore

__all__ = [
    "CronSchedule",
    "DateSchedule",
    "ExecutionLog",
    "ExecutionRecord",
    "HandlerRef",
    "HandlerRegistry",
    "HandlerResolutionError",
    "ImmediateSchedule",
    "IntervalSchedule",
    "ScheduledTask",
    "SchedulerEngine",
    "SchedulerError",
    "SchedulerStats",
    "TaskDescriptor",
    "TaskExecutor",
    "TaskHandlerError",
    "TaskNotFoundError",
    "TaskPersistence",
    "TaskPersistenceError",
    "TaskRunningError",
    "TaskStatus",
    "TaskStore",
    "TaskTimeoutError",
    "TaskValidationError",
    "handlers",
    "next_due",
]
