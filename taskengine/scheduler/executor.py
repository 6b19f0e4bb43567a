"""TaskExecutor: runs one task and applies the post-run bookkeeping."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskengine.scheduler.errors import (
    TaskHandlerError,
    TaskPersistenceError,
    TaskTimeoutError,
)
from taskengine.scheduler.evaluator import next_due
from taskengine.scheduler.models import TaskStatus
from taskengine.scheduler.stats import ExecutionRecord

if TYPE_CHECKING:
    from collections.abc import Callable

    from taskengine.scheduler.models import ScheduledTask
    from taskengine.scheduler.persistence import TaskPersistence
    from taskengine.scheduler.stats import ExecutionLog, SchedulerStats
    from taskengine.scheduler.store import TaskStore

    ErrorReporter = Callable[[BaseException, dict[str, Any]], Any]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_async_callable(fn: Any) -> bool:
    # Also covers instances whose class defines ``async def __call__``
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(type(fn).__call__)


class TaskExecutor:
    """Executes scheduled tasks and keeps their records up to date.

    Args:
        store: TaskStore that owns the records.
        stats: Aggregate counters to update per outcome.
        log: Ring of recent execution records.
        persistence: Task file storage, or None when persistence is off.
        error_reporter: Optional ``(error, context)`` callable, sync or async,
            told about every handler failure.
        timezone: Fallback timezone for cron schedules.
        default_timeout: Deadline in seconds for tasks without their own.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store: TaskStore,
        stats: SchedulerStats,
        log: ExecutionLog,
        persistence: TaskPersistence | None = None,
        *,
        error_reporter: ErrorReporter | None = None,
        timezone: str = "UTC",
        default_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._stats = stats
        self._log = log
        self._persistence = persistence
        self._error_reporter = error_reporter
        self._timezone = timezone
        self._default_timeout = default_timeout
        self._clock = clock or _utcnow
        self._running: set[str] = set()
        self._slot_freed = asyncio.Event()

    @property
    def running(self) -> frozenset[str]:
        """IDs of tasks whose handler is currently executing."""
        return frozenset(self._running)

    async def wait_for_slot(self) -> None:
        """Block until some running task finishes."""
        self._slot_freed.clear()
        await self._slot_freed.wait()

    def _release(self, task_id: str) -> None:
        self._running.discard(task_id)
        self._slot_freed.set()

    # -- Execution -------------------------------------------------------------

    def begin(self, task: ScheduledTask) -> ExecutionRecord:
        """Mark *task* running and record the attempt.

        Synchronous, so admission cannot interleave with another caller.
        """
        now = self._clock()
        task.status = TaskStatus.RUNNING
        task.last_execution = now
        self._running.add(task.id)
        return self._log.add(
            ExecutionRecord(
                task_id=task.id,
                task_name=task.name,
                schedule_type=task.schedule_type,
                execution_count=task.execution_count,
                scheduled_at=task.next_execution,
                executed_at=now,
            )
        )

    async def execute(self, task: ScheduledTask, extra_data: dict[str, Any] | None = None) -> Any:
        """Begin and run *task*, returning the handler's result."""
        record = self.begin(task)
        return await self.run(task, record, extra_data)

    async def run(
        self,
        task: ScheduledTask,
        record: ExecutionRecord,
        extra_data: dict[str, Any] | None = None,
    ) -> Any:
        """Invoke the handler of a task previously passed to ``begin()``.

        Raises ``TaskHandlerError`` if the handler raised or timed out; the
        failure has already been counted, logged, and reported by then.
        """
        context = {
            **task.data,
            **(extra_data or {}),
            "task_id": task.id,
            "task_name": task.name,
            "execution_count": task.execution_count,
            "scheduled_at": record.scheduled_at,
            "executed_at": record.executed_at,
        }
        logger.info(
            "Executing task: '%s' (%s) type=%s",
            task.name,
            task.id,
            task.schedule_type,
        )
        completed = False
        t0 = time.monotonic()
        try:
            try:
                result = await self._invoke(task, context)
            except Exception as exc:
                elapsed_ms = (time.monotonic() - t0) * 1000
                if isinstance(exc, TaskTimeoutError):
                    logger.warning("%s", exc)
                else:
                    logger.exception("Task execution failed: '%s' (%s)", task.name, task.id)
                save = self._complete(task, record, elapsed_ms, exc)
                completed = True
                await self._after_run(task, save=save)
                await self._send_error(task, exc)
                raise TaskHandlerError(task.id, task.name, exc) from exc

            elapsed_ms = (time.monotonic() - t0) * 1000
            logger.info(
                "Task executed successfully: '%s' (%s) in %.0fms",
                task.name,
                task.id,
                elapsed_ms,
            )
            save = self._complete(task, record, elapsed_ms)
            completed = True
            await self._after_run(task, save=save)
            return result
        finally:
            if not completed:
                # Cancelled mid-flight (engine shutdown without drain)
                self._release(task.id)
                task.status = TaskStatus.SCHEDULED
                record.status = "cancelled"

    async def _invoke(self, task: ScheduledTask, context: dict[str, Any]) -> Any:
        """Call the handler. Sync handlers run in a worker thread."""
        if _is_async_callable(task.handler):
            awaitable = task.handler(context)
        else:
            awaitable = asyncio.to_thread(task.handler, context)

        timeout = task.timeout or self._default_timeout
        if timeout is None:
            result = await awaitable
        else:
            try:
                result = await asyncio.wait_for(awaitable, timeout)
            except TimeoutError as exc:
                # A thread-run handler keeps going; only the slot is freed.
                msg = f"Task '{task.name}' ({task.id}) timed out after {timeout:g}s"
                raise TaskTimeoutError(msg) from exc

        if inspect.isawaitable(result):
            result = await result
        return result

    def _complete(
        self,
        task: ScheduledTask,
        record: ExecutionRecord,
        elapsed_ms: float,
        error: BaseException | None = None,
    ) -> bool:
        """Apply the outcome to the record in one synchronous step.

        Returns True if the task should be re-persisted.
        """
        now = self._clock()
        record.finish(elapsed_ms, error)
        task.status = TaskStatus.SCHEDULED
        task.updated_at = now
        if error is None:
            task.execution_count += 1
            self._stats.record("executed", task.schedule_type, task.tags)
        else:
            task.failure_count += 1
            self._stats.record("failed", task.schedule_type, task.tags)
        self._release(task.id)

        if task.cancel_requested:
            self._store.remove(task.id)
            logger.info("Removed cancelled task after run: '%s' (%s)", task.name, task.id)
            return False

        task.next_execution = next_due(
            task.schedule,
            now,
            last_run=task.last_execution,
            timezone=self._timezone,
        )
        if task.next_execution is None:
            self._store.remove(task.id)
            logger.info("Task exhausted, removed: '%s' (%s)", task.name, task.id)
            return False
        return task.persist

    async def _after_run(self, task: ScheduledTask, *, save: bool) -> None:
        if save:
            await self.persist(task)
        elif task.persist and task.id not in self._store:
            await self.unpersist(task.id)

    async def _send_error(self, task: ScheduledTask, error: BaseException) -> None:
        """Forward a handler failure to the error reporter, if one is configured."""
        if self._error_reporter is None:
            return
        context = {
            "type": "task",
            "source": "scheduler",
            "task_id": task.id,
            "task_name": task.name,
        }
        try:
            result = self._error_reporter(error, context)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Error reporter failed for task '%s' (%s)", task.name, task.id)

    # -- Persistence helpers ---------------------------------------------------

    async def save(self, task: ScheduledTask) -> None:
        """Write *task* to disk. Raises TaskPersistenceError.

        If the task was cancelled or removed while the write was in flight,
        the file is deleted again.
        """
        if self._persistence is None or not task.persist:
            return
        await asyncio.to_thread(self._persistence.save, task)
        if task.cancel_requested or self._store.get(task.id) is not task:
            await asyncio.to_thread(self._persistence.delete, task.id)

    async def persist(self, task: ScheduledTask) -> bool:
        """Best-effort ``save()``; failures are logged. Returns True on success."""
        try:
            await self.save(task)
        except TaskPersistenceError:
            logger.exception("Failed to persist task '%s' (%s)", task.name, task.id)
            return False
        return True

    async def unpersist(self, task_id: str) -> bool:
        """Best-effort removal of a task file. Returns True if a file was deleted."""
        if self._persistence is None:
            return False
        try:
            return await asyncio.to_thread(self._persistence.delete, task_id)
        except TaskPersistenceError:
            logger.exception("Failed to delete persisted task %s", task_id)
            return False
