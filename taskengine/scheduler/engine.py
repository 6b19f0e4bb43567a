"""SchedulerEngine: task registration, the tick loop, and persistence sweeps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from taskengine.config import settings
from taskengine.scheduler.errors import (
    HandlerResolutionError,
    TaskHandlerError,
    TaskPersistenceError,
    TaskRunningError,
    TaskValidationError,
)
from taskengine.scheduler.evaluator import next_due
from taskengine.scheduler.executor import TaskExecutor
from taskengine.scheduler.handlers import handlers
from taskengine.scheduler.models import ScheduledTask, TaskDescriptor, make_task_id
from taskengine.scheduler.persistence import TaskPersistence
from taskengine.scheduler.stats import ExecutionLog, SchedulerStats
from taskengine.scheduler.store import TaskStore

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from taskengine.config import Settings
    from taskengine.scheduler.executor import ErrorReporter
    from taskengine.scheduler.handlers import HandlerRegistry
    from taskengine.scheduler.models import TaskStatus
    from taskengine.scheduler.stats import ExecutionRecord

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "scheduler-tick"
_PERSIST_JOB_ID = "scheduler-persist"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SchedulerEngine:
    """Schedules tasks and runs them when due, under a concurrency budget.

    Lifecycle: construct, ``await start()`` to load persisted tasks and
    begin ticking, ``await stop()`` to drain and take a final snapshot.
    Engines share no state, so several can coexist.

    Args:
        config: Settings to use (defaults to the process settings).
        registry: Handler registry for named and persisted handlers.
        error_reporter: Optional ``(error, context)`` callable told about
            handler failures.
        clock: Returns the current aware datetime (for tests).
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        registry: HandlerRegistry | None = None,
        error_reporter: ErrorReporter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or settings
        self._registry = registry if registry is not None else handlers
        self._clock = clock or _utcnow
        self._store = TaskStore()
        self._stats = SchedulerStats()
        self._log = ExecutionLog(maxlen=self._config.max_last_executions)
        self._persistence = (
            TaskPersistence(self._config.tasks_path) if self._config.persist_tasks else None
        )
        self._executor = TaskExecutor(
            self._store,
            self._stats,
            self._log,
            self._persistence,
            error_reporter=error_reporter,
            timezone=self._config.timezone,
            default_timeout=self._config.default_task_timeout,
            clock=self._clock,
        )
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def persistence(self) -> TaskPersistence | None:
        return self._persistence

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted tasks, then start the tick and persist jobs.

        Creates the tasks directory first. Raises TaskPersistenceError if that
        fails.
        """
        if self._running:
            return
        if self._persistence is not None:
            await asyncio.to_thread(self._persistence.ensure_directory)
            await self._load_persisted()

        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)
        self._add_job(self.tick, _TICK_JOB_ID, self._config.check_interval_seconds)
        if self._persistence is not None and self._config.persist_interval > 0:
            self._add_job(
                self._persist_sweep, _PERSIST_JOB_ID, self._config.persist_interval_seconds
            )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started with %d task(s) (tick=%dms, max_concurrent=%d)",
            len(self._store),
            self._config.check_interval,
            self._config.max_concurrent_tasks,
        )

    async def stop(self, *, drain: bool = True) -> None:
        """Stop ticking, wait for (or cancel) running handlers, persist a snapshot.

        Handlers started before ``start()`` (run-on-init) are handled too;
        the snapshot is only taken for a started engine.
        """
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        inflight = list(self._inflight)
        if inflight:
            if drain:
                logger.info("Waiting for %d running task(s)", len(inflight))
            else:
                for job in inflight:
                    job.cancel()
            await asyncio.gather(*inflight, return_exceptions=True)

        if not self._running:
            return
        if self._persistence is not None:
            try:
                await self.persist_tasks()
            except TaskPersistenceError:
                logger.warning("Final task snapshot failed")

        self._running = False
        logger.info("Scheduler stopped")

    # -- Task management -------------------------------------------------------

    async def schedule_task(
        self,
        descriptor: TaskDescriptor | Mapping[str, Any],
        *,
        persist: bool = False,
    ) -> str:
        """Validate and register a task. Returns its id.

        Raises ``TaskValidationError`` without registering anything if the
        descriptor is invalid.
        """
        task = self._build_task(descriptor, persist=persist)
        self._store.add(task)
        self._stats.record("scheduled", task.schedule_type, task.tags)
        logger.info(
            "Scheduled task: '%s' (%s) type=%s next=%s",
            task.name,
            task.id,
            task.schedule_type,
            task.next_execution.isoformat() if task.next_execution else "never",
        )

        if task.schedule.run_on_init:
            if self._has_capacity():
                self._dispatch(task)
            else:
                task.next_execution = self._clock()
                logger.debug(
                    "No free slot for '%s' (%s); due on the next tick", task.name, task.id
                )
        if task.persist:
            await self._executor.persist(task)
        return task.id

    async def cancel_task(self, task_id: str) -> bool:
        """Stop future runs of a task. Returns False if there was nothing to cancel.

        A running handler is not interrupted; the task is removed once it
        returns.
        """
        task = self._store.get(task_id)
        if task is None or task.cancel_requested:
            return False

        task.cancel_requested = True
        if task.is_running:
            logger.info("Task '%s' (%s) is running; removing it when done", task.name, task_id)
        else:
            self._store.remove(task_id)
        self._stats.record("cancelled", task.schedule_type, task.tags)

        if task.persist:
            await self._executor.unpersist(task_id)
        logger.info("Cancelled task: '%s' (%s)", task.name, task_id)
        return True

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Snapshot of a task, or None if not found."""
        task = self._store.get(task_id)
        return task.to_dict() if task else None

    def get_all_tasks(
        self,
        *,
        schedule_type: str | None = None,
        tag: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> list[dict[str, Any]]:
        """Snapshots of all tasks matching the given filters."""
        tasks = self._store.list_tasks(schedule_type=schedule_type, tag=tag, status=status)
        return [t.to_dict() for t in tasks]

    async def execute_task(self, task_id: str, extra_data: dict[str, Any] | None = None) -> Any:
        """Run a task now, outside its schedule, and return the handler's result.

        Goes through the same path as a scheduled run. When every slot is
        taken, waits for a running task to finish first. Raises
        ``TaskNotFoundError``, ``TaskRunningError``, or ``TaskHandlerError``.
        """
        task = self._store.require(task_id)
        if task.is_running:
            raise TaskRunningError(task_id)
        logger.info("Manual run requested: '%s' (%s)", task.name, task_id)
        while not self._has_capacity():
            await self._executor.wait_for_slot()
            # Cancelled or started while waiting
            task = self._store.require(task_id)
            if task.is_running:
                raise TaskRunningError(task_id)
        return await self._executor.execute(task, extra_data)

    async def persist_tasks(self) -> int:
        """Write every persisted task to disk. Returns how many were written.

        Raises ``TaskPersistenceError`` on the first failure.
        """
        if self._persistence is None:
            return 0
        tasks = self._store.persisted()
        try:
            for task in tasks:
                await self._executor.save(task)
        except TaskPersistenceError:
            logger.exception("Failed to persist tasks")
            raise
        logger.debug("Persisted %d task(s)", len(tasks))
        return len(tasks)

    # -- Diagnostics -----------------------------------------------------------

    def get_statistics(self) -> dict[str, Any]:
        return {
            "tasks": len(self._store),
            "running": len(self._executor.running),
            **self._stats.as_dict(),
        }

    def get_last_executions(self, count: int = 10) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self._log.recent(count)]

    # -- Tick loop -------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Admit due tasks up to the concurrency budget. Returns the admitted ids.

        Handlers are started in the background; the tick never waits on them.
        """
        for task in self._store.exhausted():
            self._store.remove(task.id)
            logger.info("Removed exhausted task: '%s' (%s)", task.name, task.id)
            if task.persist:
                await self._executor.unpersist(task.id)

        now = now or self._clock()
        due = self._store.due(now)
        if not due:
            return []

        running = len(self._executor.running)
        budget = self._config.max_concurrent_tasks - running
        admitted = due[: max(budget, 0)]
        for task in admitted:
            self._dispatch(task)
        if len(due) > len(admitted):
            logger.debug(
                "Deferred %d due task(s) to the next tick (%d running, limit %d)",
                len(due) - len(admitted),
                running + len(admitted),
                self._config.max_concurrent_tasks,
            )
        return [task.id for task in admitted]

    # -- Internal --------------------------------------------------------------

    def _has_capacity(self) -> bool:
        return len(self._executor.running) < self._config.max_concurrent_tasks

    def _add_job(self, func: Callable, job_id: str, seconds: float) -> None:
        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def _dispatch(self, task: ScheduledTask) -> asyncio.Task:
        """Mark *task* running and start its handler in the background."""
        record = self._executor.begin(task)
        job = asyncio.create_task(self._run_in_background(task, record), name=f"task:{task.id}")
        self._inflight.add(job)
        job.add_done_callback(self._inflight.discard)
        return job

    async def _run_in_background(self, task: ScheduledTask, record: ExecutionRecord) -> None:
        # Failures are already counted, logged, and reported by the executor
        with contextlib.suppress(TaskHandlerError):
            await self._executor.run(task, record)

    async def _persist_sweep(self) -> None:
        try:
            await self.persist_tasks()
        except TaskPersistenceError:
            logger.warning("Persist sweep failed; retrying on the next sweep")

    async def _load_persisted(self) -> None:
        try:
            tasks = await asyncio.to_thread(self._persistence.load_all, self._registry)
        except OSError:
            logger.exception("Failed to load persisted tasks from %s", self._persistence.root)
            return

        now = self._clock()
        overdue = 0
        for task in tasks:
            if task.id in self._store:
                logger.warning("Persisted task %s is already scheduled; skipping", task.id)
                continue
            self._store.add(task)
            self._stats.record("scheduled", task.schedule_type, task.tags)
            if task.next_execution is not None and task.next_execution <= now:
                overdue += 1
        if overdue:
            logger.info("%d persisted task(s) are overdue and will run on the next tick", overdue)

    def _build_task(
        self,
        descriptor: TaskDescriptor | Mapping[str, Any],
        *,
        persist: bool,
    ) -> ScheduledTask:
        """Validate *descriptor* and build the task record. Raises TaskValidationError."""
        if not isinstance(descriptor, TaskDescriptor):
            try:
                descriptor = TaskDescriptor.model_validate(dict(descriptor))
            except (ValidationError, TypeError, ValueError) as exc:
                msg = f"Invalid task descriptor: {exc}"
                raise TaskValidationError(msg) from exc

        if isinstance(descriptor.handler, str):
            try:
                handler, handler_ref = self._registry.resolve_name(descriptor.handler)
            except HandlerResolutionError as exc:
                raise TaskValidationError(str(exc)) from exc
        else:
            handler = descriptor.handler
            handler_ref = self._registry.reference_for(handler)

        if persist and handler_ref is None:
            msg = (
                f"Task '{descriptor.name}' is persisted but its handler is not a "
                "module-level function or registered handler"
            )
            raise TaskValidationError(msg)

        task_id = descriptor.id or make_task_id()
        if task_id in self._store:
            msg = f"Task id already scheduled: {task_id}"
            raise TaskValidationError(msg)

        now = self._clock()
        try:
            next_execution = next_due(descriptor.schedule, now, timezone=self._config.timezone)
        except OverflowError as exc:
            msg = f"Task '{descriptor.name}' has no representable next run: {exc}"
            raise TaskValidationError(msg) from exc
        return ScheduledTask(
            id=task_id,
            name=descriptor.name,
            handler=handler,
            schedule=descriptor.schedule,
            handler_ref=handler_ref,
            data=dict(descriptor.data),
            tags=list(descriptor.tags),
            next_execution=next_execution,
            created_at=now,
            updated_at=now,
            persist=persist,
            timeout=descriptor.timeout,
        )
