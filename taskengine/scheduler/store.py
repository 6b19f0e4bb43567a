"""TaskStore: in-memory registry of scheduled task records."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskengine.scheduler.errors import TaskNotFoundError, TaskValidationError
from taskengine.scheduler.models import TaskStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from taskengine.scheduler.models import ScheduledTask


class TaskStore:
    """Owns every live ScheduledTask, keyed by id.

    One store per SchedulerEngine. Iteration follows insertion order, which
    is also the order due tasks are admitted in.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ScheduledTask] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[ScheduledTask]:
        return iter(list(self._tasks.values()))

    # -- CRUD ------------------------------------------------------------------

    def add(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a new task. Raises TaskValidationError on a duplicate id."""
        if task.id in self._tasks:
            msg = f"Task id already scheduled: {task.id}"
            raise TaskValidationError(msg)
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> ScheduledTask | None:
        """Fetch a task by ID, or None if not found."""
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> ScheduledTask:
        """Fetch a task by ID. Raises TaskNotFoundError if absent."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def remove(self, task_id: str) -> ScheduledTask | None:
        """Remove and return a task, or None if it was not present."""
        return self._tasks.pop(task_id, None)

    def clear(self) -> None:
        self._tasks.clear()

    # -- Queries ---------------------------------------------------------------

    def list_tasks(
        self,
        *,
        schedule_type: str | None = None,
        tag: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> list[ScheduledTask]:
        """Return tasks matching every given filter."""
        tasks = list(self._tasks.values())
        if schedule_type:
            tasks = [t for t in tasks if t.schedule_type == schedule_type]
        if tag:
            tasks = [t for t in tasks if tag in t.tags]
        if status:
            wanted = TaskStatus(status)
            tasks = [t for t in tasks if t.status is wanted]
        return tasks

    def due(self, now: datetime) -> list[ScheduledTask]:
        """Scheduled tasks whose next execution is at or before *now*."""
        return [t for t in self._tasks.values() if t.is_due(now)]

    def exhausted(self) -> list[ScheduledTask]:
        """Idle tasks with no further execution time."""
        return [
            t
            for t in self._tasks.values()
            if t.is_exhausted and t.status is TaskStatus.SCHEDULED
        ]

    def persisted(self) -> list[ScheduledTask]:
        """Tasks flagged for durable storage."""
        return [t for t in self._tasks.values() if t.persist and not t.cancel_requested]
