"""Scheduler exceptions."""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for every error raised by the scheduler."""


class TaskValidationError(SchedulerError, ValueError):
    """A task descriptor was rejected at registration."""


class TaskNotFoundError(SchedulerError, LookupError):
    """No task with the given id is scheduled."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskRunningError(SchedulerError):
    """The task is already executing and cannot be started again."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task is already running: {task_id}")


class TaskTimeoutError(SchedulerError, TimeoutError):
    """A handler did not finish within its deadline."""


class TaskHandlerError(SchedulerError):
    """Wraps an exception raised by a task handler.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, task_id: str, task_name: str, error: BaseException) -> None:
        self.task_id = task_id
        self.task_name = task_name
        self.error = error
        super().__init__(f"Task '{task_name}' ({task_id}) failed: {error}")


class TaskPersistenceError(SchedulerError, OSError):
    """Saving, deleting, or loading a persisted task failed."""


class HandlerResolutionError(SchedulerError, LookupError):
    """A handler name could not be resolved to a callable."""
