"""TaskPersistence: one JSON file per persisted task."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError

from taskengine.scheduler.errors import HandlerResolutionError, TaskPersistenceError
from taskengine.scheduler.models import HandlerRef, Schedule, ScheduledTask, TaskStatus

if TYPE_CHECKING:
    from taskengine.scheduler.handlers import HandlerRegistry

logger = logging.getLogger(__name__)

_SAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9._\-]")


class PersistedTask(BaseModel):
    """On-disk form of a ScheduledTask. The handler is stored by address."""

    id: str
    name: str
    handler_module: str
    handler_function: str
    data: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    schedule: Schedule
    next_execution: datetime | None = None
    last_execution: datetime | None = None
    created_at: datetime
    updated_at: datetime
    execution_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    status: TaskStatus = TaskStatus.SCHEDULED
    persist: bool = True
    timeout: float | None = None

    @classmethod
    def from_task(cls, task: ScheduledTask) -> PersistedTask:
        if task.handler_ref is None:
            msg = f"Task '{task.name}' ({task.id}) has no statically addressable handler"
            raise TaskPersistenceError(msg)
        return cls(
            id=task.id,
            name=task.name,
            handler_module=task.handler_ref.module,
            handler_function=task.handler_ref.function,
            data=task.data,
            tags=task.tags,
            schedule=task.schedule,
            next_execution=task.next_execution,
            last_execution=task.last_execution,
            created_at=task.created_at,
            updated_at=task.updated_at,
            execution_count=task.execution_count,
            failure_count=task.failure_count,
            status=task.status,
            persist=True,
            timeout=task.timeout,
        )

    def to_task(self, registry: HandlerRegistry) -> ScheduledTask:
        """Rebuild a live task, re-resolving its handler. Status resets to scheduled."""
        handler = registry.resolve(self.handler_module, self.handler_function)
        return ScheduledTask(
            id=self.id,
            name=self.name,
            handler=handler,
            schedule=self.schedule,
            handler_ref=HandlerRef(self.handler_module, self.handler_function),
            data=dict(self.data),
            tags=list(self.tags),
            next_execution=self.next_execution,
            last_execution=self.last_execution,
            created_at=self.created_at,
            updated_at=self.updated_at,
            execution_count=self.execution_count,
            failure_count=self.failure_count,
            status=TaskStatus.SCHEDULED,
            persist=True,
            timeout=self.timeout,
        )


class TaskPersistence:
    """Stores persisted tasks as ``<id>.json`` files under *root*.

    All methods are synchronous; the engine runs them through
    ``asyncio.to_thread()``.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure_directory(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Cannot create tasks directory {self._root}: {exc}"
            raise TaskPersistenceError(msg) from exc

    def path_for(self, task_id: str) -> Path:
        """File path for *task_id*, with unsafe characters replaced.

        A rewritten id gets a short hash of the raw id appended, so two ids
        never share a file.
        """
        safe = _SAFE_FILENAME_RE.sub("_", task_id).lstrip(".")[:200] or "_"
        if safe != task_id:
            digest = hashlib.sha256(task_id.encode("utf-8")).hexdigest()[:12]
            safe = f"{safe}-{digest}"
        return self._root / f"{safe}.json"

    # -- Save / delete ---------------------------------------------------------

    def save(self, task: ScheduledTask) -> Path:
        """Write *task* atomically. Raises TaskPersistenceError on failure."""
        try:
            payload = PersistedTask.from_task(task).model_dump_json(indent=2)
        except (PydanticSerializationError, ValidationError) as exc:
            msg = f"Cannot serialize task '{task.name}' ({task.id}): {exc}"
            raise TaskPersistenceError(msg) from exc

        self.ensure_directory()
        target = self.path_for(task.id)
        tmp_path: Path | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-", suffix=".json")
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            tmp_path.replace(target)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            msg = f"Cannot write task file {target}: {exc}"
            raise TaskPersistenceError(msg) from exc
        logger.debug("Persisted task %s to %s", task.id, target)
        return target

    def delete(self, task_id: str) -> bool:
        """Delete the file for *task_id*. Returns True if a file was removed."""
        target = self.path_for(task_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            msg = f"Cannot delete task file {target}: {exc}"
            raise TaskPersistenceError(msg) from exc
        logger.debug("Deleted persisted task %s", task_id)
        return True

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).exists()

    # -- Load ------------------------------------------------------------------

    def load_all(self, registry: HandlerRegistry) -> list[ScheduledTask]:
        """Load every persisted task whose handler still resolves.

        Unreadable files, invalid records, and unresolvable handlers are
        skipped with a warning.
        """
        if not self._root.is_dir():
            return []

        tasks: list[ScheduledTask] = []
        for path in sorted(self._root.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                record = PersistedTask.model_validate_json(path.read_text("utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping unreadable task file %s: %s", path.name, exc)
                continue
            try:
                tasks.append(record.to_task(registry))
            except HandlerResolutionError as exc:
                logger.warning("Skipping task %s (%s): %s", record.id, record.name, exc)
        logger.info("Loaded %d persisted task(s) from %s", len(tasks), self._root)
        return tasks
