"""Scheduler statistics and the recent-execution audit log."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from itertools import islice
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

COUNTERS = ("scheduled", "executed", "failed", "cancelled")

DEFAULT_MAX_LAST_EXECUTIONS = 50


def _empty_counters() -> dict[str, int]:
    return dict.fromkeys(COUNTERS, 0)


@dataclass
class SchedulerStats:
    """Outcome counters, in total and grouped by schedule type and by tag."""

    scheduled: int = 0
    executed: int = 0
    failed: int = 0
    cancelled: int = 0
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)
    by_tag: dict[str, dict[str, int]] = field(default_factory=dict)

    def record(self, event: str, schedule_type: str, tags: Iterable[str] = ()) -> None:
        """Count one *event* (``scheduled``, ``executed``, ...) for a task."""
        if event not in COUNTERS:
            msg = f"Unknown statistics event: {event}"
            raise ValueError(msg)
        setattr(self, event, getattr(self, event) + 1)
        self.by_type.setdefault(schedule_type, _empty_counters())[event] += 1
        for tag in tags:
            self.by_tag.setdefault(tag, _empty_counters())[event] += 1

    def as_dict(self) -> dict[str, Any]:
        """Deep copy of all counters."""
        return asdict(self)

    def reset(self) -> None:
        for name in COUNTERS:
            setattr(self, name, 0)
        self.by_type.clear()
        self.by_tag.clear()


@dataclass
class ExecutionRecord:
    """One run attempt, kept for diagnostics."""

    task_id: str
    task_name: str
    schedule_type: str
    execution_count: int
    scheduled_at: datetime | None
    executed_at: datetime
    status: str = "running"
    finished_at: datetime | None = None
    duration_ms: float | None = None
    error: str | None = None

    def finish(self, duration_ms: float, error: BaseException | None = None) -> None:
        self.finished_at = datetime.now(UTC)
        self.duration_ms = round(duration_ms, 3)
        if error is None:
            self.status = "success"
        else:
            self.status = "failed"
            self.error = f"{type(error).__name__}: {error}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExecutionLog:
    """Bounded ring of the most recent execution records, newest first."""

    def __init__(self, maxlen: int = DEFAULT_MAX_LAST_EXECUTIONS) -> None:
        self._records: deque[ExecutionRecord] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: ExecutionRecord) -> ExecutionRecord:
        self._records.appendleft(record)
        return record

    def recent(self, count: int = 10) -> list[ExecutionRecord]:
        return list(islice(self._records, max(count, 0)))

    def clear(self) -> None:
        self._records.clear()
