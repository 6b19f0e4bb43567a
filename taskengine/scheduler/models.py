"""Task data models: schedules, descriptors, and the ScheduledTask record."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(StrEnum):
    SCHEDULED = "scheduled"
    RUNNING = "running"


class HandlerRef(NamedTuple):
    """Static address of a handler: importable module plus qualified name."""

    module: str
    function: str

    @property
    def key(self) -> str:
        return f"{self.module}:{self.function}"

    @classmethod
    def parse(cls, name: str) -> HandlerRef:
        """Parse ``"module:function"`` (or ``"module.function"``)."""
        if ":" in name:
            module, _, function = name.partition(":")
        else:
            module, _, function = name.rpartition(".")
        if not module or not function:
            msg = f"Handler name must look like 'module:function', got {name!r}"
            raise ValueError(msg)
        return cls(module, function)


# -- Schedules -----------------------------------------------------------------


class _BaseSchedule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    run_on_init: bool = False


# Crontab weekday numbers; APScheduler reads bare numbers as 0 = Monday
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _weekday_part(part: str) -> str:
    spec, _, step_text = part.partition("/")
    if spec == "*":
        if not step_text:
            return part
        start, end = 0, 6
    elif spec.isdigit():
        start = int(spec)
        end = 6 if step_text else start
    else:
        low, sep, high = spec.partition("-")
        if not (sep and low.isdigit() and high.isdigit()):
            return part
        start, end = int(low), int(high)

    if step_text and not step_text.isdigit():
        return part
    step = int(step_text) if step_text else 1
    if step < 1 or start > end or end > 7:
        # Left for CronTrigger to reject
        return part
    days = dict.fromkeys(_WEEKDAY_NAMES[day] for day in range(start, end + 1, step))
    return ",".join(days)


def normalize_crontab(expr: str) -> str:
    """Rewrite numeric day-of-week values (0 and 7 = Sunday) as day names.

    ``CronTrigger.from_crontab`` numbers weekdays from Monday, unlike cron.
    Expressions without five fields are returned unchanged.
    """
    fields = expr.split()
    if len(fields) != 5:
        return expr
    fields[4] = ",".join(_weekday_part(part) for part in fields[4].split(","))
    return " ".join(fields)


class CronSchedule(_BaseSchedule):
    """Five-field crontab, evaluated in *timezone* (scheduler default if unset)."""

    type: Literal["cron"] = "cron"
    cron: str = Field(min_length=1)
    timezone: str | None = None

    @field_validator("cron")
    @classmethod
    def _parse_cron(cls, value: str) -> str:
        value = value.strip()
        # Raises ValueError for malformed expressions
        CronTrigger.from_crontab(normalize_crontab(value), timezone="UTC")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"Unknown timezone: {value!r}"
            raise ValueError(msg) from exc
        return value


class IntervalSchedule(_BaseSchedule):
    """Recurs every *interval* milliseconds."""

    type: Literal["interval"] = "interval"
    interval: float = Field(gt=0, allow_inf_nan=False)

    @field_validator("interval", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            msg = "interval must be a number of milliseconds"
            raise ValueError(msg)
        return value


class DateSchedule(_BaseSchedule):
    """Runs once at *date*. Naive datetimes are taken as UTC."""

    type: Literal["date"] = "date"
    date: datetime

    @field_validator("date")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ImmediateSchedule(_BaseSchedule):
    """Runs once, on the first tick after registration."""

    type: Literal["immediate"] = "immediate"


Schedule = Annotated[
    CronSchedule | IntervalSchedule | DateSchedule | ImmediateSchedule,
    Field(discriminator="type"),
]

SCHEDULE_TYPES = ("cron", "interval", "date", "immediate")


class TaskDescriptor(BaseModel):
    """What a caller submits to ``SchedulerEngine.schedule_task``.

    *handler* is either a callable or a ``"module:function"`` name that is
    resolved through the handler registry.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    id: str | None = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    handler: Callable[..., Any] | str
    data: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    schedule: Schedule
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(tag for tag in value if tag))


# -- Task record ---------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ScheduledTask:
    """A task held by the TaskStore.

    Attributes:
        id: Unique identifier (UUID hex unless supplied by the caller).
        name: Human-readable name.
        handler: Callable invoked with a single context dict.
        schedule: Immutable schedule variant.
        handler_ref: Static address of *handler*, required for persistence.
        data: Payload merged into the execution context.
        tags: Labels used for statistics and filtering.
        next_execution: When the task is next due; ``None`` once exhausted.
        last_execution: When the most recent run attempt started.
        execution_count: Successful runs.
        failure_count: Failed runs (exceptions and timeouts).
        status: ``scheduled`` or ``running``.
        persist: Whether the record is written to the tasks directory.
        timeout: Per-run deadline in seconds.
    """

    id: str
    name: str
    handler: Callable[..., Any] = field(repr=False)
    schedule: CronSchedule | IntervalSchedule | DateSchedule | ImmediateSchedule
    handler_ref: HandlerRef | None = None
    data: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    next_execution: datetime | None = None
    last_execution: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    execution_count: int = 0
    failure_count: int = 0
    status: TaskStatus = TaskStatus.SCHEDULED
    persist: bool = False
    timeout: float | None = None
    # Set by cancel_task while the handler is still running
    cancel_requested: bool = field(default=False, repr=False)

    # -- Convenience properties ------------------------------------------------

    @property
    def schedule_type(self) -> str:
        return self.schedule.type

    @property
    def is_running(self) -> bool:
        return self.status is TaskStatus.RUNNING

    @property
    def is_exhausted(self) -> bool:
        return self.next_execution is None

    def is_due(self, now: datetime) -> bool:
        return (
            self.status is TaskStatus.SCHEDULED
            and self.next_execution is not None
            and self.next_execution <= now
        )

    # -- Views -----------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Read-only snapshot for callers. The live handler is never included."""
        return {
            "id": self.id,
            "name": self.name,
            "handler": self.handler_ref.key if self.handler_ref else "<callable>",
            "data": dict(self.data),
            "tags": list(self.tags),
            "schedule": self.schedule.model_dump(),
            "next_execution": self.next_execution,
            "last_execution": self.last_execution,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
            "status": str(self.status),
            "persist": self.persist,
            "timeout": self.timeout,
        }


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex
