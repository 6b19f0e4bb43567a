"""Schedule evaluation: maps a schedule and "now" to the next due time."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from taskengine.scheduler.models import (
    CronSchedule,
    DateSchedule,
    ImmediateSchedule,
    IntervalSchedule,
    normalize_crontab,
)

if TYPE_CHECKING:
    from taskengine.scheduler.models import Schedule


@lru_cache(maxsize=256)
def _cron_trigger(expr: str, timezone: str) -> CronTrigger:
    return CronTrigger.from_crontab(normalize_crontab(expr), timezone=timezone)


def next_cron_time(expr: str, now: datetime, timezone: str = "UTC") -> datetime | None:
    """Return the first fire time of *expr* strictly after *now*, in UTC."""
    trigger = _cron_trigger(expr, timezone)
    local_now = now.astimezone(ZoneInfo(timezone))
    # CronTrigger is inclusive of its start time
    fire_time = trigger.get_next_fire_time(None, local_now + timedelta(microseconds=1))
    if fire_time is None:
        return None
    return fire_time.astimezone(UTC)


def next_due(
    schedule: Schedule,
    now: datetime,
    *,
    last_run: datetime | None = None,
    timezone: str = "UTC",
) -> datetime | None:
    """Compute when a task with *schedule* is next due.

    Pure and deterministic given its arguments. Returns ``None`` when the
    schedule has no further executions.

    Args:
        schedule: The task's schedule variant.
        now: Reference time (timezone-aware).
        last_run: When the task last started, or ``None`` if it never ran.
            Only immediate schedules look at it: they run exactly once.
        timezone: Fallback IANA timezone for cron schedules without one.
    """
    if isinstance(schedule, IntervalSchedule):
        return now + timedelta(milliseconds=schedule.interval)

    if isinstance(schedule, DateSchedule):
        return schedule.date if schedule.date > now else None

    if isinstance(schedule, ImmediateSchedule):
        return now if last_run is None else None

    if isinstance(schedule, CronSchedule):
        return next_cron_time(schedule.cron, now, schedule.timezone or timezone)

    return None
