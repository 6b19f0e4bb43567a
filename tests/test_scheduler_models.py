"""Tests for schedule models, the task descriptor, and ScheduledTask."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from taskengine.scheduler.models import (
    CronSchedule,
    DateSchedule,
    HandlerRef,
    ImmediateSchedule,
    IntervalSchedule,
    ScheduledTask,
    TaskDescriptor,
    TaskStatus,
    make_task_id,
)


def noop(context: dict) -> None:
    return None


def _descriptor(**overrides) -> dict:
    data = {
        "name": "Rotate presence",
        "handler": noop,
        "schedule": {"type": "interval", "interval": 30000},
    }
    data.update(overrides)
    return data


def _make_task(task_id: str = "task1", **kwargs) -> ScheduledTask:
    defaults = {
        "name": "Test Task",
        "handler": noop,
        "schedule": IntervalSchedule(interval=1000),
    }
    defaults.update(kwargs)
    return ScheduledTask(id=task_id, **defaults)


# -- Schedules -----------------------------------------------------------------


def test_schedule_discriminator() -> None:
    descriptor = TaskDescriptor.model_validate(
        _descriptor(schedule={"type": "cron", "cron": "0 3 * * *"})
    )
    assert isinstance(descriptor.schedule, CronSchedule)
    assert descriptor.schedule.cron == "0 3 * * *"


def test_immediate_schedule() -> None:
    descriptor = TaskDescriptor.model_validate(_descriptor(schedule={"type": "immediate"}))
    assert isinstance(descriptor.schedule, ImmediateSchedule)
    assert descriptor.schedule.run_on_init is False


def test_date_schedule_accepts_iso_string() -> None:
    schedule = DateSchedule(date="2025-06-01T09:00:00+00:00")
    assert schedule.date == datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


def test_naive_date_is_utc() -> None:
    schedule = DateSchedule(date=datetime(2025, 6, 1, 9, 0))
    assert schedule.date.tzinfo is UTC


def test_date_normalized_to_utc() -> None:
    plus_two = timezone(timedelta(hours=2))
    schedule = DateSchedule(date=datetime(2025, 6, 1, 11, 0, tzinfo=plus_two))
    assert schedule.date == datetime(2025, 6, 1, 9, 0, tzinfo=UTC)
    assert schedule.date.tzinfo is UTC


def test_schedule_is_frozen() -> None:
    schedule = IntervalSchedule(interval=1000)
    with pytest.raises(ValidationError):
        schedule.interval = 5


def test_cron_timezone_validated() -> None:
    with pytest.raises(ValidationError):
        CronSchedule(cron="0 9 * * *", timezone="Mars/Olympus_Mons")


def test_cron_with_timezone() -> None:
    schedule = CronSchedule(cron="0 9 * * *", timezone="America/Chicago")
    assert schedule.timezone == "America/Chicago"


def test_cron_sunday_as_seven() -> None:
    assert CronSchedule(cron="0 9 * * 7").cron == "0 9 * * 7"


def test_cron_weekday_out_of_range() -> None:
    with pytest.raises(ValidationError):
        CronSchedule(cron="0 9 * * 8")


# -- Descriptor validation -----------------------------------------------------


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"name": "   "},
        {"handler": 42},
        {"schedule": {"type": "weekly"}},
        {"schedule": {}},
        {"schedule": {"type": "interval"}},
        {"schedule": {"type": "interval", "interval": 0}},
        {"schedule": {"type": "interval", "interval": -5}},
        {"schedule": {"type": "interval", "interval": True}},
        {"schedule": {"type": "interval", "interval": "often"}},
        {"schedule": {"type": "cron"}},
        {"schedule": {"type": "cron", "cron": ""}},
        {"schedule": {"type": "cron", "cron": "every day"}},
        {"schedule": {"type": "date"}},
        {"timeout": 0},
    ],
)
def test_invalid_descriptor(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        TaskDescriptor.model_validate(_descriptor(**overrides))


def test_descriptor_defaults() -> None:
    descriptor = TaskDescriptor.model_validate(_descriptor())
    assert descriptor.id is None
    assert descriptor.data == {}
    assert descriptor.tags == []
    assert descriptor.timeout is None


def test_descriptor_strips_name() -> None:
    descriptor = TaskDescriptor.model_validate(_descriptor(name="  Backup  "))
    assert descriptor.name == "Backup"


def test_descriptor_accepts_handler_name() -> None:
    descriptor = TaskDescriptor.model_validate(_descriptor(handler="jobs.backup:run"))
    assert descriptor.handler == "jobs.backup:run"


def test_descriptor_dedupes_tags() -> None:
    descriptor = TaskDescriptor.model_validate(_descriptor(tags=["db", "nightly", "db", ""]))
    assert descriptor.tags == ["db", "nightly"]


def test_run_on_init_flag() -> None:
    descriptor = TaskDescriptor.model_validate(
        _descriptor(schedule={"type": "interval", "interval": 1000, "run_on_init": True})
    )
    assert descriptor.schedule.run_on_init is True


# -- HandlerRef ----------------------------------------------------------------


def test_handler_ref_parse_colon() -> None:
    ref = HandlerRef.parse("jobs.backup:run")
    assert ref == HandlerRef("jobs.backup", "run")
    assert ref.key == "jobs.backup:run"


def test_handler_ref_parse_dotted() -> None:
    assert HandlerRef.parse("jobs.backup.run") == HandlerRef("jobs.backup", "run")


def test_handler_ref_parse_invalid() -> None:
    with pytest.raises(ValueError, match="module:function"):
        HandlerRef.parse("run")


# -- ScheduledTask -------------------------------------------------------------


def test_task_defaults() -> None:
    task = _make_task()
    assert task.status is TaskStatus.SCHEDULED
    assert task.execution_count == 0
    assert task.failure_count == 0
    assert task.persist is False
    assert task.next_execution is None
    assert task.created_at.tzinfo is not None


def test_task_schedule_type() -> None:
    assert _make_task(schedule=ImmediateSchedule()).schedule_type == "immediate"


def test_is_due() -> None:
    now = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
    task = _make_task(next_execution=now)
    assert task.is_due(now) is True
    assert task.is_due(now - timedelta(seconds=1)) is False

    task.status = TaskStatus.RUNNING
    assert task.is_due(now) is False


def test_exhausted_task_never_due() -> None:
    task = _make_task(next_execution=None)
    assert task.is_exhausted is True
    assert task.is_due(datetime(2100, 1, 1, tzinfo=UTC)) is False


def test_to_dict_hides_handler() -> None:
    task = _make_task(data={"channel": "general"}, tags=["presence"])
    snapshot = task.to_dict()
    assert snapshot["handler"] == "<callable>"
    assert snapshot["data"] == {"channel": "general"}
    assert snapshot["schedule"] == {"run_on_init": False, "type": "interval", "interval": 1000.0}
    assert snapshot["status"] == "scheduled"


def test_to_dict_shows_handler_ref() -> None:
    task = _make_task(handler_ref=HandlerRef("jobs", "noop"))
    assert task.to_dict()["handler"] == "jobs:noop"


def test_to_dict_is_a_copy() -> None:
    task = _make_task(data={"a": 1}, tags=["x"])
    snapshot = task.to_dict()
    snapshot["data"]["a"] = 2
    snapshot["tags"].append("y")
    assert task.data == {"a": 1}
    assert task.tags == ["x"]


def test_make_task_id_unique() -> None:
    ids = {make_task_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(i) == 32 for i in ids)
