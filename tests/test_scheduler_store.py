"""Tests for TaskStore: in-memory task records."""

from datetime import UTC, datetime, timedelta

import pytest

from taskengine.scheduler.errors import TaskNotFoundError, TaskValidationError
from taskengine.scheduler.models import (
    CronSchedule,
    DateSchedule,
    IntervalSchedule,
    ScheduledTask,
    TaskStatus,
)
from taskengine.scheduler.store import TaskStore

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


def noop(context: dict) -> None:
    return None


def _make_task(task_id: str = "task1", **kwargs) -> ScheduledTask:
    defaults = {
        "name": "Test Task",
        "handler": noop,
        "schedule": IntervalSchedule(interval=1000),
        "next_execution": NOW,
    }
    defaults.update(kwargs)
    return ScheduledTask(id=task_id, **defaults)


@pytest.fixture
def store() -> TaskStore:
    return TaskStore()


# -- CRUD ----------------------------------------------------------------------


def test_add_and_get(store: TaskStore) -> None:
    task = store.add(_make_task())
    assert store.get("task1") is task
    assert "task1" in store
    assert len(store) == 1


def test_add_duplicate(store: TaskStore) -> None:
    store.add(_make_task())
    with pytest.raises(TaskValidationError, match="task1"):
        store.add(_make_task())


def test_get_missing(store: TaskStore) -> None:
    assert store.get("nope") is None


def test_require_missing(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError) as exc_info:
        store.require("nope")
    assert exc_info.value.task_id == "nope"


def test_remove(store: TaskStore) -> None:
    task = store.add(_make_task())
    assert store.remove("task1") is task
    assert store.remove("task1") is None
    assert len(store) == 0


def test_clear(store: TaskStore) -> None:
    store.add(_make_task("a"))
    store.add(_make_task("b"))
    store.clear()
    assert len(store) == 0


def test_iteration_is_a_snapshot(store: TaskStore) -> None:
    store.add(_make_task("a"))
    store.add(_make_task("b"))
    for task in store:
        store.remove(task.id)
    assert len(store) == 0


# -- Queries -------------------------------------------------------------------


def test_list_by_type(store: TaskStore) -> None:
    store.add(_make_task("a"))
    store.add(_make_task("b", schedule=CronSchedule(cron="0 9 * * *")))
    assert [t.id for t in store.list_tasks(schedule_type="cron")] == ["b"]


def test_list_by_tag(store: TaskStore) -> None:
    store.add(_make_task("a", tags=["db"]))
    store.add(_make_task("b", tags=["presence"]))
    assert [t.id for t in store.list_tasks(tag="db")] == ["a"]


def test_list_by_status(store: TaskStore) -> None:
    store.add(_make_task("a"))
    store.add(_make_task("b", status=TaskStatus.RUNNING))
    assert [t.id for t in store.list_tasks(status="running")] == ["b"]
    assert [t.id for t in store.list_tasks(status=TaskStatus.SCHEDULED)] == ["a"]


def test_list_invalid_status(store: TaskStore) -> None:
    with pytest.raises(ValueError):
        store.list_tasks(status="paused")


def test_due_in_insertion_order(store: TaskStore) -> None:
    store.add(_make_task("c", next_execution=NOW - timedelta(seconds=1)))
    store.add(_make_task("a", next_execution=NOW))
    store.add(_make_task("later", next_execution=NOW + timedelta(seconds=1)))
    store.add(_make_task("busy", status=TaskStatus.RUNNING))
    store.add(_make_task("done", next_execution=None))
    assert [t.id for t in store.due(NOW)] == ["c", "a"]


def test_exhausted(store: TaskStore) -> None:
    store.add(_make_task("a"))
    store.add(
        _make_task("b", schedule=DateSchedule(date=NOW), next_execution=None)
    )
    store.add(_make_task("c", next_execution=None, status=TaskStatus.RUNNING))
    assert [t.id for t in store.exhausted()] == ["b"]


def test_persisted(store: TaskStore) -> None:
    store.add(_make_task("a", persist=True))
    store.add(_make_task("b"))
    store.add(_make_task("c", persist=True, cancel_requested=True))
    assert [t.id for t in store.persisted()] == ["a"]
