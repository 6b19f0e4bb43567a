"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import pytest

from taskengine.config import Settings
from taskengine.scheduler.handlers import HandlerRegistry


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> HandlerRegistry:
    """A private handler registry so tests never touch the global one."""
    return HandlerRegistry()


@pytest.fixture
def config(tmp_path) -> Settings:
    """In-memory scheduler settings; ticks are driven by the tests."""
    return Settings(
        tasks_path=tmp_path / "tasks",
        persist_tasks=False,
        check_interval=60000,
        persist_interval=0,
        max_concurrent_tasks=2,
    )


@pytest.fixture
def persistent_config(tmp_path) -> Settings:
    """Like ``config`` but with task files under ``tmp_path / "tasks"``."""
    return Settings(
        tasks_path=tmp_path / "tasks",
        persist_tasks=True,
        check_interval=60000,
        persist_interval=0,
        max_concurrent_tasks=2,
    )
