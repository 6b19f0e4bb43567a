"""Scheduler settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """taskengine configuration. Values come from ``SCHEDULER_*`` variables.

    Intervals are in milliseconds, timeouts in seconds.
    """

    # Persistence
    tasks_path: Path = Field(default=Path("data/tasks"))
    persist_tasks: bool = Field(default=True)
    persist_interval: int = Field(default=60000, ge=0)

    # Tick loop
    check_interval: int = Field(default=1000, gt=0)
    max_concurrent_tasks: int = Field(default=10, ge=1)
    default_task_timeout: float | None = Field(default=None, gt=0)

    # Modules imported at startup so persisted handlers can be resolved
    handler_modules: str = Field(default="")

    # Cron evaluation
    timezone: str = Field(default="UTC")

    # Diagnostics
    max_last_executions: int = Field(default=50, ge=1)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=_env_file(),
        env_file_encoding="utf-8",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_handler_modules(self) -> list[str]:
        """Parse HANDLER_MODULES into a list of importable module names."""
        if not self.handler_modules.strip():
            return []
        return [name.strip() for name in self.handler_modules.split(",") if name.strip()]

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval / 1000

    @property
    def persist_interval_seconds(self) -> float:
        return self.persist_interval / 1000


settings = Settings()
