"""Runner settings loaded from environment variables."""

import os
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Hybrid runner configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/hybrid_runner.db"))

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")

    # Slot allocation
    base_slot_id: int = Field(default=10000)
    legacy_slot_id: int = Field(default=9999)

    # Timing
    periodic_floor_minutes: int = Field(default=15)
    immediate_delay_seconds: float = Field(default=1.0)

    # Durable work retries
    work_max_attempts: int = Field(default=3)
    work_backoff_seconds: float = Field(default=30.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

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

    @property
    def periodic_floor(self) -> timedelta:
        """Shortest frequency the periodic backup job may run at."""
        return timedelta(minutes=self.periodic_floor_minutes)

    @property
    def immediate_delay(self) -> timedelta:
        """Delay used for the first alarm when a task should run right away."""
        return timedelta(seconds=self.immediate_delay_seconds)

    @property
    def work_backoff(self) -> timedelta:
        return timedelta(seconds=self.work_backoff_seconds)


settings = Settings()
