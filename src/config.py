"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Scheduling
    scheduler_timezone: str = Field(default="Europe/Rome")
    scanner_tick_seconds: int = Field(default=60, ge=1)
    cron_search_horizon_days: int = Field(default=1462, ge=1)

    # Dispatch
    dispatch_concurrency: int = Field(default=5, ge=1)
    dispatch_rate_per_second: int = Field(default=10, ge=1)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_seconds: float = Field(default=60.0, gt=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=3600.0, gt=0)

    # Database
    database_path: Path = Field(default=Path("data/scheduler.db"))

    # Telegram
    telegram_bot_token: str = Field(default="")
    owner_chat_id: str = Field(default="")

    # Notifications
    default_notification_channel: str = Field(default="telegram")

    # Admin API
    admin_port: int = Field(default=8443)
    admin_secret: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=_env_file(), env_file_encoding="utf-8", extra="forbid"
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


settings = Settings()
