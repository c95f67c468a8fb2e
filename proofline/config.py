"""
Proofline settings.

Every value can come from the environment or a `.env` file next to this
module. Alarm timing knobs (overnight hours, adaptive check cadence, the
missed-alarm sweep) live here alongside the usual app and database options.
"""
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# .env is resolved relative to the package, not the working directory
_PACKAGE_DIR = Path(__file__).parent.resolve()


class Settings(BaseSettings):
    """Runtime configuration for the API, CLI and alarm jobs."""

    app_name: str = "Proofline API"
    app_version: str = "0.1.0"
    debug: bool = False

    log_level: str = "INFO"

    # Bedtime and wakeup alarms are computed in this IANA zone
    timezone: str = "UTC"

    database_url: str = "sqlite:///./proofline.db"

    # Database pool configuration (ignored for SQLite)
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_pre_ping: bool = True

    # Local frontends; set CORS_ORIGINS in production
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
    ]

    # Background jobs
    enable_background_jobs: bool = True
    missed_check_interval_minutes: int = 5  # How often the inactivity sweep runs
    missed_inactivity_threshold_minutes: int = 15  # Inactivity that counts as a missed alarm

    # Overnight alarms (local wall-clock hours in `timezone`)
    bedtime_hour: int = 22
    wakeup_hour: int = 7

    # Adaptive steps
    adaptive_check_default_interval_minutes: int = 30
    adaptive_check_max_alarms: int = 48

    # Analytics
    analytics_max_events_per_bake: int = 1000

    @field_validator("bedtime_hour", "wakeup_hour")
    @classmethod
    def hour_in_range(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError(f"hour must be between 0 and 23 (got {v})")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_exists(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{v}'")
        return v

    model_config = SettingsConfigDict(
        env_file=_PACKAGE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def get_settings(**overrides) -> Settings:
    """Settings from the environment with keyword overrides, e.g. ``get_settings(bedtime_hour=23)``."""
    return Settings(**overrides)


settings = get_settings()
