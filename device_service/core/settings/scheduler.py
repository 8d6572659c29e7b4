"""Background reaper scheduling settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerSettings(BaseSettings):
    """APScheduler reaper configuration.

    Environment variables use SCHEDULER_ prefix.
    Example: SCHEDULER_TOKEN_SWEEP_INTERVAL_SECONDS=3600
    """

    enabled: bool = Field(
        default=True,
        description="Run the background reaper jobs in this process",
    )

    token_sweep_interval_seconds: int = Field(
        default=3600,
        ge=10,
        le=86400,
        description="Interval between purges of expired blacklist entries and refresh tokens",
    )

    connection_prune_interval_seconds: int = Field(
        default=300,
        ge=5,
        le=86400,
        description="Interval between sweeps for idle realtime connections",
    )

    misfire_grace_time: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Seconds a late job may still start before it counts as missed",
    )

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
