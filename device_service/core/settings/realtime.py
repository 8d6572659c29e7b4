"""Realtime transport configuration settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RealtimeSettings(BaseSettings):
    """WebSocket and SSE gateway settings.

    Environment variables use REALTIME_ prefix.
    Example: REALTIME_HEARTBEAT_INTERVAL=30
    """

    # ──────────────────────────────────────────────────────────────
    # Connection limits
    # ──────────────────────────────────────────────────────────────

    max_connections: int = Field(
        default=10000,
        ge=1,
        le=100000,
        description="Maximum concurrent realtime connections per instance",
    )

    max_connections_per_user: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Maximum concurrent connections per user ID",
    )

    max_message_size: int = Field(
        default=65536,
        ge=1024,
        le=1048576,
        description="Maximum incoming WebSocket message size in bytes (default 64KB)",
    )

    # ──────────────────────────────────────────────────────────────
    # Delivery
    # ──────────────────────────────────────────────────────────────

    send_queue_size: int = Field(
        default=256,
        ge=1,
        le=100000,
        description="Outbound events buffered per connection before it counts as a slow consumer",
    )

    send_timeout: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="Seconds a single WebSocket send may take before the connection is dropped",
    )

    replay_capacity: int = Field(
        default=100,
        ge=1,
        le=100000,
        description="Number of recent events retained for reconnect replay",
    )

    registry_shards: int = Field(
        default=16,
        ge=1,
        le=1024,
        description="Lock shards per registry index",
    )

    # ──────────────────────────────────────────────────────────────
    # Heartbeat and idle handling
    # ──────────────────────────────────────────────────────────────

    heartbeat_interval: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Seconds of outbound silence before a keep-alive frame is sent",
    )

    idle_timeout: float = Field(
        default=7200.0,
        ge=60,
        le=86400,
        description="Connections without activity for this long are pruned by the reaper",
    )

    # ──────────────────────────────────────────────────────────────
    # Client operation rate limits
    # ──────────────────────────────────────────────────────────────

    rate_limit_operations: int = Field(
        default=100,
        ge=1,
        le=100000,
        description="Client-initiated operations allowed per window, per connection",
    )

    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Rate limit window length in seconds",
    )

    handshake_rate_limit: int = Field(
        default=30,
        ge=1,
        le=10000,
        description="Handshakes allowed per window, per client key",
    )

    rate_limit_storage_uri: str = Field(
        default="memory://",
        description="limits storage URI; redis://host:6379/0 shares counters between instances",
    )

    # ──────────────────────────────────────────────────────────────
    # Feature flags
    # ──────────────────────────────────────────────────────────────

    enabled: bool = Field(
        default=True,
        description="Enable WebSocket and SSE endpoints",
    )

    model_config = SettingsConfigDict(
        env_prefix="REALTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
