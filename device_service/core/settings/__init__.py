"""Modular Pydantic Settings v2 configuration.

One frozen settings class per concern, each with its own env prefix:
- APP_ (application), AUTH_ (tokens and lockout), DB_ (token store)
- REALTIME_ (WebSocket/SSE gateway), SCHEDULER_ (reaper), LOG_ (logging)

Import settings via cached loaders:
    from device_service.core.settings import get_realtime_settings

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. Environment variables (production)
    3. .env file (development only)
"""

from __future__ import annotations

from .app import AppSettings
from .auth import AuthSettings
from .loader import (
    clear_all_caches,
    get_app_settings,
    get_auth_settings,
    get_db_settings,
    get_logging_settings,
    get_realtime_settings,
    get_scheduler_settings,
)
from .logs import LoggingSettings
from .postgres import PostgresSettings
from .realtime import RealtimeSettings
from .scheduler import SchedulerSettings

__all__ = [
    "AppSettings",
    "AuthSettings",
    "LoggingSettings",
    "PostgresSettings",
    "RealtimeSettings",
    "SchedulerSettings",
    "clear_all_caches",
    "get_app_settings",
    "get_auth_settings",
    "get_db_settings",
    "get_logging_settings",
    "get_realtime_settings",
    "get_scheduler_settings",
]
