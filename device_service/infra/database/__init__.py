"""Database infrastructure: engine, session factory and startup helpers."""

from device_service.infra.database.session import (
    close_database,
    create_engine_from_settings,
    create_session_factory,
    init_database,
    session_scope,
)

__all__ = [
    "close_database",
    "create_engine_from_settings",
    "create_session_factory",
    "init_database",
    "session_scope",
]
