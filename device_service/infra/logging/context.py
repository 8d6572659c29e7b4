"""Context management for structured logging.

Fields set here ride along on every log record emitted from the same
asyncio task, so a WebSocket session can tag all of its logs with its
connection id without passing it around.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any

# Each asyncio task sees its own copy
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Add fields to the logging context of the current task.

    Example:
        ```python
        set_log_context(connection_id="c-123", user_id="u-42")
        logger.info("Subscribed")  # record carries connection_id and user_id
        ```
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the current logging context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Drop every field from the current logging context."""
    _log_context.set({})


class ContextInjectingFilter(logging.Filter):
    """Copy the contextvar fields onto each LogRecord.

    Installed on the root logger by configure_logging(), so JSONFormatter
    sees the fields without any change at call sites.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
