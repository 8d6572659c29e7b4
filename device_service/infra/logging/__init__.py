"""Logging infrastructure.

Structured JSONL logging with contextvar injection and a non-blocking
QueueHandler/QueueListener pipeline.

Basic usage:
    from device_service.infra.logging import set_log_context
    import logging

    logger = logging.getLogger(__name__)
    set_log_context(connection_id="c-1", user_id="u-7")
    logger.info("Connection registered")  # includes connection_id and user_id
"""

from device_service.infra.logging.config import configure_logging, setup_logging, shutdown
from device_service.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    set_log_context,
)
from device_service.infra.logging.formatters import JSONFormatter
from device_service.infra.logging.lazy import LazyLoggerAdapter, get_lazy_logger

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "LazyLoggerAdapter",
    "clear_log_context",
    "configure_logging",
    "get_lazy_logger",
    "get_log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
