"""Application lifespan management.

One lifespan context manager starts the service's components in dependency
order and stores them on ``app.state``; nothing lives in module globals.

Startup Order:
1. Core (logging, application info metric)
2. Database (token store engine, session factory, tables)
3. Token ledger
4. Realtime (hub, rate limiter, gateway, revocation listener)
5. Background reaper (APScheduler)

Shutdown Order: Reverse of startup.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from device_service.core.settings import (
    get_app_settings,
    get_auth_settings,
    get_db_settings,
    get_logging_settings,
    get_realtime_settings,
    get_scheduler_settings,
)
from device_service.features.auth.service import TokenLedger
from device_service.features.realtime.gateway import RealtimeGateway
from device_service.infra.database import (
    close_database,
    create_engine_from_settings,
    create_session_factory,
    init_database,
)
from device_service.infra.logging.config import setup_logging
from device_service.infra.logging.config import shutdown as shutdown_logging
from device_service.infra.metrics.prometheus import application_info
from device_service.infra.ratelimit import RateLimiter
from device_service.infra.realtime import create_realtime_hub
from device_service.infra.tasks import (
    create_scheduler,
    setup_scheduled_jobs,
    start_scheduler,
    stop_scheduler,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)


# =============================================================================
# Startup functions - organized by component
# =============================================================================


def _startup_core() -> None:
    """Configure logging and publish the application info metric."""
    app_settings = get_app_settings()

    setup_logging(log_settings=get_logging_settings(), force=True)
    logger.info(
        "Application starting",
        extra={"service": app_settings.service_name, "environment": app_settings.environment},
    )

    application_info.info(
        {
            "version": app_settings.version,
            "service": app_settings.service_name,
            "environment": app_settings.environment,
        }
    )


async def _startup_database(app: FastAPI) -> None:
    """Create the token store engine and session factory."""
    db = get_db_settings()

    engine = create_engine_from_settings(db)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    try:
        await init_database(engine, create_tables=db.create_tables)
        logger.info("Database connection initialized", extra={"dialect": engine.dialect.name})
    except Exception as e:
        if db.startup_require_db:
            logger.exception(
                "Database required but unavailable, failing startup",
                extra={"error": str(e), "startup_require_db": True},
            )
            raise
        # Ledger operations raise StoreFailure until the database comes back
        logger.warning(
            "Database unavailable, continuing in degraded mode",
            extra={"error": str(e), "startup_require_db": False},
        )


def _startup_ledger(app: FastAPI) -> TokenLedger:
    ledger = TokenLedger(app.state.session_factory, get_auth_settings())
    app.state.token_ledger = ledger
    return ledger


def _startup_realtime(app: FastAPI, ledger: TokenLedger) -> None:
    """Build the hub and gateway and close connections on revocation."""
    realtime = get_realtime_settings()

    hub = create_realtime_hub(realtime)
    limiter = RateLimiter(
        realtime.rate_limit_storage_uri,
        key_prefix="realtime",
        default_limit=realtime.rate_limit_operations,
        default_window=realtime.rate_limit_window_seconds,
    )
    app.state.realtime_hub = hub
    app.state.realtime_gateway = RealtimeGateway(hub, ledger, realtime, limiter)

    ledger.add_revocation_listener(hub.on_token_revoked)
    logger.info("Realtime gateway initialized", extra={"enabled": realtime.enabled})


def _startup_scheduler(app: FastAPI) -> None:
    settings = get_scheduler_settings()
    if not settings.enabled:
        app.state.scheduler = None
        logger.info("Background reaper disabled")
        return

    scheduler = create_scheduler(settings)
    setup_scheduled_jobs(
        scheduler,
        ledger=app.state.token_ledger,
        hub=app.state.realtime_hub,
        scheduler_settings=settings,
        realtime_settings=get_realtime_settings(),
    )
    start_scheduler(scheduler)
    app.state.scheduler = scheduler


# =============================================================================
# Shutdown functions
# =============================================================================


def _shutdown_scheduler(app: FastAPI) -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        stop_scheduler(scheduler)


def _shutdown_realtime(app: FastAPI) -> None:
    """Close every open connection with a going-away frame."""
    hub = getattr(app.state, "realtime_hub", None)
    if hub is not None:
        hub.close_all("shutdown")


async def _shutdown_database(app: FastAPI) -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await close_database(engine)


# =============================================================================
# Main lifespan context manager
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start components on startup and stop them in reverse order on exit."""
    _startup_core()
    await _startup_database(app)
    ledger = _startup_ledger(app)
    _startup_realtime(app, ledger)
    _startup_scheduler(app)

    app_settings = get_app_settings()
    logger.info(
        "Application startup complete - listening on %s:%s",
        app_settings.host,
        app_settings.port,
        extra={
            "service": app_settings.service_name,
            "environment": app_settings.environment,
            "version": app_settings.version,
            "scheduler_enabled": app.state.scheduler is not None,
        },
    )

    try:
        yield
    finally:
        logger.info("Application shutting down", extra={"service": app_settings.service_name})
        _shutdown_scheduler(app)
        _shutdown_realtime(app)
        await _shutdown_database(app)
        logger.info("Application shutdown complete")
        shutdown_logging()


__all__ = ["lifespan"]
