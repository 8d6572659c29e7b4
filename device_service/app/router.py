"""Router registry and setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from device_service.features.auth import router as auth_router
from device_service.infra.metrics import REGISTRY

if TYPE_CHECKING:
    from fastapi import FastAPI

    from device_service.core.settings.app import AppSettings
    from device_service.core.settings.realtime import RealtimeSettings

logger = logging.getLogger(__name__)

metrics_router = APIRouter(tags=["observability"])


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint for the service's private registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


def setup_routers(
    app: FastAPI,
    app_settings: AppSettings,
    realtime_settings: RealtimeSettings,
) -> None:
    """Register all feature routers with the application.

    Args:
        app: FastAPI application instance.
        app_settings: Supplies the API prefix.
        realtime_settings: Controls whether the WebSocket and SSE endpoints exist.
    """
    api_prefix = app_settings.api_prefix

    # Metrics endpoint (no prefix - accessible at /metrics)
    app.include_router(metrics_router)

    app.include_router(auth_router, prefix=api_prefix, tags=["auth"])

    if realtime_settings.enabled:
        from device_service.features.realtime import router as realtime_router

        app.include_router(realtime_router, prefix=api_prefix)
        logger.info(
            "Realtime router included - endpoints at %s/ws and %s/events", api_prefix, api_prefix,
        )

    logger.info(
        "Router setup complete",
        extra={"api_prefix": api_prefix, "realtime_enabled": realtime_settings.enabled},
    )
