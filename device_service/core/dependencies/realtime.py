"""Realtime dependencies for FastAPI route handlers.

The hub and gateway are created during startup and stored on ``app.state``;
HTTPConnection makes these work for both HTTP and WebSocket routes.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from starlette.requests import HTTPConnection

from device_service.core.exceptions import ServiceUnavailableException
from device_service.features.realtime.gateway import RealtimeGateway
from device_service.infra.realtime import RealtimeHub


def get_realtime_hub(conn: HTTPConnection) -> RealtimeHub:
    hub = getattr(conn.app.state, "realtime_hub", None)
    if hub is None:
        raise ServiceUnavailableException("Realtime hub is not available")
    return hub


def get_realtime_gateway(conn: HTTPConnection) -> RealtimeGateway:
    gateway = getattr(conn.app.state, "realtime_gateway", None)
    if gateway is None:
        raise ServiceUnavailableException("Realtime gateway is not available")
    return gateway


RealtimeHubDep = Annotated[RealtimeHub, Depends(get_realtime_hub)]
"""Hub dependency for publishing and stats.

Example:
    @router.post("/devices/{device_id}/status")
    async def update(device_id: str, hub: RealtimeHubDep): ...
"""

RealtimeGatewayDep = Annotated[RealtimeGateway, Depends(get_realtime_gateway)]
