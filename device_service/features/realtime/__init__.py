"""Realtime feature: WebSocket and SSE transports over the realtime hub.

Usage:
    from device_service.features.realtime import router
    app.include_router(router, prefix="/api/v1")

    # Connect
    ws://localhost:8000/api/v1/ws?token=<access token>
    curl -N http://localhost:8000/api/v1/events?token=<access token>
"""

from device_service.features.realtime.router import router

__all__ = ["router"]
