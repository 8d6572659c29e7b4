"""Realtime endpoints: WebSocket, Server-Sent Events and admin controls.

Endpoints:
- WS   /ws                                  Bidirectional event channel
- GET  /events                              SSE push stream
- GET  /realtime/stats                      Connection statistics (admin)
- POST /realtime/announcements              Announce to a role or everyone (admin)
- POST /realtime/users/{user_id}/disconnect Close a user's connections (admin)
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Query, Request, WebSocket, status
from fastapi.responses import StreamingResponse

from device_service.core.dependencies.auth import AdminUser
from device_service.core.dependencies.realtime import RealtimeGatewayDep, RealtimeHubDep
from device_service.core.exceptions import ValidationException
from device_service.features.realtime.schemas import (
    AnnouncementRequest,
    AnnouncementResponse,
    DisconnectUserRequest,
    DisconnectUserResponse,
    RealtimeStatsResponse,
)
from device_service.infra.realtime import BROADCAST_TOPIC, role_topic
from device_service.infra.tasks import get_job_status

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])


def _bearer(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Annotated[str | None, Query(description="Access token")] = None,
) -> None:
    """WebSocket connection endpoint.

    Authenticate with ``?token=`` or an ``Authorization: Bearer`` header.

    Message Protocol:
        Client → Server:
        - {"type": "join_organization", "organization_id": "..."}
        - {"type": "leave_organization", "organization_id": "..."}
        - {"type": "subscribe_device", "device_id": "..."}
        - {"type": "unsubscribe_device", "device_id": "..."}
        - {"type": "ping"}

        Server → Client:
        - {"type": "connected", "data": {"connection_id": "...", "topics": [...]}}
        - {"type": "<ack>", "data": {...}} for each client operation
        - {"type": "<event kind>", "id": N, "data": {...}} for published events
        - {"type": "ping"} when idle
        - {"type": "error", "data": {"code": "...", "message": "..."}}
    """
    gateway = getattr(websocket.app.state, "realtime_gateway", None)
    if gateway is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Server not ready")
        return
    await gateway.handle_bidirectional_connect(
        websocket,
        token or _bearer(websocket.headers.get("authorization")),
    )


@router.get(
    "/events",
    summary="Server-Sent Events stream",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def event_stream(
    request: Request,
    gateway: RealtimeGatewayDep,
    token: Annotated[str | None, Query(description="Access token")] = None,
    last_event_id_query: Annotated[str | None, Query(alias="last_event_id")] = None,
    last_event_id_header: Annotated[str | None, Header(alias="Last-Event-ID")] = None,
) -> StreamingResponse:
    """Push stream of published events.

    Reconnecting clients send ``Last-Event-ID`` (or ``?last_event_id=``) to
    receive the retained events they missed.
    """
    raw_last_id = last_event_id_header or last_event_id_query
    last_event_id: int | None = None
    if raw_last_id:
        try:
            last_event_id = int(raw_last_id)
        except ValueError as e:
            raise ValidationException("Last-Event-ID must be an integer", extra={"code": "VALIDATION_ERROR"}) from e

    return await gateway.handle_push_stream_connect(
        request,
        token or _bearer(request.headers.get("authorization")),
        last_event_id,
    )


@router.get(
    "/realtime/stats",
    response_model=RealtimeStatsResponse,
    summary="Realtime connection statistics",
)
async def get_stats(request: Request, hub: RealtimeHubDep, admin: AdminUser) -> RealtimeStatsResponse:
    _ = admin
    stats = hub.connection_stats()
    scheduler = getattr(request.app.state, "scheduler", None)
    return RealtimeStatsResponse(
        total_connections=stats.total_connections,
        connected_users=stats.connected_users,
        topics=stats.topics,
        by_transport=stats.by_transport,
        reaper_jobs=get_job_status(scheduler) if scheduler is not None else [],
        **hub.bus_info(),
    )


@router.post(
    "/realtime/announcements",
    response_model=AnnouncementResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish an announcement",
)
async def publish_announcement(
    body: AnnouncementRequest,
    hub: RealtimeHubDep,
    admin: AdminUser,
) -> AnnouncementResponse:
    announcement = {
        "title": body.title,
        "message": body.message,
        "severity": body.severity,
        "author_id": admin.user.id,
        **body.data,
    }
    event_id = hub.publish_announcement(announcement, role=body.role)
    topic = role_topic(body.role) if body.role else BROADCAST_TOPIC
    logger.info("Announcement published", extra={"event_id": event_id, "topic": topic})
    return AnnouncementResponse(event_id=event_id, topic=topic)


@router.post(
    "/realtime/users/{user_id}/disconnect",
    response_model=DisconnectUserResponse,
    summary="Close every realtime connection of a user",
)
async def disconnect_user(
    user_id: str,
    hub: RealtimeHubDep,
    admin: AdminUser,
    body: DisconnectUserRequest | None = None,
) -> DisconnectUserResponse:
    reason = body.reason if body else "admin_disconnect"
    closed = hub.force_disconnect(user_id, reason)
    logger.info(
        "Admin disconnected user",
        extra={"admin_id": admin.user.id, "user_id": user_id, "count": closed},
    )
    return DisconnectUserResponse(user_id=user_id, disconnected=closed)
