"""Pydantic schemas for realtime client messages and REST endpoints.

Message Types:
- Client → Server: join_organization, leave_organization, subscribe_device,
  unsubscribe_device, ping
- Server → Client: connected, joined_organization, left_organization,
  subscribed_device, unsubscribed_device, pong, ping, error, force_disconnect,
  plus every published event kind
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ClientMessageType(str, Enum):
    """Message types sent from client to server."""

    JOIN_ORGANIZATION = "join_organization"
    LEAVE_ORGANIZATION = "leave_organization"
    SUBSCRIBE_DEVICE = "subscribe_device"
    UNSUBSCRIBE_DEVICE = "unsubscribe_device"
    PING = "ping"


class ServerMessageType(str, Enum):
    """Transport-level message types sent from server to client."""

    CONNECTED = "connected"
    JOINED_ORGANIZATION = "joined_organization"
    LEFT_ORGANIZATION = "left_organization"
    SUBSCRIBED_DEVICE = "subscribed_device"
    UNSUBSCRIBED_DEVICE = "unsubscribed_device"
    PING = "ping"
    PONG = "pong"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    FORCE_DISCONNECT = "force_disconnect"


class ErrorCode(str, Enum):
    """In-band error codes; the socket stays open after each of these."""

    VALIDATION_ERROR = "validation_error"
    INVALID_JSON = "invalid_json"
    UNKNOWN_TYPE = "unknown_type"
    RATE_LIMITED = "rate_limited"
    MESSAGE_TOO_LARGE = "message_too_large"


# ──────────────────────────────────────────────────────────────
# Client → Server Messages
# ──────────────────────────────────────────────────────────────


class ClientMessage(BaseModel):
    """Base model for messages from client to server."""

    type: str


class JoinOrganizationMessage(ClientMessage):
    type: Literal["join_organization"] = "join_organization"
    organization_id: str = Field(..., min_length=1, max_length=100)


class LeaveOrganizationMessage(ClientMessage):
    type: Literal["leave_organization"] = "leave_organization"
    organization_id: str = Field(..., min_length=1, max_length=100)


class SubscribeDeviceMessage(ClientMessage):
    type: Literal["subscribe_device"] = "subscribe_device"
    device_id: str = Field(..., min_length=1, max_length=100)


class UnsubscribeDeviceMessage(ClientMessage):
    type: Literal["unsubscribe_device"] = "unsubscribe_device"
    device_id: str = Field(..., min_length=1, max_length=100)


class ClientPingMessage(ClientMessage):
    type: Literal["ping"] = "ping"


CLIENT_MESSAGE_MODELS: dict[str, type[ClientMessage]] = {
    ClientMessageType.JOIN_ORGANIZATION.value: JoinOrganizationMessage,
    ClientMessageType.LEAVE_ORGANIZATION.value: LeaveOrganizationMessage,
    ClientMessageType.SUBSCRIBE_DEVICE.value: SubscribeDeviceMessage,
    ClientMessageType.UNSUBSCRIBE_DEVICE.value: UnsubscribeDeviceMessage,
    ClientMessageType.PING.value: ClientPingMessage,
}


# ──────────────────────────────────────────────────────────────
# REST API Schemas
# ──────────────────────────────────────────────────────────────


class ScheduledJobStatus(BaseModel):
    """One background maintenance job."""

    id: str
    name: str
    next_run_time: str | None = Field(default=None, description="ISO 8601; null until the scheduler starts")
    trigger: str


class RealtimeStatsResponse(BaseModel):
    """Connection counts, event bus position and reaper jobs."""

    total_connections: int = Field(..., ge=0)
    connected_users: int = Field(..., ge=0)
    topics: dict[str, int] = Field(default_factory=dict, description="Topic to subscriber count")
    by_transport: dict[str, int] = Field(default_factory=dict)
    last_event_id: int = Field(..., ge=0)
    history_size: int = Field(..., ge=0)
    replay_capacity: int = Field(..., ge=0)
    reaper_jobs: list[ScheduledJobStatus] = Field(
        default_factory=list, description="Scheduled maintenance jobs; empty when the scheduler is disabled"
    )


class AnnouncementRequest(BaseModel):
    """Announcement pushed to one role or to everyone."""

    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=5000)
    severity: Literal["info", "warning", "critical"] = "info"
    role: str | None = Field(None, max_length=20, description="Target role; omit to reach every connection")
    data: dict[str, Any] = Field(default_factory=dict)


class AnnouncementResponse(BaseModel):
    event_id: int = Field(..., ge=1)
    topic: str


class DisconnectUserRequest(BaseModel):
    reason: str = Field("admin_disconnect", min_length=1, max_length=100)


class DisconnectUserResponse(BaseModel):
    user_id: str
    disconnected: int = Field(..., ge=0)
