"""Realtime fan-out infrastructure.

- ConnectionHandle: bounded per-connection outbound queue
- ConnectionRegistry: sharded indexes of live connections and topics
- EventBus / ReplayLog: ordered fan-out with a bounded replay window
- RealtimeHub: publishing facade used by business code
"""

from device_service.infra.realtime.bus import EventBus, ReplayLog
from device_service.infra.realtime.events import CONTROL_KINDS, Event, EventKind
from device_service.infra.realtime.hub import RealtimeHub, create_realtime_hub
from device_service.infra.realtime.registry import (
    BROADCAST_TOPIC,
    ConnectionRegistry,
    ConnectionStats,
    device_topic,
    org_topic,
    role_topic,
    user_topic,
)
from device_service.infra.realtime.transports import (
    CloseSignal,
    ConnectionHandle,
    ConnectionState,
    TransportKind,
)

__all__ = [
    "BROADCAST_TOPIC",
    "CONTROL_KINDS",
    "CloseSignal",
    "ConnectionHandle",
    "ConnectionRegistry",
    "ConnectionState",
    "ConnectionStats",
    "Event",
    "EventBus",
    "EventKind",
    "RealtimeHub",
    "ReplayLog",
    "TransportKind",
    "create_realtime_hub",
    "device_topic",
    "org_topic",
    "role_topic",
    "user_topic",
]
