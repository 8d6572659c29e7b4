"""Event value type and its wire renderings.

Events published through the bus carry a monotonically increasing id and
are retained for replay. Transport-internal frames (connected, heartbeat,
force_disconnect, acknowledgements, errors) use the same type with
``id=None`` and never enter the replay log.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class EventKind(str, Enum):
    """Kinds of frames delivered to realtime clients."""

    CONNECTED = "connected"
    DEVICE_STATUS_UPDATE = "device_status_update"
    DEVICE_HEARTBEAT = "device_heartbeat"
    NOTIFICATION = "notification"
    ANNOUNCEMENT = "announcement"
    HEARTBEAT = "heartbeat"
    FORCE_DISCONNECT = "force_disconnect"
    ERROR = "error"


# Kinds that only ever travel as transport-internal frames
CONTROL_KINDS = frozenset({EventKind.CONNECTED, EventKind.HEARTBEAT, EventKind.FORCE_DISCONNECT, EventKind.ERROR})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Event:
    """An immutable frame.

    ``kind`` is an EventKind value for published events; control frames may
    use other names (``pong``, ``joined_organization``...).
    """

    kind: str
    payload: MappingProxyType[str, Any]
    topics: tuple[str, ...] = ()
    id: int | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def control(cls, kind: Enum | str, payload: dict[str, Any] | None = None) -> Event:
        """Build an id-less transport frame."""
        kind_value = kind.value if isinstance(kind, Enum) else kind
        return cls(kind=kind_value, payload=MappingProxyType(dict(payload or {})))

    @property
    def is_control(self) -> bool:
        return self.id is None

    def matches(self, topics: set[str] | frozenset[str]) -> bool:
        """True when the event targets at least one of ``topics``."""
        return not topics.isdisjoint(self.topics)

    def to_message(self) -> dict[str, Any]:
        """WebSocket JSON message."""
        message: dict[str, Any] = {"type": self.kind}
        if self.id is not None:
            message["id"] = self.id
        message["data"] = dict(self.payload)
        message["timestamp"] = self.created_at.isoformat()
        return message

    def to_sse(self) -> str:
        """Server-Sent Events frame, terminated by a blank line."""
        lines = []
        if self.id is not None:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.kind}")
        data = json.dumps({**self.payload, "timestamp": self.created_at.isoformat()}, default=str)
        lines.extend(f"data: {line}" for line in data.splitlines() or [""])
        return "\n".join(lines) + "\n\n"
