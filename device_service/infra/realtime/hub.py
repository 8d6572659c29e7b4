"""Realtime hub: the publishing facade over the registry and event bus.

Business code never talks to connections directly. It calls one of the
``publish_*`` entry points, which pick the topics for the event and hand
it to the bus.

The hub is built once during application startup and stored on
``app.state.realtime_hub``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from device_service.infra.realtime.bus import EventBus, ReplayLog
from device_service.infra.realtime.events import EventKind
from device_service.infra.realtime.registry import (
    BROADCAST_TOPIC,
    ConnectionRegistry,
    ConnectionStats,
    device_topic,
    org_topic,
    role_topic,
    user_topic,
)

if TYPE_CHECKING:
    from device_service.core.settings.realtime import RealtimeSettings
    from device_service.infra.realtime.events import Event

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Composes the connection registry and the event bus.

    Example:
        hub = create_realtime_hub(get_realtime_settings())
        hub.publish_device_update("dev-1", "online", owner_id="user-7")
    """

    def __init__(self, registry: ConnectionRegistry, bus: EventBus) -> None:
        self.registry = registry
        self.bus = bus

    # ──────────────────────────────────────────────────────────────
    # Publishing entry points
    # ──────────────────────────────────────────────────────────────

    def publish_device_update(
        self,
        device_id: str,
        status: str,
        owner_id: str,
        extra: dict[str, Any] | None = None,
    ) -> int:
        """Device status change, to the device's watchers and its owner."""
        payload = {"device_id": device_id, "status": status, **(extra or {})}
        return self.bus.publish(
            [device_topic(device_id), user_topic(owner_id)],
            EventKind.DEVICE_STATUS_UPDATE,
            payload,
        )

    def publish_heartbeat(
        self,
        device_id: str,
        timestamp: datetime | None,
        owner_id: str,
        org_id: str | None = None,
    ) -> int:
        """Device heartbeat, to its owner and, when known, its organization."""
        topics = [user_topic(owner_id)]
        if org_id:
            topics.append(org_topic(org_id))
        payload = {
            "device_id": device_id,
            "last_seen": (timestamp or datetime.now(UTC)).isoformat(),
        }
        return self.bus.publish(topics, EventKind.DEVICE_HEARTBEAT, payload)

    def publish_notification(self, user_id: str, notification: dict[str, Any]) -> int:
        return self.bus.publish(user_topic(user_id), EventKind.NOTIFICATION, notification)

    def publish_announcement(self, announcement: dict[str, Any], role: str | None = None) -> int:
        """Announcement to one role, or to every connection when ``role`` is None."""
        topic = role_topic(role) if role else BROADCAST_TOPIC
        return self.bus.publish(topic, EventKind.ANNOUNCEMENT, announcement)

    def replay_since(self, last_event_id: int, topics: set[str] | frozenset[str]) -> list[Event]:
        return self.bus.replay_since(last_event_id, topics)

    # ──────────────────────────────────────────────────────────────
    # Connection control
    # ──────────────────────────────────────────────────────────────

    def force_disconnect(self, user_id: str, reason: str) -> int:
        closed = self.registry.force_disconnect(user_id, reason)
        if closed:
            logger.info(
                "Force-disconnected user connections",
                extra={"user_id": user_id, "reason": reason, "count": closed},
            )
        return closed

    def disconnect_token(self, token_id: str, reason: str) -> int:
        return self.registry.disconnect_token(token_id, reason)

    def prune_idle(self, max_idle_seconds: float) -> int:
        return self.registry.prune_idle(max_idle_seconds)

    def close_all(self, reason: str = "shutdown") -> int:
        closed = self.registry.close_all(reason)
        logger.info("Closed all realtime connections", extra={"reason": reason, "count": closed})
        return closed

    def on_token_revoked(self, user_id: str, token_id: str | None, reason: str) -> None:
        """Revocation listener: close what the revoked credential opened.

        A specific token closes the connections it authenticated; a
        user-wide revocation closes all of the user's connections.
        """
        if token_id is None:
            self.force_disconnect(user_id, f"tokens_{reason}")
        else:
            self.disconnect_token(token_id, f"token_{reason}")

    # ──────────────────────────────────────────────────────────────
    # Stats
    # ──────────────────────────────────────────────────────────────

    def connection_stats(self) -> ConnectionStats:
        return self.registry.stats()

    def bus_info(self) -> dict[str, int]:
        return {
            "last_event_id": self.bus.last_event_id,
            "history_size": self.bus.history_size,
            "replay_capacity": self.bus.replay_log.capacity,
        }


def create_realtime_hub(settings: RealtimeSettings) -> RealtimeHub:
    """Build a hub with its own registry and replay log."""
    registry = ConnectionRegistry(
        shard_count=settings.registry_shards,
        max_connections=settings.max_connections,
        max_connections_per_user=settings.max_connections_per_user,
    )
    bus = EventBus(registry, ReplayLog(capacity=settings.replay_capacity))
    logger.info(
        "Realtime hub created",
        extra={
            "registry_shards": settings.registry_shards,
            "replay_capacity": settings.replay_capacity,
            "max_connections": settings.max_connections,
        },
    )
    return RealtimeHub(registry, bus)
