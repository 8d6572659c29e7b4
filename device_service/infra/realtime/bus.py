"""Event bus with a bounded replay log.

``publish`` assigns the next id, appends to the replay ring and offers the
event to every subscribed handle while holding one lock, so every
connection sees events in id order. Offers never block; a handle that
cannot take the event is dropped without affecting the other recipients
or the publisher.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from device_service.core.exceptions import DeliveryFailure
from device_service.infra.metrics.prometheus import (
    event_delivery_failures_total,
    event_fanout_recipients,
    event_replayed_total,
    events_published_total,
)
from device_service.infra.realtime.events import CONTROL_KINDS, Event, EventKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from device_service.infra.realtime.registry import ConnectionRegistry
    from device_service.infra.realtime.transports import ConnectionHandle

logger = logging.getLogger(__name__)


class ReplayLog:
    """Fixed-capacity ring of recent events, oldest evicted first."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("Replay capacity must be at least 1")
        self._events: deque[Event] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def since(self, last_event_id: int, topics: Iterable[str] | None = None) -> list[Event]:
        """Retained events with id greater than ``last_event_id``, ascending.

        Events evicted before the call are silently missing.
        """
        wanted = frozenset(topics) if topics is not None else None
        with self._lock:
            snapshot = list(self._events)
        return [
            event
            for event in snapshot
            if event.id is not None
            and event.id > last_event_id
            and (wanted is None or event.matches(wanted))
        ]

    @property
    def last_event_id(self) -> int:
        with self._lock:
            if not self._events:
                return 0
            return self._events[-1].id or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class EventBus:
    """Topic fan-out over the connection registry.

    Example:
        bus = EventBus(registry, ReplayLog(capacity=100))
        event_id = bus.publish(["device:42", "user:7"], EventKind.DEVICE_STATUS_UPDATE, {"status": "online"})
        missed = bus.replay_since(event_id - 1, topics={"user:7"})
    """

    def __init__(self, registry: ConnectionRegistry, replay_log: ReplayLog | None = None) -> None:
        self._registry = registry
        self._log = replay_log if replay_log is not None else ReplayLog()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def replay_log(self) -> ReplayLog:
        return self._log

    @property
    def last_event_id(self) -> int:
        return self._log.last_event_id

    @property
    def history_size(self) -> int:
        return len(self._log)

    def publish(
        self,
        topics: str | Iterable[str],
        kind: EventKind | str,
        payload: Mapping[str, Any],
    ) -> int:
        """Record an event and offer it to every subscriber of ``topics``.

        A connection subscribed to several of the topics receives the event
        once.

        Returns:
            The id assigned to the event.

        Raises:
            ValueError: For transport-internal kinds or an empty topic list.
        """
        kind = EventKind(kind)
        if kind in CONTROL_KINDS:
            raise ValueError(f"{kind.value} frames are transport-internal and cannot be published")
        topic_list = (topics,) if isinstance(topics, str) else tuple(dict.fromkeys(topics))
        if not topic_list:
            raise ValueError("At least one topic is required")

        failures: list[DeliveryFailure] = []
        with self._lock:
            event = Event(
                id=next(self._ids),
                kind=kind.value,
                payload=MappingProxyType(dict(payload)),
                topics=topic_list,
            )
            self._log.append(event)

            recipients = self._recipients(topic_list)
            for handle in recipients:
                try:
                    handle.offer(event)
                except DeliveryFailure as e:
                    failures.append(e)

        events_published_total.labels(kind=kind.value).inc()
        event_fanout_recipients.observe(len(recipients))

        for failure in failures:
            event_delivery_failures_total.inc()
            logger.warning(
                "Dropping connection after failed delivery",
                extra={
                    "connection_id": failure.connection_id,
                    "reason": failure.reason,
                    "event_id": event.id,
                },
            )
            self._registry.unregister(failure.connection_id, reason="slow_consumer")

        return event.id or 0

    def replay_since(self, last_event_id: int, topics: Iterable[str] | None = None) -> list[Event]:
        """Events after ``last_event_id``, optionally limited to ``topics``."""
        events = self._log.since(last_event_id, topics)
        if events:
            event_replayed_total.inc(len(events))
        return events

    def _recipients(self, topics: tuple[str, ...]) -> list[ConnectionHandle]:
        seen: dict[str, ConnectionHandle] = {}
        for topic in topics:
            for handle in self._registry.connections_for(topic):
                seen.setdefault(handle.connection_id, handle)
        return list(seen.values())
