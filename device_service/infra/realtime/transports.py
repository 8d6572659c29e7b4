"""Per-connection handle shared by the registry, the bus and a transport.

The bus only ever calls :meth:`ConnectionHandle.offer`, which never blocks.
The transport task that owns the connection drains the handle's queue with
:meth:`ConnectionHandle.next_item` and writes frames to the socket or the
SSE stream. Nothing else touches the socket.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from device_service.core.exceptions import DeliveryFailure

if TYPE_CHECKING:
    from device_service.infra.realtime.events import Event


class TransportKind(str, Enum):
    WEBSOCKET = "websocket"
    SSE = "sse"


class ConnectionState(str, Enum):
    """Lifecycle of a single realtime connection."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class CloseSignal:
    """Last item a handle's queue yields.

    ``frame`` is written to the client before the transport closes.
    """

    reason: str
    frame: Event | None = None


class ConnectionHandle:
    """Bounded outbound queue plus the metadata the registry indexes.

    ``offer`` may be called from any thread. When called outside the loop
    that created the handle, the enqueue is scheduled on that loop.
    """

    def __init__(
        self,
        *,
        connection_id: str,
        user_id: str,
        role: str,
        transport: TransportKind,
        token_id: str | None = None,
        queue_size: int = 256,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.connection_id = connection_id
        self.user_id = user_id
        self.role = role
        self.transport = transport
        self.token_id = token_id
        self.connected_at = datetime.now(UTC)
        self.last_activity = time.monotonic()
        self.state = ConnectionState.CONNECTING
        self.close_reason: str | None = None

        self._capacity = queue_size
        # One slot beyond capacity is reserved for the CloseSignal
        self._queue: asyncio.Queue[Event | CloseSignal] = asyncio.Queue(maxsize=queue_size + 1)
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._topics: set[str] = set()
        self._registered = False
        self._closed = False

    # ──────────────────────────────────────────────────────────────
    # Registry-side state (guarded by the handle lock)
    # ──────────────────────────────────────────────────────────────

    @property
    def topics(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._topics)

    @property
    def registered(self) -> bool:
        with self._lock:
            return self._registered

    def mark_registered(self) -> None:
        with self._lock:
            self._registered = True

    def mark_unregistered(self) -> frozenset[str]:
        """Flag the handle as removed and return the topics it held."""
        with self._lock:
            self._registered = False
            topics = frozenset(self._topics)
            self._topics.clear()
            return topics

    def add_topic(self, topic: str) -> bool:
        """Add a topic; False if the handle is no longer registered."""
        with self._lock:
            if not self._registered:
                return False
            self._topics.add(topic)
            return True

    def remove_topic(self, topic: str) -> bool:
        with self._lock:
            if not self._registered:
                return False
            self._topics.discard(topic)
            return True

    # ──────────────────────────────────────────────────────────────
    # Producer side
    # ──────────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, event: Event) -> None:
        """Enqueue without blocking.

        Raises:
            DeliveryFailure: The handle is closed, or its queue is full
                (the handle is then closed as a slow consumer).
        """
        if self.closed:
            raise DeliveryFailure(self.connection_id, self.close_reason or "closed")

        if self._on_owner_loop():
            if not self._put(event):
                raise DeliveryFailure(self.connection_id, "slow_consumer")
        else:
            try:
                self._loop.call_soon_threadsafe(self._put, event)
            except RuntimeError as e:
                # Owning loop has shut down; nobody will ever drain the queue
                self.close("loop_closed")
                raise DeliveryFailure(self.connection_id, "closed") from e

    def close(self, reason: str, frame: Event | None = None) -> bool:
        """Close the handle and wake its consumer.

        Queued events still drain, then ``frame`` (if any) is yielded inside
        the CloseSignal. Returns False if the handle was already closed.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self.close_reason = reason
            self.state = ConnectionState.CLOSED

        signal = CloseSignal(reason=reason, frame=frame)
        if self._on_owner_loop():
            self._queue.put_nowait(signal)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, signal)
        return True

    def _put(self, event: Event) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self._capacity:
            self.close("slow_consumer")
            return False
        self._queue.put_nowait(event)
        return True

    def _on_owner_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    # ──────────────────────────────────────────────────────────────
    # Consumer side
    # ──────────────────────────────────────────────────────────────

    async def next_item(self, timeout: float | None = None) -> Event | CloseSignal | None:
        """Next queued item, or None if nothing arrived within ``timeout``."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_activity

    def __repr__(self) -> str:
        return (
            f"<ConnectionHandle(id={self.connection_id!r}, user={self.user_id!r}, "
            f"transport={self.transport.value}, state={self.state.value})>"
        )
