"""Connection registry: sharded indexes of live realtime connections.

Three indexes map connection id to handle, user id to connection ids and
topic to connection ids. Each index is split into shards with their own
``threading.Lock``; an operation holds at most one shard lock at a time, so
lock ordering can never deadlock. Readers get copy-on-read snapshots.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from device_service.core.exceptions import ConnectionLimitExceeded
from device_service.infra.logging import get_lazy_logger
from device_service.infra.metrics.prometheus import (
    realtime_connection_duration_seconds,
    realtime_connections_total,
    realtime_force_disconnects_total,
)
from device_service.infra.realtime.events import Event, EventKind

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from device_service.infra.realtime.transports import ConnectionHandle

logger = logging.getLogger(__name__)
_lazy = get_lazy_logger(__name__)

BROADCAST_TOPIC = "broadcast"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def role_topic(role: str) -> str:
    return f"role:{role}"


def device_topic(device_id: str) -> str:
    return f"device:{device_id}"


def org_topic(organization_id: str) -> str:
    return f"org:{organization_id}"


class _ShardedMap[V]:
    """Dict split across independently locked shards."""

    __slots__ = ("_shards",)

    def __init__(self, shard_count: int) -> None:
        self._shards: list[tuple[threading.Lock, dict[Hashable, V]]] = [
            (threading.Lock(), {}) for _ in range(shard_count)
        ]

    def _shard(self, key: Hashable) -> tuple[threading.Lock, dict[Hashable, V]]:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: Hashable) -> V | None:
        lock, data = self._shard(key)
        with lock:
            return data.get(key)

    def insert_new(self, key: Hashable, value: V) -> bool:
        """Insert unless present; False if the key already exists."""
        lock, data = self._shard(key)
        with lock:
            if key in data:
                return False
            data[key] = value
            return True

    def pop(self, key: Hashable) -> V | None:
        lock, data = self._shard(key)
        with lock:
            return data.pop(key, None)

    def values(self) -> list[V]:
        result: list[V] = []
        for lock, data in self._shards:
            with lock:
                result.extend(data.values())
        return result

    def __len__(self) -> int:
        total = 0
        for lock, data in self._shards:
            with lock:
                total += len(data)
        return total


class _ShardedMultiMap:
    """Key to set-of-ids map; empty sets are dropped."""

    __slots__ = ("_shards",)

    def __init__(self, shard_count: int) -> None:
        self._shards: list[tuple[threading.Lock, dict[str, set[str]]]] = [
            (threading.Lock(), {}) for _ in range(shard_count)
        ]

    def _shard(self, key: str) -> tuple[threading.Lock, dict[str, set[str]]]:
        return self._shards[hash(key) % len(self._shards)]

    def add(self, key: str, member: str, limit: int | None = None) -> bool:
        """Add ``member``; False if ``limit`` members are already present."""
        lock, data = self._shard(key)
        with lock:
            members = data.setdefault(key, set())
            if member in members:
                return True
            if limit is not None and len(members) >= limit:
                if not members:
                    del data[key]
                return False
            members.add(member)
            return True

    def discard(self, key: str, member: str) -> None:
        lock, data = self._shard(key)
        with lock:
            members = data.get(key)
            if members is None:
                return
            members.discard(member)
            if not members:
                del data[key]

    def members(self, key: str) -> list[str]:
        lock, data = self._shard(key)
        with lock:
            return list(data.get(key, ()))

    def counts(self) -> dict[str, int]:
        result: dict[str, int] = {}
        for lock, data in self._shards:
            with lock:
                result.update({key: len(members) for key, members in data.items()})
        return result

    def __len__(self) -> int:
        total = 0
        for lock, data in self._shards:
            with lock:
                total += len(data)
        return total


@dataclass(slots=True)
class ConnectionStats:
    """Point-in-time registry counts."""

    total_connections: int = 0
    connected_users: int = 0
    topics: dict[str, int] = field(default_factory=dict)
    by_transport: dict[str, int] = field(default_factory=dict)


class ConnectionRegistry:
    """Authoritative set of live connections and their topic subscriptions.

    Example:
        registry = ConnectionRegistry(shard_count=16)
        registry.register(handle.connection_id, handle.user_id, handle)
        registry.subscribe(handle.connection_id, "device:42")
        for target in registry.connections_for("device:42"):
            target.offer(event)
    """

    def __init__(
        self,
        *,
        shard_count: int = 16,
        max_connections: int | None = None,
        max_connections_per_user: int | None = None,
    ) -> None:
        self._connections: _ShardedMap[ConnectionHandle] = _ShardedMap(shard_count)
        self._by_user = _ShardedMultiMap(shard_count)
        self._by_topic = _ShardedMultiMap(shard_count)
        self._max_connections = max_connections
        self._max_per_user = max_connections_per_user
        self._count_lock = threading.Lock()
        self._count = 0

    # ──────────────────────────────────────────────────────────────
    # Membership
    # ──────────────────────────────────────────────────────────────

    def register(self, connection_id: str, user_id: str, handle: ConnectionHandle) -> None:
        """Add a connection and subscribe it to its user, role and broadcast topics.

        Raises:
            ValueError: If ``connection_id`` is already registered.
            ConnectionLimitExceeded: If the instance or user limit is reached.
        """
        if not self._connections.insert_new(connection_id, handle):
            raise ValueError(f"Connection {connection_id} is already registered")

        with self._count_lock:
            if self._max_connections is not None and self._count >= self._max_connections:
                full = True
            else:
                full = False
                self._count += 1
        if full:
            self._connections.pop(connection_id)
            raise ConnectionLimitExceeded("Server connection limit reached")

        if not self._by_user.add(user_id, connection_id, limit=self._max_per_user):
            self._connections.pop(connection_id)
            with self._count_lock:
                self._count -= 1
            raise ConnectionLimitExceeded("Too many connections for this user")

        handle.mark_registered()
        for topic in (user_topic(user_id), role_topic(handle.role), BROADCAST_TOPIC):
            self.subscribe(connection_id, topic)

        realtime_connections_total.labels(transport=handle.transport.value).inc()
        logger.info(
            "Connection registered",
            extra={
                "connection_id": connection_id,
                "user_id": user_id,
                "transport": handle.transport.value,
            },
        )

    def unregister(self, connection_id: str, reason: str = "unregistered") -> ConnectionHandle | None:
        """Remove a connection from every index and close its handle.

        Absent ids are a no-op returning None.
        """
        handle = self._connections.pop(connection_id)
        if handle is None:
            return None

        for topic in handle.mark_unregistered():
            self._by_topic.discard(topic, connection_id)
        self._by_user.discard(handle.user_id, connection_id)
        with self._count_lock:
            self._count -= 1

        handle.close(reason)
        realtime_connections_total.labels(transport=handle.transport.value).dec()
        realtime_connection_duration_seconds.labels(transport=handle.transport.value).observe(
            max(time.time() - handle.connected_at.timestamp(), 0.0)
        )
        logger.info(
            "Connection unregistered",
            extra={"connection_id": connection_id, "user_id": handle.user_id, "reason": reason},
        )
        return handle

    def subscribe(self, connection_id: str, topic: str) -> bool:
        """Idempotently add a topic; False for an unknown connection."""
        handle = self._connections.get(connection_id)
        if handle is None or not handle.add_topic(topic):
            return False
        self._by_topic.add(topic, connection_id)
        # Lost a race with unregister: drop the stale index entry
        if not handle.registered:
            self._by_topic.discard(topic, connection_id)
            return False
        _lazy.debug(lambda: f"{connection_id} subscribed to {topic}")
        return True

    def unsubscribe(self, connection_id: str, topic: str) -> bool:
        """Idempotently remove a topic; False for an unknown connection."""
        handle = self._connections.get(connection_id)
        if handle is None or not handle.remove_topic(topic):
            return False
        self._by_topic.discard(topic, connection_id)
        return True

    # ──────────────────────────────────────────────────────────────
    # Lookups
    # ──────────────────────────────────────────────────────────────

    def get(self, connection_id: str) -> ConnectionHandle | None:
        return self._connections.get(connection_id)

    def connections_for(self, topic: str) -> list[ConnectionHandle]:
        """Snapshot of handles subscribed to ``topic``."""
        handles = []
        for connection_id in self._by_topic.members(topic):
            handle = self._connections.get(connection_id)
            if handle is not None:
                handles.append(handle)
        return handles

    def connections_for_user(self, user_id: str) -> list[ConnectionHandle]:
        handles = []
        for connection_id in self._by_user.members(user_id):
            handle = self._connections.get(connection_id)
            if handle is not None:
                handles.append(handle)
        return handles

    def __len__(self) -> int:
        with self._count_lock:
            return self._count

    # ──────────────────────────────────────────────────────────────
    # Server-initiated closes
    # ──────────────────────────────────────────────────────────────

    def force_disconnect(self, user_id: str, reason: str) -> int:
        """Close and unregister every connection of a user.

        Each client receives a ``force_disconnect`` frame before its
        transport closes. No connection of the user remains afterwards.
        """
        return self._close_where(self.connections_for_user(user_id), reason)

    def disconnect_token(self, token_id: str, reason: str) -> int:
        """Close connections that authenticated with one access token."""
        return self._close_where(self._connections.values(), reason, lambda h: h.token_id == token_id)

    def prune_idle(self, max_idle_seconds: float) -> int:
        """Close connections with no activity for longer than the bound."""
        now = time.monotonic()
        return self._close_where(
            self._connections.values(),
            "idle_timeout",
            lambda h: h.idle_seconds(now) > max_idle_seconds,
        )

    def close_all(self, reason: str) -> int:
        """Close every registered connection, e.g. on shutdown."""
        return self._close_where(self._connections.values(), reason)

    def _close_where(
        self,
        handles: list[ConnectionHandle],
        reason: str,
        predicate: Callable[[ConnectionHandle], bool] | None = None,
    ) -> int:
        closed = 0
        for handle in handles:
            if predicate is not None and not predicate(handle):
                continue
            handle.close(reason, frame=Event.control(EventKind.FORCE_DISCONNECT, {"reason": reason}))
            if self.unregister(handle.connection_id, reason=reason) is not None:
                closed += 1
        if closed:
            realtime_force_disconnects_total.labels(reason=reason).inc(closed)
        return closed

    # ──────────────────────────────────────────────────────────────
    # Stats
    # ──────────────────────────────────────────────────────────────

    def stats(self) -> ConnectionStats:
        handles = self._connections.values()
        return ConnectionStats(
            total_connections=len(handles),
            connected_users=len(self._by_user),
            topics=self._by_topic.counts(),
            by_transport=dict(Counter(h.transport.value for h in handles)),
        )
