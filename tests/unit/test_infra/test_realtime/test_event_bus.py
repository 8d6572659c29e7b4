"""Tests for EventBus fan-out and the replay log."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from device_service.infra.realtime import (
    CloseSignal,
    ConnectionHandle,
    ConnectionRegistry,
    EventBus,
    EventKind,
    ReplayLog,
    TransportKind,
)


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry(shard_count=4)


@pytest.fixture
def bus(registry) -> EventBus:
    return EventBus(registry, ReplayLog(capacity=10))


def _connect(registry: ConnectionRegistry, handle, *topics: str):
    registry.register(handle.connection_id, handle.user_id, handle)
    for topic in topics:
        registry.subscribe(handle.connection_id, topic)
    return handle


async def _drain(handle) -> list:
    items = []
    while (item := await handle.next_item(timeout=0.05)) is not None:
        items.append(item)
        if isinstance(item, CloseSignal):
            break
    return items


# ──────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────


class TestPublish:
    @pytest.mark.asyncio
    async def test_ids_increase_and_order_is_kept(self, bus, registry, make_handle):
        handle = _connect(registry, make_handle("u1"), "device:1")

        ids = [bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {"seq": n}) for n in range(5)]

        received = await _drain(handle)
        assert ids == [1, 2, 3, 4, 5]
        assert [event.id for event in received] == ids
        assert [event.payload["seq"] for event in received] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_delivered_once_across_overlapping_topics(self, bus, registry, make_handle):
        handle = _connect(registry, make_handle("u1"), "device:1")

        bus.publish(["device:1", "user:u1", "device:1"], EventKind.DEVICE_STATUS_UPDATE, {"status": "online"})

        received = await _drain(handle)
        assert len(received) == 1
        assert received[0].topics == ("device:1", "user:u1")

    @pytest.mark.asyncio
    async def test_only_subscribers_receive(self, bus, registry, make_handle):
        watcher = _connect(registry, make_handle("u1"), "device:1")
        bystander = _connect(registry, make_handle("u2"))

        bus.publish("device:1", EventKind.DEVICE_HEARTBEAT, {"device_id": "1"})

        assert len(await _drain(watcher)) == 1
        assert await _drain(bystander) == []

    def test_publish_without_subscribers(self, bus):
        assert bus.publish("device:404", EventKind.NOTIFICATION, {}) == 1
        assert bus.history_size == 1

    @pytest.mark.parametrize("kind", [EventKind.HEARTBEAT, EventKind.CONNECTED, EventKind.FORCE_DISCONNECT, "error"])
    def test_control_kinds_rejected(self, bus, kind):
        with pytest.raises(ValueError):
            bus.publish("broadcast", kind, {})

        assert bus.history_size == 0

    def test_unknown_kind_rejected(self, bus):
        with pytest.raises(ValueError):
            bus.publish("broadcast", "not_a_kind", {})

    def test_empty_topics_rejected(self, bus):
        with pytest.raises(ValueError):
            bus.publish([], EventKind.NOTIFICATION, {})

    @pytest.mark.asyncio
    async def test_payload_is_copied(self, bus, registry, make_handle):
        handle = _connect(registry, make_handle("u1"))
        payload = {"title": "before"}

        bus.publish("user:u1", EventKind.NOTIFICATION, payload)
        payload["title"] = "after"

        (event,) = await _drain(handle)
        assert event.payload["title"] == "before"


class TestSlowConsumer:
    @pytest.mark.asyncio
    async def test_full_queue_drops_only_that_connection(self, bus, registry, make_handle):
        slow = _connect(registry, make_handle("slow", queue_size=2), "device:1")
        fast = _connect(registry, make_handle("fast", queue_size=8), "device:1")

        ids = [bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {"n": n}) for n in range(3)]

        assert ids == [1, 2, 3]
        assert registry.get(slow.connection_id) is None
        assert registry.get(fast.connection_id) is fast
        assert [event.id for event in await _drain(fast)] == ids

        slow_items = await _drain(slow)
        assert [item.id for item in slow_items[:-1]] == [1, 2]
        assert isinstance(slow_items[-1], CloseSignal)
        assert slow_items[-1].reason == "slow_consumer"

    @pytest.mark.asyncio
    async def test_handle_on_dead_loop_is_dropped(self, bus, registry, make_handle):
        dead_loop = asyncio.new_event_loop()
        orphan = ConnectionHandle(
            connection_id="conn-orphan",
            user_id="u1",
            role="user",
            transport=TransportKind.SSE,
            loop=dead_loop,
        )
        dead_loop.close()
        _connect(registry, orphan, "device:1")
        live = _connect(registry, make_handle("u2"), "device:1")

        event_id = bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {"status": "offline"})

        assert registry.get(orphan.connection_id) is None
        assert registry.get(live.connection_id) is live
        assert [event.id for event in await _drain(live)] == [event_id]


# ──────────────────────────────────────────────────────────────
# Concurrency
# ──────────────────────────────────────────────────────────────


class TestConcurrentUse:
    PUBLISHERS = 4
    EVENTS_PER_PUBLISHER = 200
    CHURNERS = 4
    CYCLES_PER_CHURNER = 100

    @pytest.mark.asyncio
    async def test_publish_while_connections_churn(self, registry, make_handle):
        total = self.PUBLISHERS * self.EVENTS_PER_PUBLISHER
        bus = EventBus(registry, ReplayLog(capacity=total))
        loop = asyncio.get_running_loop()
        watchers = [_connect(registry, make_handle(f"w{n}", queue_size=total + 1), "device:1") for n in range(3)]

        def publish(worker: int) -> list[int]:
            return [
                bus.publish("device:1", EventKind.DEVICE_HEARTBEAT, {"worker": worker, "seq": seq})
                for seq in range(self.EVENTS_PER_PUBLISHER)
            ]

        def churn(worker: int) -> None:
            for cycle in range(self.CYCLES_PER_CHURNER):
                handle = ConnectionHandle(
                    connection_id=f"churn-{worker}-{cycle}",
                    user_id=f"churner-{worker}",
                    role="user",
                    transport=TransportKind.WEBSOCKET,
                    loop=loop,
                )
                registry.register(handle.connection_id, handle.user_id, handle)
                registry.subscribe(handle.connection_id, "device:1")
                registry.subscribe(handle.connection_id, f"device:{cycle}")
                registry.unregister(handle.connection_id)

        with ThreadPoolExecutor(max_workers=self.PUBLISHERS + self.CHURNERS) as pool:
            publishing = [loop.run_in_executor(pool, publish, n) for n in range(self.PUBLISHERS)]
            churning = [loop.run_in_executor(pool, churn, n) for n in range(self.CHURNERS)]
            id_lists = await asyncio.gather(*publishing)
            await asyncio.gather(*churning)

        all_ids = sorted(event_id for ids in id_lists for event_id in ids)
        assert all_ids == list(range(1, total + 1))
        for ids in id_lists:
            assert ids == sorted(ids)

        for watcher in watchers:
            received = [item.id for item in await _drain(watcher)]
            assert received == list(range(1, total + 1))

        for watcher in watchers:
            registry.unregister(watcher.connection_id)
        stats = registry.stats()
        assert stats.total_connections == 0
        assert stats.connected_users == 0
        assert stats.topics == {}


# ──────────────────────────────────────────────────────────────
# Replay
# ──────────────────────────────────────────────────────────────


class TestReplay:
    def test_replay_after_id(self, bus):
        for n in range(4):
            bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {"n": n})

        assert [event.id for event in bus.replay_since(2)] == [3, 4]
        assert bus.replay_since(4) == []
        assert bus.last_event_id == 4

    def test_capacity_evicts_oldest(self, registry):
        bus = EventBus(registry, ReplayLog(capacity=2))
        for n in range(3):
            bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {"n": n})

        replayed = bus.replay_since(0)

        assert [event.id for event in replayed] == [2, 3]
        assert bus.history_size == 2
        assert bus.replay_log.capacity == 2

    def test_topic_filter(self, bus):
        bus.publish("device:1", EventKind.DEVICE_STATUS_UPDATE, {})
        bus.publish("device:2", EventKind.DEVICE_STATUS_UPDATE, {})
        bus.publish(["device:3", "user:u1"], EventKind.DEVICE_STATUS_UPDATE, {})

        replayed = bus.replay_since(0, topics={"device:2", "user:u1"})

        assert [event.id for event in replayed] == [2, 3]

    def test_empty_log(self, bus):
        assert bus.last_event_id == 0
        assert bus.replay_since(0) == []

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ReplayLog(capacity=0)
