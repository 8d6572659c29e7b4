"""Tests for the RealtimeHub publishing facade."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from device_service.infra.realtime import CloseSignal, EventKind, device_topic, org_topic


def _connect(hub, handle, *topics: str):
    hub.registry.register(handle.connection_id, handle.user_id, handle)
    for topic in topics:
        hub.registry.subscribe(handle.connection_id, topic)
    return handle


async def _drain(handle) -> list:
    items = []
    while (item := await handle.next_item(timeout=0.05)) is not None:
        items.append(item)
        if isinstance(item, CloseSignal):
            break
    return items


class TestPublishing:
    @pytest.mark.asyncio
    async def test_device_update_reaches_watchers_and_owner(self, hub, make_handle):
        owner = _connect(hub, make_handle("owner"))
        watcher = _connect(hub, make_handle("watcher"), device_topic("dev-1"))
        bystander = _connect(hub, make_handle("other"))

        event_id = hub.publish_device_update("dev-1", "online", owner_id="owner", extra={"battery": 80})

        for handle in (owner, watcher):
            (event,) = await _drain(handle)
            assert event.id == event_id
            assert event.kind == EventKind.DEVICE_STATUS_UPDATE.value
            assert dict(event.payload) == {"device_id": "dev-1", "status": "online", "battery": 80}
        assert await _drain(bystander) == []

    @pytest.mark.asyncio
    async def test_heartbeat_to_owner_and_org(self, hub, make_handle):
        owner = _connect(hub, make_handle("owner"))
        colleague = _connect(hub, make_handle("colleague"), org_topic("org-1"))
        seen = datetime(2024, 1, 1, tzinfo=UTC)

        hub.publish_heartbeat("dev-1", seen, owner_id="owner", org_id="org-1")

        (event,) = await _drain(owner)
        assert event.payload["last_seen"] == seen.isoformat()
        assert len(await _drain(colleague)) == 1

    @pytest.mark.asyncio
    async def test_notification_targets_one_user(self, hub, make_handle):
        target = _connect(hub, make_handle("u1"))
        other = _connect(hub, make_handle("u2"))

        hub.publish_notification("u1", {"title": "Hi"})

        assert len(await _drain(target)) == 1
        assert await _drain(other) == []

    @pytest.mark.asyncio
    async def test_announcement_broadcast_and_by_role(self, hub, make_handle):
        user = _connect(hub, make_handle("u1", "user"))
        admin = _connect(hub, make_handle("u2", "admin"))

        hub.publish_announcement({"message": "everyone"})
        hub.publish_announcement({"message": "admins"}, role="admin")

        assert [e.payload["message"] for e in await _drain(user)] == ["everyone"]
        assert [e.payload["message"] for e in await _drain(admin)] == ["everyone", "admins"]

    def test_replay_and_bus_info(self, hub):
        hub.publish_notification("u1", {"n": 1})
        hub.publish_notification("u2", {"n": 2})

        assert [e.id for e in hub.replay_since(0, {"user:u2"})] == [2]
        assert hub.bus_info() == {"last_event_id": 2, "history_size": 2, "replay_capacity": 100}


class TestConnectionControl:
    @pytest.mark.asyncio
    async def test_revoking_one_token_closes_its_connections(self, hub, make_handle):
        revoked = _connect(hub, make_handle("u1", token_id="tok-1"))
        kept = _connect(hub, make_handle("u1", token_id="tok-2"))

        hub.on_token_revoked("u1", "tok-1", "logout")

        assert hub.registry.get(revoked.connection_id) is None
        assert hub.registry.get(kept.connection_id) is kept
        (signal,) = await _drain(revoked)
        assert signal.reason == "token_logout"

    @pytest.mark.asyncio
    async def test_user_wide_revocation_closes_everything(self, hub, make_handle):
        _connect(hub, make_handle("u1", token_id="tok-1"))
        _connect(hub, make_handle("u1", token_id="tok-2"))

        hub.on_token_revoked("u1", None, "revoked")

        assert hub.connection_stats().total_connections == 0

    @pytest.mark.asyncio
    async def test_force_disconnect_and_close_all(self, hub, make_handle):
        _connect(hub, make_handle("u1"))
        _connect(hub, make_handle("u2"))
        _connect(hub, make_handle("u3"))

        assert hub.force_disconnect("u1", "admin_action") == 1
        assert hub.close_all() == 2
        assert hub.connection_stats().total_connections == 0

    @pytest.mark.asyncio
    async def test_prune_idle(self, hub, make_handle):
        idle = _connect(hub, make_handle("u1"))
        idle.last_activity -= 120

        assert hub.prune_idle(60) == 1
