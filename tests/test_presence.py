"""Tests for the device presence registry (grace-period offline handling)."""

from __future__ import annotations

import asyncio

import pytest

from courier.devices.presence import DeviceIdentity, PresenceRegistry, PresenceState

GRACE = 0.05


def _identity(device_id="D1", **kw) -> DeviceIdentity:
    return DeviceIdentity(device_id=device_id, display_name=kw.pop("display_name", "Kiosk"), **kw)


@pytest.fixture()
def registry():
    reg = PresenceRegistry(grace_seconds=GRACE)
    reg.transitions = []
    reg.on_change(lambda s, prev: reg.transitions.append((s.device_id, prev, s.state)))
    return reg


def _offline_transitions(reg, device_id="D1"):
    return [t for t in reg.transitions if t[0] == device_id and t[2] == PresenceState.OFFLINE]


class TestConnect:
    def test_new_device_goes_online(self, registry):
        session = registry.on_connect("T1", _identity())
        assert session.state == PresenceState.ONLINE
        assert session.transport_id == "T1"
        assert session.display_name == "Kiosk"
        assert registry.resolve_transport("D1") == "T1"
        assert registry.transitions == [("D1", None, PresenceState.ONLINE)]

    def test_missing_device_id_gets_placeholder(self, registry):
        session = registry.on_connect("T9", DeviceIdentity())
        assert session.device_id == "anon-T9"
        assert session.display_name == "Unnamed"

    def test_one_record_per_device(self, registry):
        registry.on_connect("T1", _identity())
        registry.on_connect("T2", _identity(display_name="Renamed"))
        records = registry.snapshot()
        assert len(records) == 1
        assert records[0].transport_id == "T2"
        assert records[0].display_name == "Renamed"

    def test_touch_refreshes_last_seen(self, registry):
        before = registry.on_connect("T1", _identity()).last_seen_at
        assert registry.touch("T1") is True
        assert registry.get("D1").last_seen_at >= before
        assert registry.touch("unknown") is False


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_disconnect_goes_offline_after_grace(self, registry):
        registry.on_connect("T1", _identity())
        assert registry.on_disconnect("T1") is True

        # Still online inside the grace window
        assert registry.get("D1").state == PresenceState.ONLINE
        await asyncio.sleep(GRACE * 4)

        session = registry.get("D1")
        assert session.state == PresenceState.OFFLINE
        assert session.transport_id is None
        assert registry.resolve_transport("D1") is None
        assert len(_offline_transitions(registry)) == 1
        assert registry.pending_checks() == 0

    @pytest.mark.asyncio
    async def test_reconnect_within_grace_never_flickers(self, registry):
        registry.on_connect("T1", _identity())
        registry.on_disconnect("T1")
        await asyncio.sleep(GRACE / 5)
        registry.on_connect("T2", _identity())

        await asyncio.sleep(GRACE * 4)
        session = registry.get("D1")
        assert session.state == PresenceState.ONLINE
        assert session.transport_id == "T2"
        assert _offline_transitions(registry) == []

    @pytest.mark.asyncio
    async def test_superseded_transport_close_is_ignored(self, registry):
        registry.on_connect("T1", _identity())
        registry.on_connect("T2", _identity())
        assert registry.on_disconnect("T1") is False
        assert registry.pending_checks() == 0

        await asyncio.sleep(GRACE * 4)
        assert registry.get("D1").state == PresenceState.ONLINE

    @pytest.mark.asyncio
    async def test_double_disconnect_schedules_once(self, registry):
        registry.on_connect("T1", _identity())
        assert registry.on_disconnect("T1") is True
        assert registry.on_disconnect("T1") is False

        await asyncio.sleep(GRACE * 4)
        assert len(_offline_transitions(registry)) == 1

    def test_disconnect_outside_loop_keeps_transport(self, registry):
        registry.on_connect("T1", _identity())
        with pytest.raises(RuntimeError):
            registry.on_disconnect("T1")
        assert registry.device_for_transport("T1") == "D1"
        assert registry.resolve_transport("D1") == "T1"

    @pytest.mark.asyncio
    async def test_anonymous_record_dropped_when_offline(self, registry):
        session = registry.on_connect("T9", DeviceIdentity())
        assert session.anonymous is True
        registry.on_disconnect("T9")
        await asyncio.sleep(GRACE * 4)

        assert registry.get("anon-T9") is None
        assert registry.snapshot() == []
        assert _offline_transitions(registry, "anon-T9") == [("anon-T9", PresenceState.ONLINE, PresenceState.OFFLINE)]

    @pytest.mark.asyncio
    async def test_named_record_kept_when_offline(self, registry):
        assert registry.on_connect("T1", _identity()).anonymous is False
        registry.on_disconnect("T1")
        await asyncio.sleep(GRACE * 4)
        assert [s.device_id for s in registry.snapshot()] == ["D1"]

    @pytest.mark.asyncio
    async def test_offline_device_comes_back(self, registry):
        registry.on_connect("T1", _identity())
        registry.on_disconnect("T1")
        await asyncio.sleep(GRACE * 4)

        session = registry.on_connect("T3", _identity())
        assert session.state == PresenceState.ONLINE
        assert registry.transitions[-1] == ("D1", PresenceState.OFFLINE, PresenceState.ONLINE)


class TestAuthenticate:
    def test_placeholder_for_unknown_device(self, registry):
        session = registry.on_authenticate("D7", "ABC123")
        assert session.state == PresenceState.AUTHENTICATED
        assert session.transport_id is None
        assert session.license_key == "ABC123"
        assert registry.resolve_transport("D7") is None

    def test_keeps_transport_of_connected_device(self, registry):
        registry.on_connect("T1", _identity())
        session = registry.on_authenticate("D1", "ABC123", _identity(model="X2"))
        assert session.state == PresenceState.AUTHENTICATED
        assert session.model == "X2"
        assert registry.resolve_transport("D1") == "T1"

    @pytest.mark.asyncio
    async def test_authenticated_device_still_expires(self, registry):
        registry.on_connect("T1", _identity())
        registry.on_authenticate("D1", "ABC123")
        registry.on_disconnect("T1")
        await asyncio.sleep(GRACE * 4)
        assert registry.get("D1").state == PresenceState.OFFLINE
        assert registry.get("D1").license_key == "ABC123"


class TestViews:
    def test_view_is_json_ready(self, registry):
        registry.on_connect("T1", _identity())
        view = registry.views()[0]
        assert view["state"] == "online"
        assert "generation" not in view
        assert isinstance(view["last_seen_at"], str)

    def test_failing_listener_does_not_block_others(self, registry):
        seen = []

        def broken(session, previous):
            raise ValueError("boom")

        registry.on_change(broken)
        registry.on_change(lambda s, p: seen.append(s.device_id))
        registry.on_connect("T1", _identity())
        assert seen == ["D1"]
