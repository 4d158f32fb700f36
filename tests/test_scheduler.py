"""Tests for ResyncScheduler and hub-level snapshot broadcasts."""

from __future__ import annotations

import asyncio

import pytest

from courier.devices.channel import PANEL_ROOM, ChannelBus
from courier.devices.presence import DeviceIdentity, PresenceRegistry
from courier.scheduler import ResyncScheduler, snapshot_message


class TestSnapshot:
    def test_message_shape(self):
        presence = PresenceRegistry()
        presence.on_connect("T1", DeviceIdentity(device_id="D1"))
        msg = snapshot_message(presence)
        assert msg["type"] == "PRESENCE_SNAPSHOT"
        assert [d["device_id"] for d in msg["devices"]] == ["D1"]


class TestResyncScheduler:
    @pytest.mark.asyncio
    async def test_run_once_broadcasts(self, fake_socket):
        presence, bus = PresenceRegistry(), ChannelBus()
        panel = fake_socket()
        bus.attach(panel, PANEL_ROOM)

        scheduler = ResyncScheduler(presence, bus, interval_seconds=1)
        assert scheduler.run_once() == 1
        await bus.drain()
        assert panel.of_type("PRESENCE_SNAPSHOT")
        assert scheduler.ticks == 1

    @pytest.mark.asyncio
    async def test_start_stop(self, fake_socket):
        presence, bus = PresenceRegistry(), ChannelBus()
        panel = fake_socket()
        bus.attach(panel, PANEL_ROOM)
        scheduler = ResyncScheduler(presence, bus, interval_seconds=0.02)

        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler._task is None
        assert scheduler.ticks >= 2
        await bus.drain()
        assert len(panel.of_type("PRESENCE_SNAPSHOT")) == scheduler.ticks

    @pytest.mark.asyncio
    async def test_double_start_is_ignored(self):
        scheduler = ResyncScheduler(PresenceRegistry(), ChannelBus(), interval_seconds=1)
        await scheduler.start()
        task = scheduler._task
        await scheduler.start()
        assert scheduler._task is task
        await scheduler.stop()


class TestHubBroadcasts:
    @pytest.mark.asyncio
    async def test_presence_change_pushes_snapshot(self, hub, fake_socket):
        panel = fake_socket()
        hub.bus.attach(panel, PANEL_ROOM)

        hub.presence.on_connect("T1", DeviceIdentity(device_id="D1"))
        await hub.bus.drain()
        snapshot = panel.of_type("PRESENCE_SNAPSHOT")[-1]
        assert snapshot["devices"][0]["state"] == "online"

    @pytest.mark.asyncio
    async def test_offline_transition_pushes_snapshot(self, hub, fake_socket):
        panel = fake_socket()
        hub.bus.attach(panel, PANEL_ROOM)
        hub.presence.on_connect("T1", DeviceIdentity(device_id="D1"))
        hub.presence.on_disconnect("T1")

        await asyncio.sleep(0.2)
        await hub.bus.drain()
        assert panel.of_type("PRESENCE_SNAPSHOT")[-1]["devices"][0]["state"] == "offline"

    def test_change_without_loop_is_quiet(self, hub, fake_socket):
        panel = fake_socket()
        hub.bus.attach(panel, PANEL_ROOM)
        hub.presence.on_connect("T1", DeviceIdentity(device_id="D1"))
        assert panel.sent == []
