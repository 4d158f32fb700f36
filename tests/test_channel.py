"""Tests for the in-process channel bus."""

from __future__ import annotations

import asyncio

import pytest

from courier.devices.channel import DEVICE_ROOM, MAX_BACKLOG, PANEL_ROOM, ChannelBus


class StalledSocket:
    """Socket whose sends block until ``release`` is called."""

    def __init__(self):
        self.sent: list[dict] = []
        self._gate = asyncio.Event()

    async def send_json(self, message: dict) -> None:
        await self._gate.wait()
        self.sent.append(message)

    def release(self) -> None:
        self._gate.set()


def _snapshot(version: int) -> dict:
    return {"type": "PRESENCE_SNAPSHOT", "version": version}


class TestAttach:
    def test_attach_assigns_transport_id(self, fake_socket):
        bus = ChannelBus()
        conn = bus.attach(fake_socket())
        assert conn.transport_id.startswith("tr-")
        assert conn.room == DEVICE_ROOM
        assert bus.get(conn.transport_id) is conn

    def test_rooms_filter_connections(self, fake_socket):
        bus = ChannelBus()
        bus.attach(fake_socket(), DEVICE_ROOM, "T1")
        bus.attach(fake_socket(), PANEL_ROOM, "P1")
        assert [c.transport_id for c in bus.connections(PANEL_ROOM)] == ["P1"]
        assert len(bus.connections()) == 2

    def test_detach(self, fake_socket):
        bus = ChannelBus()
        bus.attach(fake_socket(), transport_id="T1")
        assert bus.detach("T1") is not None
        assert bus.detach("T1") is None
        assert bus.get("T1") is None


class TestSend:
    @pytest.mark.asyncio
    async def test_targeted_send(self, fake_socket):
        bus = ChannelBus()
        sock = fake_socket()
        bus.attach(sock, transport_id="T1")
        assert await bus.send("T1", {"type": "PING"}) is True
        assert sock.sent == [{"type": "PING"}]

    @pytest.mark.asyncio
    async def test_send_to_unknown_transport(self):
        assert await ChannelBus().send("nope", {"type": "PING"}) is False

    @pytest.mark.asyncio
    async def test_send_failure_reported(self, fake_socket):
        bus = ChannelBus()
        bus.attach(fake_socket(fail=True), transport_id="T1")
        assert await bus.send("T1", {"type": "PING"}) is False


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_room(self, fake_socket):
        bus = ChannelBus()
        device, panel = fake_socket(), fake_socket()
        bus.attach(device, DEVICE_ROOM)
        bus.attach(panel, PANEL_ROOM)

        assert bus.broadcast({"type": "HI"}) == 2
        await bus.drain()
        assert device.sent == panel.sent == [{"type": "HI"}]

    @pytest.mark.asyncio
    async def test_broadcast_to_one_room(self, fake_socket):
        bus = ChannelBus()
        device, panel = fake_socket(), fake_socket()
        bus.attach(device, DEVICE_ROOM)
        bus.attach(panel, PANEL_ROOM)

        assert bus.broadcast({"type": "HI"}, room=PANEL_ROOM) == 1
        await bus.drain()
        assert device.sent == []
        assert panel.of_type("HI")

    @pytest.mark.asyncio
    async def test_broken_receiver_does_not_stop_others(self, fake_socket):
        bus = ChannelBus()
        good = fake_socket()
        bus.attach(fake_socket(fail=True))
        bus.attach(good)

        bus.broadcast({"type": "HI"})
        await bus.drain()
        assert good.sent == [{"type": "HI"}]

    @pytest.mark.asyncio
    async def test_broadcast_without_receivers(self):
        assert ChannelBus().broadcast({"type": "HI"}) == 0


class TestSlowReceiver:
    @pytest.mark.asyncio
    async def test_one_outbox_task_per_connection(self):
        bus = ChannelBus()
        sock = StalledSocket()
        bus.attach(sock, transport_id="T1")

        bus.broadcast(_snapshot(0))
        await asyncio.sleep(0)
        for version in range(1, 10):
            bus.broadcast(_snapshot(version))
            if version == 4:
                bus.broadcast({"type": "REMOTE_MESSAGE", "payload": "x"})
        assert len(bus._pending) == 1
        assert bus.get("T1").backlog == 2

        sock.release()
        await bus.drain()
        assert sock.sent == [
            _snapshot(0),
            {"type": "REMOTE_MESSAGE", "payload": "x"},
            _snapshot(9),
        ]

    @pytest.mark.asyncio
    async def test_backlog_is_capped(self):
        bus = ChannelBus()
        sock = StalledSocket()
        bus.attach(sock, transport_id="T1")

        for n in range(MAX_BACKLOG * 3):
            bus.broadcast({"type": "REMOTE_MESSAGE", "n": n})
        await asyncio.sleep(0)
        assert bus.get("T1").backlog <= MAX_BACKLOG

        sock.release()
        await bus.drain()
        assert sock.sent[-1] == {"type": "REMOTE_MESSAGE", "n": MAX_BACKLOG * 3 - 1}
        assert len(sock.sent) <= MAX_BACKLOG + 1

    @pytest.mark.asyncio
    async def test_failed_send_drops_backlog(self, fake_socket):
        bus = ChannelBus()
        bus.attach(fake_socket(fail=True), transport_id="T1")
        bus.broadcast({"type": "HI"})
        bus.broadcast({"type": "HI"})
        await bus.drain()
        assert bus.get("T1").backlog == 0
        assert bus._pending == set()
