"""Tests for the operator panel registry."""

from __future__ import annotations

import pytest

from courier.devices.panels import PanelRegistry


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def panels(clock):
    return PanelRegistry(stale_seconds=30, clock=clock)


class TestSocketPanels:
    def test_register_reports_new_ids(self, panels):
        assert panels.register("ops-1", "P1") is True
        assert panels.register("ops-1", "P2") is False
        assert panels.ids() == ["ops-1"]
        assert panels.get("ops-1").transport_id == "P2"

    def test_unregister_by_transport(self, panels):
        panels.register("ops-1", "P1")
        assert panels.unregister_transport("P1") == "ops-1"
        assert panels.ids() == []
        assert panels.unregister_transport("P1") is None

    def test_superseded_transport_removes_nothing(self, panels):
        panels.register("ops-1", "P1")
        panels.register("ops-1", "P2")
        assert panels.unregister_transport("P1") is None
        assert panels.ids() == ["ops-1"]


class TestHeartbeats:
    def test_ping_creates_record(self, panels):
        assert panels.ping("local-1", "lan", 3, "ok", "2026-01-01T00:00:00Z") is True
        view = panels.views()[0]
        assert view == {
            "panel_id": "local-1",
            "transport_id": None,
            "connected_at": None,
            "last_ping_at": "2026-01-01T00:00:00Z",
            "source": "lan",
            "devices": 3,
            "status": "ok",
        }
        assert panels.ping("local-1", devices=4) is False
        assert panels.get("local-1").devices == 4

    def test_ping_keeps_socket_binding(self, panels):
        panels.register("ops-1", "P1")
        panels.ping("ops-1", devices=2)
        assert panels.get("ops-1").transport_id == "P1"
        assert panels.get("ops-1").last_ping_at is not None

    def test_prune_drops_only_stale_heartbeat_panels(self, panels, clock):
        panels.register("ops-1", "P1")
        panels.ping("local-1")
        clock.now += 20
        panels.ping("local-2")
        clock.now += 20

        assert panels.prune() == ["local-1"]
        assert sorted(panels.ids()) == ["local-2", "ops-1"]
