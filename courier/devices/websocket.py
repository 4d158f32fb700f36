"""WebSocket endpoints for devices and operator panels.

  Device → Server:
    HELLO, HEARTBEAT, VALIDATE_LICENSE, RELAY

  Panel → Server:
    REGISTER_PANEL, RELAY

  Server → Device / Panel:
    ACCEPTED, ERROR, LICENSE_RESULT, PRESENCE_SNAPSHOT, PANEL_LIST,
    REMOTE_MESSAGE, PACKAGE_DELIVERY, PACKAGE_LINK
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from courier.devices.channel import DEVICE_ROOM, PANEL_ROOM, Connection
from courier.devices.presence import DeviceIdentity, DeviceSession
from courier.errors import StorageError
from courier.hub import CourierHub, get_hub
from courier.scheduler import snapshot_message

logger = logging.getLogger(__name__)

HELLO_TIMEOUT = 10.0


async def _reject(websocket: WebSocket, detail: str) -> None:
    await websocket.send_json({"type": "ERROR", "detail": detail})
    await websocket.close()


# ── Device socket ─────────────────────────────────────────────────


async def device_ws_handler(websocket: WebSocket) -> None:
    """Handle one device connection.

    Mount it in FastAPI via:
        app.add_api_websocket_route("/ws/device", device_ws_handler)
    """
    await websocket.accept()
    hub = get_hub()
    conn: Connection | None = None
    device_id: str | None = None

    try:
        # First message must be HELLO
        raw = await asyncio.wait_for(websocket.receive_json(), timeout=HELLO_TIMEOUT)
        if not isinstance(raw, dict) or raw.get("type") != "HELLO":
            await _reject(websocket, "Expected HELLO")
            return
        client_ip = websocket.client.host if websocket.client else None
        try:
            identity = DeviceIdentity.model_validate({**raw, "source_address": client_ip})
        except ValidationError as exc:
            await _reject(websocket, f"Invalid identity: {exc.errors()[0]['msg']}")
            return

        conn = hub.bus.attach(websocket, DEVICE_ROOM)
        session = hub.presence.on_connect(conn.transport_id, identity)
        device_id = conn.label = session.device_id

        await conn.send({
            "type": "ACCEPTED",
            "transport_id": conn.transport_id,
            "device_id": device_id,
        })
        logger.info("Device connected: %s (%s) from %s", device_id, conn.transport_id, client_ip)

        async for msg in websocket.iter_json():
            msg_type = msg.get("type", "") if isinstance(msg, dict) else ""

            if msg_type == "HEARTBEAT":
                hub.presence.touch(conn.transport_id)

            elif msg_type == "VALIDATE_LICENSE":
                await _handle_validate(hub, conn, session, msg)

            elif msg_type == "RELAY":
                _relay(hub, device_id, msg)

            else:
                logger.warning("Unknown message type from %s: %s", device_id, msg_type)

    except WebSocketDisconnect:
        logger.info("Device disconnected: %s", device_id)
    except asyncio.TimeoutError:
        logger.warning("Device connection timed out (no HELLO)")
    except Exception:
        logger.exception("Error in device WebSocket for %s", device_id)
    finally:
        if conn is not None:
            hub.bus.detach(conn.transport_id)
            hub.presence.on_disconnect(conn.transport_id)


async def _handle_validate(hub: CourierHub, conn: Connection, session: DeviceSession, msg: dict) -> None:
    """In-band license validation for the connected device."""
    try:
        result = hub.delivery.validate_license(
            str(msg.get("key") or ""),
            session.device_id,
            session.display_name,
            session.model,
        )
    except StorageError as exc:
        logger.error("License validation failed for %s: %s", session.device_id, exc)
        await conn.send({"type": "ERROR", "detail": "License store unavailable"})
        return
    await conn.send({
        "type": "LICENSE_RESULT",
        "accepted": result.accepted,
        "reason": result.reason,
        "device_id": session.device_id,
    })


def _relay(hub: CourierHub, sender: str | None, msg: dict) -> None:
    hub.bus.broadcast({"type": "REMOTE_MESSAGE", "from": sender, "payload": msg.get("payload")})


# ── Panel socket ──────────────────────────────────────────────────


async def panel_ws_handler(websocket: WebSocket) -> None:
    """Handle an operator panel that observes presence and relays messages."""
    await websocket.accept()
    hub = get_hub()
    conn: Connection | None = None

    try:
        raw = await asyncio.wait_for(websocket.receive_json(), timeout=HELLO_TIMEOUT)
        panel_id = raw.get("panel_id") if isinstance(raw, dict) else None
        if not isinstance(raw, dict) or raw.get("type") != "REGISTER_PANEL" or not panel_id:
            await _reject(websocket, "Expected REGISTER_PANEL with panel_id")
            return

        conn = hub.bus.attach(websocket, PANEL_ROOM)
        conn.label = str(panel_id)
        hub.panels.register(conn.label, conn.transport_id)
        await conn.send({"type": "ACCEPTED", "transport_id": conn.transport_id, "panel_id": conn.label})
        await conn.send(snapshot_message(hub.presence))
        logger.info("Panel registered: %s", conn.label)
        hub.broadcast_panel_list()

        async for msg in websocket.iter_json():
            if isinstance(msg, dict) and msg.get("type") == "RELAY":
                _relay(hub, conn.label, msg)

    except WebSocketDisconnect:
        logger.info("Panel disconnected: %s", conn.label if conn else None)
    except asyncio.TimeoutError:
        logger.warning("Panel connection timed out (no REGISTER_PANEL)")
    except Exception:
        logger.exception("Error in panel WebSocket")
    finally:
        if conn is not None:
            hub.bus.detach(conn.transport_id)
            if hub.panels.unregister_transport(conn.transport_id):
                hub.broadcast_panel_list()
