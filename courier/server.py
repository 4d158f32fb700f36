"""Courier: standalone hub server.

Exposes:
  GET  /health                  - liveness check
  GET  /status                  - connected devices and panels
  POST /api/ping                - heartbeat from a local panel
  POST /api/licenses/validate   - one-time license activation
  GET  /download/{token}        - redeem a download grant
  WS   /ws/device               - device channel
  WS   /ws/panel                - operator panel channel
  /admin/...                    - operator API (see courier.admin_api)

Start with::

    python -m courier.server
    # or
    uvicorn courier.server:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from courier import __version__
from courier.admin_api import router as admin_router
from courier.devices.websocket import device_ws_handler, panel_ws_handler
from courier.errors import HTTP_STATUS, Outcome, StorageError
from courier.hub import get_hub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    hub = get_hub()
    await hub.start()
    try:
        yield
    finally:
        await hub.stop()


app = FastAPI(title="Courier", version=__version__, lifespan=lifespan)
app.include_router(admin_router)
app.add_api_websocket_route("/ws/device", device_ws_handler)
app.add_api_websocket_route("/ws/panel", panel_ws_handler)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


# ──────────────────────────────────────────────────────────────────
# Request models
# ──────────────────────────────────────────────────────────────────

class ValidateLicenseRequest(BaseModel):
    key: str = Field(max_length=128)
    device_id: str = Field(max_length=128)
    display_name: str = Field(default="", max_length=128)
    model: str = Field(default="", max_length=128)


class PanelPing(BaseModel):
    id: str = Field(default="", max_length=128)
    source: str | None = Field(default=None, max_length=128)
    devices: int | None = Field(default=None, ge=0)
    status: str | None = Field(default=None, max_length=128)
    timestamp: str | None = Field(default=None, max_length=64)


# ──────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.get("/status")
async def status():
    hub = get_hub()
    hub.panels.prune()
    return {"devices": hub.presence.views(), "panels": hub.panels.views()}


@app.post("/api/ping")
async def panel_ping(req: PanelPing):
    hub = get_hub()
    panel_id = req.id.strip()
    if panel_id and hub.panels.ping(panel_id, req.source, req.devices, req.status, req.timestamp):
        hub.broadcast_panel_list()
    return {"ok": True}


@app.post("/api/licenses/validate")
async def validate_license(req: ValidateLicenseRequest):
    result = get_hub().delivery.validate_license(req.key, req.device_id, req.display_name, req.model)
    body = {"accepted": result.accepted, "device_id": req.device_id}
    if not result.accepted:
        body["reason"] = result.reason
        return JSONResponse(status_code=HTTP_STATUS[result.outcome], content=body)
    return body


@app.get("/download/{token}")
async def download(token: str):
    result = get_hub().delivery.redeem(token)
    if result.outcome != Outcome.OK:
        raise HTTPException(status_code=HTTP_STATUS[result.outcome], detail=result.reason)
    return FileResponse(result.path, filename=result.filename, media_type="application/zip")


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    host = os.environ.get("COURIER_HOST", "0.0.0.0")
    port = int(os.environ.get("COURIER_PORT", "3000"))
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Starting Courier hub on %s:%d", host, port)
    uvicorn.run("courier.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
