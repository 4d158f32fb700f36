"""Operator API router for Courier.

Package catalogue, license records, assignment and delivery actions, and
grant maintenance.  Everything except login requires an operator JWT (see
:mod:`courier.auth`).
"""

from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from courier.auth import (
    WeakPasswordError,
    authenticate,
    change_password,
    create_token,
    require_operator,
)
from courier.db import get_db, init_db
from courier.errors import HTTP_STATUS, Outcome, PackageError
from courier.hub import CourierHub, get_hub

router = APIRouter(prefix="/admin", tags=["admin"])


# ── Helper ────────────────────────────────────────────────────────

def _db() -> sqlite3.Connection:
    init_db()
    return get_db()


def _fail(outcome: Outcome, reason: str | None) -> HTTPException:
    return HTTPException(status_code=HTTP_STATUS.get(outcome, 400), detail=reason or outcome.value)


def _package_error(exc: PackageError) -> HTTPException:
    return _fail(exc.outcome, exc.detail)


# ══════════════════════════════════════════════════════════════════
# AUTH
# ══════════════════════════════════════════════════════════════════

class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
async def login(req: LoginRequest):
    user = authenticate(_db(), req.username, req.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user["id"], user["username"]), "user": user}


@router.get("/auth/me")
async def me(operator: dict = Depends(require_operator)):
    return {"id": operator["sub"], "username": operator["username"]}


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


@router.post("/auth/change-password")
async def change_operator_password(req: ChangePasswordRequest, operator: dict = Depends(require_operator)):
    try:
        changed = change_password(_db(), operator["sub"], req.current_password, req.new_password)
    except WeakPasswordError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not changed:
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# DEVICES
# ══════════════════════════════════════════════════════════════════

@router.get("/devices")
async def list_devices(_: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"devices": hub.presence.views()}


# ══════════════════════════════════════════════════════════════════
# PACKAGES
# ══════════════════════════════════════════════════════════════════

class PackageCreate(BaseModel):
    name: str
    kind: str
    variant: str
    version: str
    path: str


class PackageUpdate(BaseModel):
    name: str | None = None
    kind: str | None = None
    variant: str | None = None
    version: str | None = None
    path: str | None = None


@router.get("/packages")
async def list_packages(_: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"packages": [p.to_dict() for p in hub.packages.list_packages()]}


@router.post("/packages")
async def create_package(req: PackageCreate, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    try:
        package = hub.packages.create(req.name, req.kind, req.variant, req.version, req.path)
    except PackageError as exc:
        raise _package_error(exc)
    return {"ok": True, "package": package.to_dict()}


@router.get("/packages/{package_ref}")
async def get_package(package_ref: str, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    package = hub.packages.get(package_ref)
    if package is None:
        raise HTTPException(status_code=404, detail="Package not found")
    return package.to_dict()


@router.patch("/packages/{package_ref}")
async def update_package(
    package_ref: str,
    update: PackageUpdate,
    _: dict = Depends(require_operator),
    hub: CourierHub = Depends(get_hub),
):
    try:
        package = hub.packages.update(package_ref, **update.model_dump(exclude_none=True))
    except PackageError as exc:
        raise _package_error(exc)
    return {"ok": True, "package": package.to_dict()}


@router.delete("/packages/{package_ref}")
async def delete_package(package_ref: str, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    cleared = hub.delivery.remove_package(package_ref)
    if cleared is None:
        raise HTTPException(status_code=404, detail="Package not found")
    return {"ok": True, "licenses_cleared": cleared}


# ══════════════════════════════════════════════════════════════════
# LICENSES
# ══════════════════════════════════════════════════════════════════

class LicenseCreate(BaseModel):
    key: str = Field(min_length=1, max_length=128)


class LicenseImport(BaseModel):
    entries: list[Any]


@router.get("/licenses")
async def list_licenses(_: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"licenses": [vars(r) for r in hub.ledger.list_licenses()]}


@router.post("/licenses")
async def add_license(req: LicenseCreate, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    if not hub.ledger.add(req.key):
        raise HTTPException(status_code=409, detail="License already exists")
    return {"ok": True, "key": req.key}


@router.post("/licenses/import")
async def import_licenses(req: LicenseImport, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"ok": True, "imported": hub.ledger.import_entries(req.entries)}


@router.post("/licenses/{key}/clear")
async def clear_license(key: str, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    result = hub.ledger.clear_binding(key)
    if not result.accepted:
        raise _fail(result.outcome, result.reason)
    return {"ok": True, "license": vars(result.record)}


# ══════════════════════════════════════════════════════════════════
# DELIVERY
# ══════════════════════════════════════════════════════════════════

class AssignRequest(BaseModel):
    license_key: str
    package_ref: str


class SendPackageRequest(BaseModel):
    package_ref: str
    device_id: str | None = None
    transport_id: str | None = None
    ttl_minutes: float | None = None


@router.post("/assign")
async def assign_package(req: AssignRequest, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    result = await hub.delivery.assign(req.license_key, req.package_ref)
    if result.outcome != Outcome.OK:
        raise _fail(result.outcome, result.reason)
    return {
        "assigned": True,
        "delivered": result.delivered,
        "package": result.package.to_dict(),
        "device_id": result.device_id,
    }


@router.post("/send-now")
async def send_now(req: AssignRequest, _: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    result = await hub.delivery.send_now(req.license_key, req.package_ref)
    if result.outcome != Outcome.OK:
        raise _fail(result.outcome, result.reason)
    return {"sent": True, "device_id": result.device_id, "transport_id": result.transport_id}


@router.post("/send-package")
async def send_package(
    req: SendPackageRequest,
    request: Request,
    _: dict = Depends(require_operator),
    hub: CourierHub = Depends(get_hub),
):
    """Issue a download link for an online device and push it over its socket."""
    if not req.device_id and not req.transport_id:
        raise HTTPException(status_code=400, detail="device_id or transport_id required")
    ttl = req.ttl_minutes * 60 if req.ttl_minutes and req.ttl_minutes > 0 else None
    result = await hub.delivery.send_link(
        req.package_ref,
        device_id=req.device_id,
        transport_id=req.transport_id,
        ttl=ttl,
        base_url=str(request.base_url),
    )
    if result.outcome != Outcome.OK:
        raise _fail(result.outcome, result.reason)
    grant = result.grant
    return {
        "ok": True,
        "token": grant.token,
        "url": result.url,
        "expires_at": grant.expires_at,
        "size": grant.file_size,
        "delivered": result.delivered,
        "target": {"device_id": grant.target_device_id, "transport_id": grant.target_transport_id},
    }


@router.get("/grants")
async def list_grants(_: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"grants": [g.to_dict() for g in hub.delivery.list_grants()]}


@router.post("/purge-downloads")
async def purge_downloads(_: dict = Depends(require_operator), hub: CourierHub = Depends(get_hub)):
    return {"ok": True, "pruned": len(hub.delivery.prune_expired())}
