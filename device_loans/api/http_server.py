import json
import logging
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from device_loans.bootstrap.container import ServiceContainer
from device_loans.devices.domain.device import Device, DeviceError
from device_loans.devices.domain.exceptions import ConcurrencyConflictError
from device_loans.devices.services.device_service import DeviceAlreadyExistsError
from device_loans.inventory.domain.inventory_item import InventoryItem, InventoryItemError
from device_loans.reservations.services.availability_reconciler import ReservationEventFailedError
from device_loans.security.jwt_hmac import AuthClaims, AuthError, require_scope_or_role


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def _error_response(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"code": code, "message": message}
    body.update(extra)
    return JSONResponse(status_code=status_code, content={"error": body})


def serialize_device(device: Device) -> Dict[str, Any]:
    return {
        "id": device.id,
        "name": device.name,
        "description": device.description,
        "count": device.count,
        "updatedAt": device.updated_at.isoformat(),
    }


def serialize_inventory_item(item: InventoryItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "status": item.status.value,
        "updatedAt": item.updated_at.isoformat(),
    }


async def _json_object(request: Request) -> Dict[str, Any]:
    try:
        body = json.loads(await request.body())
    except ValueError:
        raise ApiError(400, "invalid_json", "Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ApiError(400, "invalid_json", "Request body must be a JSON object")
    return body


def create_app(container: ServiceContainer) -> FastAPI:
    app = FastAPI(title="Device Loans")
    settings = container.settings
    runtime_logger = container.structured_logger

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        return _error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(DeviceError)
    async def _device_error(request: Request, exc: DeviceError):
        return _error_response(400, f"invalid_{exc.field}", exc.message)

    @app.exception_handler(InventoryItemError)
    async def _inventory_error(request: Request, exc: InventoryItemError):
        return _error_response(400, f"invalid_{exc.field}", exc.message)

    def _writer(authorization: Optional[str] = Header(None)) -> AuthClaims:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise ApiError(401, "unauthorized", "Missing bearer token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            claims = container.verifier.verify(token)
        except AuthError as exc:
            raise ApiError(401, "unauthorized", str(exc))
        try:
            require_scope_or_role(claims, settings.AUTH_WRITE_SCOPE, settings.AUTH_WRITE_ROLE)
        except AuthError as exc:
            raise ApiError(403, "forbidden", str(exc))
        return claims

    # ── Reservation events ───────────────────────

    @app.post("/events/reservation-status")
    async def reservation_status_events(request: Request):
        try:
            payload = json.loads(await request.body())
        except ValueError:
            raise ApiError(400, "invalid_json", "Request body must be valid JSON")

        try:
            summary = await run_in_threadpool(container.reconciler.handle, payload)
        except ReservationEventFailedError as exc:
            # Non-2xx makes the transport redeliver the batch.
            return _error_response(500, exc.code, exc.message, event_id=exc.event_id)
        return {"status": "ok", **summary.to_dict()}

    # ── Devices ──────────────────────────────────

    @app.get("/devices")
    def list_devices():
        return {"data": [serialize_device(d) for d in container.device_service.list()]}

    @app.post("/devices", status_code=201)
    async def create_device(request: Request, claims: AuthClaims = Depends(_writer)):
        body = await _json_object(request)
        device_id = body.get("id")
        if device_id is not None and (not isinstance(device_id, str) or not device_id.strip()):
            raise ApiError(400, "invalid_id", "id, if provided, must be a non-empty string")
        try:
            created = await run_in_threadpool(
                container.device_service.create,
                name=body.get("name"),
                description=body.get("description"),
                count=body.get("count"),
                device_id=device_id,
            )
        except DeviceAlreadyExistsError:
            raise ApiError(409, "device_exists", "A device with this id already exists")
        return {"data": serialize_device(created)}

    @app.patch("/devices/{device_id}")
    async def update_device(device_id: str, request: Request, claims: AuthClaims = Depends(_writer)):
        body = await _json_object(request)
        fields = {key: body.get(key) for key in ("name", "description", "count")}
        if all(value is None for value in fields.values()):
            raise ApiError(400, "no_fields", "Provide at least one of: name, description, count")
        try:
            updated = await run_in_threadpool(container.device_service.update, device_id, **fields)
        except ConcurrencyConflictError:
            raise ApiError(409, "conflict", "Device was modified concurrently, retry the request")
        if updated is None:
            raise ApiError(404, "not_found", "Device not found")
        return {"data": serialize_device(updated)}

    @app.delete("/devices/{device_id}", status_code=204)
    def delete_device(device_id: str, claims: AuthClaims = Depends(_writer)):
        if not container.device_service.delete(device_id):
            raise ApiError(404, "not_found", "Device not found")
        return Response(status_code=204)

    # ── Inventory items ──────────────────────────

    @app.get("/inventory-items")
    def list_inventory_items(request: Request):
        raw_limit = request.query_params.get("limit")
        limit = None
        if raw_limit is not None:
            try:
                limit = int(raw_limit)
            except ValueError:
                limit = 0
            if limit <= 0:
                raise ApiError(400, "invalid_limit", "limit must be a positive number")
        items = container.inventory_item_service.list(limit=limit)
        return {"data": [serialize_inventory_item(i) for i in items]}

    @app.post("/inventory-items", status_code=201)
    async def create_inventory_item(request: Request):
        body = await _json_object(request)
        created = await run_in_threadpool(
            container.inventory_item_service.create,
            name=body.get("name"),
            description=body.get("description"),
            status=body.get("status"),
            item_id=body.get("id"),
        )
        return {"data": serialize_inventory_item(created)}

    # ── Health ───────────────────────────────────

    @app.get("/health")
    def health():
        started = time.monotonic()
        storage_status = "ok"
        try:
            container.device_store.list()
        except Exception as exc:
            storage_status = "degraded"
            runtime_logger.emit("HEALTH_CHECK_FAILED", level=logging.WARNING, error=str(exc))
        payload = {
            "status": storage_status,
            "storageStatus": storage_status,
            "storeBackend": settings.STORE_BACKEND,
            "timestamp": container.clock.now().isoformat(),
            "durationMs": round((time.monotonic() - started) * 1000.0, 3),
        }
        runtime_logger.emit("HEALTH_CHECK", **payload)
        return JSONResponse(status_code=200 if storage_status == "ok" else 503, content=payload)

    return app


def run_server(container: ServiceContainer) -> None:
    uvicorn.run(
        create_app(container),
        host=container.settings.HTTP_HOST,
        port=container.settings.HTTP_PORT,
    )
