import inspect
from datetime import datetime, timedelta, timezone

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from device_loans.api.http_server import create_app
from device_loans.bootstrap.container import build_container
from device_loans.config.settings import Settings
from device_loans.core.time.clock import FrozenClock
from device_loans.devices.domain.device import create_device
from device_loans.devices.store.device_store import InMemoryDeviceStore

NOW = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)


class _BrokenDeviceStore:
    def list(self):
        raise ConnectionError("database unreachable")


def _container(**overrides):
    settings = Settings(STORE_BACKEND="memory", AUTH_SECRET="test-secret", AUTH_ISSUER="", AUTH_AUDIENCE="")
    return build_container(settings, clock=FrozenClock(NOW), **overrides)


def _token(container, **claims) -> str:
    payload = {
        "sub": "staff-1",
        "exp": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp()),
    }
    payload.update(claims)
    return container.verifier.issue_for_tests(payload)


def _auth(container, **claims) -> dict:
    return {"Authorization": f"Bearer {_token(container, **claims)}"}


def _seed(container, device_id: str, count: int) -> None:
    container.device_store.save(
        create_device(
            id=device_id,
            name="Laptop",
            description="Loan laptop",
            count=count,
            updated_at=NOW,
        )
    )


def _event(event_id: str, event_type: str, device_id: str) -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "deviceModelId": device_id,
            "reservationId": "r1",
            "newStatus": event_type.split(".")[-1],
        },
    }


# --- Reservation events ---

def test_reservation_webhook_applies_batch_and_absorbs_redelivery():
    container = _container()
    _seed(container, "device-42", 2)
    client = TestClient(create_app(container))

    first = client.post("/events/reservation-status", json=[_event("e1", "reservation.collected", "device-42")])
    second = client.post("/events/reservation-status", json=_event("e1", "reservation.collected", "device-42"))

    assert first.status_code == 200
    assert first.json()["applied"] == 1
    assert second.status_code == 200
    assert second.json()["duplicate"] == 1
    assert container.device_store.get_by_id("device-42").count == 1


def test_reservation_webhook_returns_500_on_rejected_delta():
    container = _container()
    _seed(container, "device-9", 0)
    client = TestClient(create_app(container))

    response = client.post("/events/reservation-status", json=[_event("e5", "reservation.collected", "device-9")])

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "would_go_negative"
    assert error["event_id"] == "e5"
    assert not container.ledger.has("e5")


def test_reservation_webhook_rejects_invalid_json():
    client = TestClient(create_app(_container()))
    response = client.post(
        "/events/reservation-status",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_json"


# --- Devices ---

def test_create_device_requires_write_access():
    container = _container()
    client = TestClient(create_app(container))
    body = {"name": "Mouse", "description": "Wireless mouse", "count": 3}

    anonymous = client.post("/devices", json=body)
    viewer = client.post("/devices", json=body, headers=_auth(container, roles=["viewer"]))
    bad_token = client.post("/devices", json=body, headers={"Authorization": "Bearer a.b.c"})

    assert anonymous.status_code == 401
    assert viewer.status_code == 403
    assert bad_token.status_code == 401


def test_create_list_update_delete_device():
    container = _container()
    client = TestClient(create_app(container))
    headers = _auth(container, scope="read:devices write:devices")

    created = client.post(
        "/devices",
        json={"id": "device-7", "name": "Mouse", "description": "Wireless mouse", "count": 3},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["data"] == {
        "id": "device-7",
        "name": "Mouse",
        "description": "Wireless mouse",
        "count": 3,
        "updatedAt": NOW.isoformat(),
    }

    duplicate = client.post(
        "/devices",
        json={"id": "device-7", "name": "Mouse", "description": "Wireless mouse"},
        headers=headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "device_exists"

    listed = client.get("/devices")
    assert [d["id"] for d in listed.json()["data"]] == ["device-7"]

    patched = client.patch("/devices/device-7", json={"count": 5}, headers=_auth(container, roles=["staff"]))
    assert patched.status_code == 200
    assert patched.json()["data"]["count"] == 5

    deleted = client.delete("/devices/device-7", headers=headers)
    assert deleted.status_code == 204
    missing = client.delete("/devices/device-7", headers=headers)
    assert missing.status_code == 404


def test_device_validation_errors_use_error_envelope():
    container = _container()
    client = TestClient(create_app(container))
    headers = _auth(container, roles=["staff"])

    bad_count = client.post(
        "/devices", json={"name": "Mouse", "description": "Wireless mouse", "count": 1.5}, headers=headers
    )
    no_name = client.post("/devices", json={"description": "Wireless mouse"}, headers=headers)
    no_fields = client.patch("/devices/device-1", json={}, headers=headers)
    not_found = client.patch("/devices/device-1", json={"name": "x"}, headers=headers)

    assert bad_count.status_code == 400
    assert bad_count.json()["error"]["code"] == "invalid_count"
    assert no_name.json()["error"]["code"] == "invalid_name"
    assert no_fields.json()["error"]["code"] == "no_fields"
    assert not_found.status_code == 404


# --- Inventory items ---

def test_inventory_items_create_and_list_with_limit():
    client = TestClient(create_app(_container()))

    for n in range(3):
        response = client.post(
            "/inventory-items",
            json={"id": f"item-{n}", "name": f"Laptop #{n}", "description": "Asset"},
        )
        assert response.status_code == 201
        assert response.json()["data"]["status"] == "available"

    limited = client.get("/inventory-items", params={"limit": 2})
    invalid = client.get("/inventory-items", params={"limit": "zero"})

    assert [i["id"] for i in limited.json()["data"]] == ["item-0", "item-1"]
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "invalid_limit"


# --- Health ---

def test_health_reports_ok_and_degraded():
    healthy = TestClient(create_app(_container())).get("/health")
    degraded = TestClient(create_app(_container(device_store=_BrokenDeviceStore()))).get("/health")

    assert healthy.status_code == 200
    assert healthy.json()["storageStatus"] == "ok"
    assert degraded.status_code == 503
    assert degraded.json()["status"] == "degraded"


class _AlwaysConflictingStore(InMemoryDeviceStore):
    def save(self, device, expected_version=None):
        if expected_version is not None:
            InMemoryDeviceStore.save(self, self.get_by_id(device.id))
        return super().save(device, expected_version=expected_version)


def test_update_device_returns_409_when_conflicts_persist():
    container = _container(device_store=_AlwaysConflictingStore())
    _seed(container, "device-7", 2)
    client = TestClient(create_app(container))

    response = client.patch(
        "/devices/device-7",
        json={"name": "Renamed"},
        headers=_auth(container, scope="write:devices"),
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"
    assert container.device_store.get_by_id("device-7").name == "Laptop"


def test_store_backed_routes_do_not_block_the_event_loop():
    app = create_app(_container())
    endpoints = {
        (route.path, method): route.endpoint
        for route in app.routes
        if hasattr(route, "methods")
        for method in route.methods
    }

    for key in (
        ("/devices", "GET"),
        ("/devices/{device_id}", "DELETE"),
        ("/inventory-items", "GET"),
        ("/health", "GET"),
    ):
        assert not inspect.iscoroutinefunction(endpoints[key]), key
