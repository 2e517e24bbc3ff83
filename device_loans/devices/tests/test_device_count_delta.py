from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from device_loans.core.time.clock import FrozenClock
from device_loans.devices.domain.device import Device, create_device
from device_loans.devices.domain.exceptions import (
    ConcurrencyConflictError,
    DeviceNotFoundError,
    WouldGoNegativeError,
)
from device_loans.devices.services.device_count_delta import DeviceCountDeltaService
from device_loans.devices.store.device_store import InMemoryDeviceStore

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


# --- Mocks ---

class _RacingStore(InMemoryDeviceStore):
    """Lands a competing write between the applier's read and its save."""

    def __init__(self, initial, races: int = 1, competing_delta: int = 1):
        super().__init__(initial)
        self.races = races
        self.competing_delta = competing_delta
        self.conditional_saves = 0

    def save(self, device: Device, expected_version: Optional[int] = None) -> Device:
        if expected_version is not None:
            self.conditional_saves += 1
            if self.races > 0:
                self.races -= 1
                current = self.get_by_id(device.id)
                super().save(current.with_count(current.count + self.competing_delta, current.updated_at))
        return super().save(device, expected_version=expected_version)


# --- Helpers ---

def _device(count: int, device_id: str = "device-42") -> Device:
    return create_device(
        id=device_id,
        name="Laptop",
        description="Loan laptop",
        count=count,
        updated_at=START,
    )


def _service(store, max_attempts: int = 5):
    clock = FrozenClock(START)
    clock.advance(timedelta(minutes=5))
    return DeviceCountDeltaService(store, clock=clock, max_attempts=max_attempts), clock


# --- Tests ---

def test_decrement_from_positive_count():
    store = InMemoryDeviceStore([_device(2)])
    service, clock = _service(store)

    outcome = service.apply_delta("device-42", -1)

    assert outcome.applied
    assert outcome.device.count == 1
    assert outcome.device.updated_at == clock.now()
    stored = store.get_by_id("device-42")
    assert stored.count == 1
    assert stored.name == "Laptop"
    assert stored.description == "Loan laptop"


def test_decrement_at_zero_is_rejected_and_leaves_device_unchanged():
    store = InMemoryDeviceStore([_device(0, "device-9")])
    before = store.get_by_id("device-9")
    service, _ = _service(store)

    with pytest.raises(WouldGoNegativeError) as exc:
        service.apply_delta("device-9", -1)

    assert exc.value.code == "would_go_negative"
    assert exc.value.candidate == -1
    assert "count would become -1" in str(exc.value)
    assert store.get_by_id("device-9") == before


def test_missing_device_is_not_found():
    service, _ = _service(InMemoryDeviceStore())

    with pytest.raises(DeviceNotFoundError) as exc:
        service.apply_delta("device-missing", 1)

    assert exc.value.code == "not_found"
    assert str(exc.value) == "Device with id 'device-missing' not found."


def test_zero_delta_still_writes():
    store = InMemoryDeviceStore([_device(3)])
    service, clock = _service(store)

    outcome = service.apply_delta("device-42", 0)

    assert outcome.device.count == 3
    assert outcome.device.version == 2
    assert store.get_by_id("device-42").updated_at == clock.now()


def test_increment_then_decrement_round_trips():
    store = InMemoryDeviceStore([_device(7)])
    service, _ = _service(store)

    service.apply_delta("device-42", 1)
    service.apply_delta("device-42", -1)

    assert store.get_by_id("device-42").count == 7


@pytest.mark.parametrize("delta", [1.0, "1", True, None])
def test_non_integer_delta_is_rejected(delta):
    service, _ = _service(InMemoryDeviceStore([_device(1)]))
    with pytest.raises(ValueError):
        service.apply_delta("device-42", delta)


def test_conflicting_writer_is_retried_without_losing_its_update():
    store = _RacingStore([_device(2)], races=1, competing_delta=1)
    service, _ = _service(store)

    outcome = service.apply_delta("device-42", -1)

    # 2 + 1 (competing writer) - 1 (this delta)
    assert outcome.device.count == 2
    assert store.conditional_saves == 2


def test_conflicts_beyond_max_attempts_propagate():
    store = _RacingStore([_device(2)], races=10)
    service, _ = _service(store, max_attempts=3)

    with pytest.raises(ConcurrencyConflictError):
        service.apply_delta("device-42", -1)

    assert store.conditional_saves == 3


def test_event_already_recorded_on_device_is_not_reapplied():
    store = InMemoryDeviceStore([_device(2)])
    service, _ = _service(store)

    first = service.apply_delta("device-42", -1, event_id="e1")
    second = service.apply_delta("device-42", -1, event_id="e1")

    assert first.applied
    assert not second.applied
    assert second.device.count == 1
    assert store.get_by_id("device-42").last_event_id == "e1"


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        DeviceCountDeltaService(InMemoryDeviceStore(), max_attempts=0)
