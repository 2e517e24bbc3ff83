import logging
from dataclasses import dataclass
from typing import Optional

from device_loans.core.logging.structured_logger import StructuredLogger
from device_loans.core.time.clock import Clock, SystemClock
from device_loans.devices.domain.device import Device
from device_loans.devices.domain.exceptions import (
    ConcurrencyConflictError,
    DeviceNotFoundError,
    WouldGoNegativeError,
)
from device_loans.devices.store.device_store import DeviceStore


@dataclass(frozen=True)
class DeltaOutcome:
    device: Device
    applied: bool


class DeviceCountDeltaService:
    """
    Applies a signed delta to a device's available count.

    The read-modify-write is a conditional save on the version that was read;
    a concurrent writer makes the save fail and the whole cycle is retried, so
    no update is lost. When an event id is supplied and matches the device's
    last_event_id the delta has already landed and is not applied again.
    """

    def __init__(
        self,
        device_store: DeviceStore,
        clock: Optional[Clock] = None,
        max_attempts: int = 5,
        structured_logger: Optional[StructuredLogger] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.device_store = device_store
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.structured_logger = structured_logger

    def apply_delta(self, device_id: str, delta: int, event_id: Optional[str] = None) -> DeltaOutcome:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValueError("delta must be an integer")

        attempt = 0
        while True:
            attempt += 1
            current = self.device_store.get_by_id(device_id)
            if current is None:
                raise DeviceNotFoundError(device_id)

            if event_id is not None and current.last_event_id == event_id:
                return DeltaOutcome(device=current, applied=False)

            candidate = current.count + delta
            if candidate < 0:
                raise WouldGoNegativeError(device_id, delta, candidate)

            updated = current.with_count(candidate, self.clock.now(), event_id=event_id)
            try:
                saved = self.device_store.save(updated, expected_version=current.version)
            except ConcurrencyConflictError as exc:
                self._log(
                    "DEVICE_DELTA_CONFLICT",
                    logging.WARNING,
                    device_id=device_id,
                    delta=delta,
                    attempt=attempt,
                    expected_version=exc.expected_version,
                    actual_version=exc.actual_version,
                )
                if attempt >= self.max_attempts:
                    raise
                continue
            return DeltaOutcome(device=saved, applied=True)

    def _log(self, event_type: str, level: int, **fields) -> None:
        if not self.structured_logger:
            return
        self.structured_logger.emit(event_type, level=level, **fields)
