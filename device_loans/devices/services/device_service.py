import secrets
import string
from datetime import datetime
from typing import Callable, List, Optional

from device_loans.core.time.clock import Clock, SystemClock
from device_loans.devices.domain.device import Device, create_device
from device_loans.devices.domain.exceptions import ConcurrencyConflictError
from device_loans.devices.store.device_store import DeviceStore

_ID_ALPHABET = string.ascii_lowercase + string.digits


class DeviceAlreadyExistsError(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"A device with id '{device_id}' already exists.")
        self.device_id = device_id


def generate_id(prefix: str, now: datetime) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{prefix}-{now.strftime('%Y%m%d%H%M%S')}-{suffix}"


class DeviceService:
    """
    Create/update/delete/list use cases. Field rules live in create_device.
    """

    def __init__(
        self,
        device_store: DeviceStore,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
        max_attempts: int = 5,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.device_store = device_store
        self.clock = clock or SystemClock()
        self.id_factory = id_factory
        self.max_attempts = max_attempts

    def create(
        self,
        name: str,
        description: str,
        count: Optional[int] = None,
        device_id: Optional[str] = None,
    ) -> Device:
        now = self.clock.now()
        new_id = device_id or (self.id_factory() if self.id_factory else generate_id("device", now))
        device = create_device(
            id=new_id,
            name=name,
            description=description,
            count=1 if count is None else count,
            updated_at=now,
        )
        try:
            return self.device_store.save(device, expected_version=0)
        except ConcurrencyConflictError:
            raise DeviceAlreadyExistsError(new_id)

    def update(
        self,
        device_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        count: Optional[int] = None,
    ) -> Optional[Device]:
        """
        Merges the given fields into the stored device with a conditional save
        on the version that was read. A concurrent write (e.g. a reservation
        delta) forces a re-read so its count and last_event_id survive unless
        count is being set explicitly. Conflicts past max_attempts propagate.
        """
        attempt = 0
        while True:
            attempt += 1
            existing = self.device_store.get_by_id(device_id)
            if existing is None:
                return None
            updated = create_device(
                id=existing.id,
                name=existing.name if name is None else name,
                description=existing.description if description is None else description,
                count=existing.count if count is None else count,
                updated_at=self.clock.now(),
                version=existing.version,
                last_event_id=existing.last_event_id,
            )
            try:
                return self.device_store.save(updated, expected_version=existing.version)
            except ConcurrencyConflictError:
                if attempt >= self.max_attempts:
                    raise

    def delete(self, device_id: str) -> bool:
        if self.device_store.get_by_id(device_id) is None:
            return False
        self.device_store.delete(device_id)
        return True

    def list(self) -> List[Device]:
        return self.device_store.list()
