import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional


class DeviceError(Exception):
    """Raised when a device value violates a field rule."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


@dataclass(frozen=True)
class Device:
    """
    One device model in the shared loan pool.
    `count` is the number currently available; `version` is the
    optimistic-concurrency token owned by the device store.
    """
    id: str
    name: str
    description: str
    count: int
    updated_at: datetime
    version: int = 0
    last_event_id: Optional[str] = None

    def with_count(self, count: int, updated_at: datetime, event_id: Optional[str] = None) -> "Device":
        return create_device(
            id=self.id,
            name=self.name,
            description=self.description,
            count=count,
            updated_at=updated_at,
            version=self.version,
            last_event_id=event_id if event_id is not None else self.last_event_id,
        )

    def with_version(self, version: int) -> "Device":
        return replace(self, version=version)


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or value.strip() == ""


def validate_count(count: Any) -> None:
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        raise DeviceError("count", "count must be a number greater than or equal to 0.")
    if not math.isfinite(count) or count < 0:
        raise DeviceError("count", "count must be a number greater than or equal to 0.")
    if isinstance(count, float) and not count.is_integer():
        raise DeviceError("count", "count must be an integer.")


def create_device(
    id: Any,
    name: Any,
    description: Any,
    count: Any,
    updated_at: Any,
    version: int = 0,
    last_event_id: Optional[str] = None,
) -> Device:
    if _is_blank(id):
        raise DeviceError("id", "Device id must be a non-empty string.")
    if _is_blank(name):
        raise DeviceError("name", "Device name must be a non-empty string.")
    validate_count(count)
    if _is_blank(description):
        raise DeviceError("description", "Device description must be a non-empty string.")
    if not isinstance(updated_at, datetime):
        raise DeviceError("updatedAt", "updatedAt must be a valid datetime.")

    return Device(
        id=id,
        name=name,
        description=description,
        count=int(count),
        updated_at=updated_at,
        version=int(version),
        last_event_id=last_event_id,
    )
