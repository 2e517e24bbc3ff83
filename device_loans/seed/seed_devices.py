import logging
from datetime import datetime, timezone
from typing import List

from device_loans.config.settings import Settings
from device_loans.bootstrap.container import build_container
from device_loans.core.logging.structured_logger import configure_logging
from device_loans.devices.domain.device import Device, create_device
from device_loans.devices.store.device_store import DeviceStore

logger = logging.getLogger(__name__)


def _at(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


# Sample pool for a lab environment.
SEED_DEVICES: List[Device] = [
    create_device(
        id="device-1001",
        name="USB-C Cable 1m",
        description="High quality USB-C to USB-C cable (1 meter).",
        count=25,
        updated_at=_at("2025-11-01T10:00:00"),
    ),
    create_device(
        id="device-1002",
        name="Wireless Mouse",
        description="2.4G ergonomic wireless mouse with receiver.",
        count=12,
        updated_at=_at("2025-11-05T12:30:00"),
    ),
    create_device(
        id="device-1003",
        name="Mechanical Keyboard",
        description="Compact 60% mechanical keyboard (brown switches).",
        count=8,
        updated_at=_at("2025-11-10T09:15:00"),
    ),
    create_device(
        id="device-1004",
        name="1080p Webcam",
        description="HD webcam with built-in microphone.",
        count=5,
        updated_at=_at("2025-11-12T14:45:00"),
    ),
    create_device(
        id="device-1005",
        name="Portable SSD 1TB",
        description="USB 3.2 Gen 2 portable solid state drive.",
        count=3,
        updated_at=_at("2025-11-15T08:05:00"),
    ),
]


def seed_devices(store: DeviceStore, devices: List[Device] = SEED_DEVICES) -> int:
    """Upserts every seed device. Returns how many were written."""
    saved = 0
    for device in devices:
        store.save(device)
        saved += 1
        logger.info("Upserted %s", device.id)
    return saved


def main() -> None:
    settings = Settings()
    configure_logging(settings.LOG_LEVEL)
    container = build_container(settings)
    try:
        saved = seed_devices(container.device_store)
        logger.info("Seed completed: %d devices processed", saved)
    finally:
        container.close()


if __name__ == "__main__":
    main()
