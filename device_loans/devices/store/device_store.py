from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from device_loans.devices.domain.device import Device
from device_loans.devices.domain.exceptions import ConcurrencyConflictError


class DeviceStore(ABC):
    """
    Device records keyed by id.

    save() without expected_version is a last-write-wins upsert. With
    expected_version it is a conditional write: the stored version must equal
    expected_version (0 meaning "no record yet") or ConcurrencyConflictError
    is raised. Every successful save bumps the stored version by one and
    returns the stored value.
    """

    @abstractmethod
    def get_by_id(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    def list(self) -> List[Device]:
        pass

    @abstractmethod
    def save(self, device: Device, expected_version: Optional[int] = None) -> Device:
        pass

    @abstractmethod
    def delete(self, device_id: str) -> None:
        pass


class InMemoryDeviceStore(DeviceStore):
    def __init__(self, initial: Iterable[Device] = ()):
        self._devices: Dict[str, Device] = {}
        self._lock = Lock()
        for device in initial:
            self.save(device)

    def get_by_id(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def list(self) -> List[Device]:
        with self._lock:
            return sorted(self._devices.values(), key=lambda d: d.id)

    def save(self, device: Device, expected_version: Optional[int] = None) -> Device:
        with self._lock:
            current = self._devices.get(device.id)
            actual_version = current.version if current else 0
            if expected_version is not None and actual_version != expected_version:
                raise ConcurrencyConflictError(device.id, expected_version, actual_version)
            stored = device.with_version(actual_version + 1)
            self._devices[device.id] = stored
            return stored

    def delete(self, device_id: str) -> None:
        with self._lock:
            self._devices.pop(device_id, None)


class PostgresDeviceStore(DeviceStore):
    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresDeviceStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS devices (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT NOT NULL,
                        count INTEGER NOT NULL CHECK (count >= 0),
                        updated_at TIMESTAMPTZ NOT NULL,
                        version BIGINT NOT NULL,
                        last_event_id TEXT NULL
                    )
                    """
                )
            )

    def get_by_id(self, device_id: str) -> Optional[Device]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id, name, description, count, updated_at, version, last_event_id
                    FROM devices
                    WHERE id=:id
                    """
                ),
                {"id": device_id},
            ).first()
        return self._to_domain(row) if row else None

    def list(self) -> List[Device]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT id, name, description, count, updated_at, version, last_event_id
                    FROM devices
                    ORDER BY id ASC
                    """
                )
            ).fetchall()
        return [self._to_domain(row) for row in rows]

    def save(self, device: Device, expected_version: Optional[int] = None) -> Device:
        params = {
            "id": device.id,
            "name": device.name,
            "description": device.description,
            "count": device.count,
            "updated_at": device.updated_at,
            "last_event_id": device.last_event_id,
            "expected_version": expected_version,
        }
        with self.engine.begin() as conn:
            if expected_version is None:
                new_version = conn.execute(
                    text(
                        """
                        INSERT INTO devices (id, name, description, count, updated_at, version, last_event_id)
                        VALUES (:id, :name, :description, :count, :updated_at, 1, :last_event_id)
                        ON CONFLICT (id)
                        DO UPDATE SET
                          name=EXCLUDED.name,
                          description=EXCLUDED.description,
                          count=EXCLUDED.count,
                          updated_at=EXCLUDED.updated_at,
                          last_event_id=EXCLUDED.last_event_id,
                          version=devices.version + 1
                        RETURNING version
                        """
                    ),
                    params,
                ).scalar_one()
            elif expected_version == 0:
                new_version = conn.execute(
                    text(
                        """
                        INSERT INTO devices (id, name, description, count, updated_at, version, last_event_id)
                        VALUES (:id, :name, :description, :count, :updated_at, 1, :last_event_id)
                        ON CONFLICT (id) DO NOTHING
                        RETURNING version
                        """
                    ),
                    params,
                ).scalar_one_or_none()
            else:
                new_version = conn.execute(
                    text(
                        """
                        UPDATE devices
                        SET name=:name,
                            description=:description,
                            count=:count,
                            updated_at=:updated_at,
                            last_event_id=:last_event_id,
                            version=version + 1
                        WHERE id=:id AND version=:expected_version
                        RETURNING version
                        """
                    ),
                    params,
                ).scalar_one_or_none()
            if new_version is None:
                actual = conn.execute(
                    text("SELECT version FROM devices WHERE id=:id"),
                    {"id": device.id},
                ).scalar_one_or_none()
                raise ConcurrencyConflictError(device.id, int(expected_version), int(actual or 0))
        return device.with_version(int(new_version))

    def delete(self, device_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM devices WHERE id=:id"), {"id": device_id})

    @staticmethod
    def _to_domain(row) -> Device:
        return Device(
            id=row.id,
            name=row.name,
            description=row.description,
            count=int(row.count),
            updated_at=row.updated_at,
            version=int(row.version),
            last_event_id=row.last_event_id,
        )
