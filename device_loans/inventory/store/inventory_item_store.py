from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from device_loans.inventory.domain.inventory_item import InventoryItem, InventoryItemStatus


class InventoryItemStore(ABC):
    @abstractmethod
    def get_by_id(self, item_id: str) -> Optional[InventoryItem]:
        pass

    @abstractmethod
    def list(self) -> List[InventoryItem]:
        pass

    @abstractmethod
    def save(self, item: InventoryItem) -> InventoryItem:
        pass

    @abstractmethod
    def delete(self, item_id: str) -> None:
        pass


class InMemoryInventoryItemStore(InventoryItemStore):
    def __init__(self, initial: Iterable[InventoryItem] = ()):
        self._items: Dict[str, InventoryItem] = {item.id: item for item in initial}
        self._lock = Lock()

    def get_by_id(self, item_id: str) -> Optional[InventoryItem]:
        with self._lock:
            return self._items.get(item_id)

    def list(self) -> List[InventoryItem]:
        with self._lock:
            return sorted(self._items.values(), key=lambda i: i.id)

    def save(self, item: InventoryItem) -> InventoryItem:
        with self._lock:
            self._items[item.id] = item
            return item

    def delete(self, item_id: str) -> None:
        with self._lock:
            self._items.pop(item_id, None)


class PostgresInventoryItemStore(InventoryItemStore):
    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresInventoryItemStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS inventory_items (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT NOT NULL,
                        status TEXT NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
            )

    def get_by_id(self, item_id: str) -> Optional[InventoryItem]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id, name, description, status, updated_at
                    FROM inventory_items
                    WHERE id=:id
                    """
                ),
                {"id": item_id},
            ).first()
        return self._to_domain(row) if row else None

    def list(self) -> List[InventoryItem]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT id, name, description, status, updated_at
                    FROM inventory_items
                    ORDER BY id ASC
                    """
                )
            ).fetchall()
        return [self._to_domain(row) for row in rows]

    def save(self, item: InventoryItem) -> InventoryItem:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO inventory_items (id, name, description, status, updated_at)
                    VALUES (:id, :name, :description, :status, :updated_at)
                    ON CONFLICT (id)
                    DO UPDATE SET
                      name=EXCLUDED.name,
                      description=EXCLUDED.description,
                      status=EXCLUDED.status,
                      updated_at=EXCLUDED.updated_at
                    """
                ),
                {
                    "id": item.id,
                    "name": item.name,
                    "description": item.description,
                    "status": item.status.value,
                    "updated_at": item.updated_at,
                },
            )
        return item

    def delete(self, item_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM inventory_items WHERE id=:id"), {"id": item_id})

    @staticmethod
    def _to_domain(row) -> InventoryItem:
        return InventoryItem(
            id=row.id,
            name=row.name,
            description=row.description,
            status=InventoryItemStatus(row.status),
            updated_at=row.updated_at,
        )
