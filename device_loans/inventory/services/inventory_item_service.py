from typing import Callable, List, Optional

from device_loans.core.time.clock import Clock, SystemClock
from device_loans.devices.services.device_service import generate_id
from device_loans.inventory.domain.inventory_item import (
    InventoryItem,
    InventoryItemStatus,
    create_inventory_item,
)
from device_loans.inventory.store.inventory_item_store import InventoryItemStore


class InventoryItemService:
    def __init__(
        self,
        item_store: InventoryItemStore,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.item_store = item_store
        self.clock = clock or SystemClock()
        self.id_factory = id_factory

    def create(
        self,
        name: str,
        description: str,
        status: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> InventoryItem:
        now = self.clock.now()
        new_id = item_id or (self.id_factory() if self.id_factory else generate_id("item", now))
        item = create_inventory_item(
            id=new_id,
            name=name,
            description=description,
            status=status or InventoryItemStatus.AVAILABLE.value,
            updated_at=now,
        )
        return self.item_store.save(item)

    def list(self, limit: Optional[int] = None) -> List[InventoryItem]:
        items = self.item_store.list()
        if limit is not None:
            return items[:limit]
        return items
