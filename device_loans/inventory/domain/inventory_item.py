from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class InventoryItemStatus(Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    LOANED = "loaned"


class InventoryItemError(Exception):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


@dataclass(frozen=True)
class InventoryItem:
    """A single physical unit, tracked by its own loan status."""
    id: str
    name: str
    description: str
    status: InventoryItemStatus
    updated_at: datetime


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or value.strip() == ""


def create_inventory_item(
    id: Any,
    name: Any,
    description: Any,
    status: Any,
    updated_at: Any,
) -> InventoryItem:
    if _is_blank(id):
        raise InventoryItemError("id", "Inventory item id must be a non-empty string.")
    if _is_blank(name):
        raise InventoryItemError("name", "Inventory item name must be a non-empty string.")
    try:
        parsed_status = InventoryItemStatus(status)
    except ValueError:
        raise InventoryItemError(
            "status",
            "Inventory item status must be one of: available, reserved, loaned.",
        )
    if _is_blank(description):
        raise InventoryItemError(
            "description", "Inventory item description must be a non-empty string."
        )
    if not isinstance(updated_at, datetime):
        raise InventoryItemError("updatedAt", "updatedAt must be a valid datetime.")

    return InventoryItem(
        id=id,
        name=name,
        description=description,
        status=parsed_status,
        updated_at=updated_at,
    )
