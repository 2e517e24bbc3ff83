from dataclasses import dataclass
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from device_loans.config.settings import Settings
from device_loans.core.logging.structured_logger import StructuredLogger
from device_loans.core.time.clock import Clock, SystemClock
from device_loans.devices.services.device_count_delta import DeviceCountDeltaService
from device_loans.devices.services.device_service import DeviceService
from device_loans.devices.store.device_store import (
    DeviceStore,
    InMemoryDeviceStore,
    PostgresDeviceStore,
)
from device_loans.inventory.services.inventory_item_service import InventoryItemService
from device_loans.inventory.store.inventory_item_store import (
    InMemoryInventoryItemStore,
    InventoryItemStore,
    PostgresInventoryItemStore,
)
from device_loans.reservations.services.availability_reconciler import AvailabilityReconciler
from device_loans.reservations.store.processed_event_ledger import (
    InMemoryProcessedEventLedger,
    PostgresProcessedEventLedger,
    ProcessedEventLedger,
)
from device_loans.security.jwt_hmac import HmacJwtVerifier


@dataclass
class ServiceContainer:
    """
    Every store handle and service the process uses, built once by the entry
    point and passed to whatever needs it.
    """
    settings: Settings
    clock: Clock
    structured_logger: StructuredLogger
    device_store: DeviceStore
    inventory_item_store: InventoryItemStore
    ledger: ProcessedEventLedger
    device_service: DeviceService
    inventory_item_service: InventoryItemService
    delta_service: DeviceCountDeltaService
    reconciler: AvailabilityReconciler
    verifier: HmacJwtVerifier
    engine: Optional[Engine] = None

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def build_container(
    settings: Settings,
    clock: Optional[Clock] = None,
    structured_logger: Optional[StructuredLogger] = None,
    device_store: Optional[DeviceStore] = None,
    inventory_item_store: Optional[InventoryItemStore] = None,
    ledger: Optional[ProcessedEventLedger] = None,
) -> ServiceContainer:
    clock = clock or SystemClock()
    structured_logger = structured_logger or StructuredLogger()

    engine: Optional[Engine] = None
    if settings.STORE_BACKEND == "postgres":
        engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
        device_store = device_store or PostgresDeviceStore(engine)
        inventory_item_store = inventory_item_store or PostgresInventoryItemStore(engine)
        ledger = ledger or PostgresProcessedEventLedger(engine)
    else:
        device_store = device_store or InMemoryDeviceStore()
        inventory_item_store = inventory_item_store or InMemoryInventoryItemStore()
        ledger = ledger or InMemoryProcessedEventLedger()

    delta_service = DeviceCountDeltaService(
        device_store,
        clock=clock,
        max_attempts=settings.DELTA_APPLY_MAX_ATTEMPTS,
        structured_logger=structured_logger,
    )
    return ServiceContainer(
        settings=settings,
        clock=clock,
        structured_logger=structured_logger,
        device_store=device_store,
        inventory_item_store=inventory_item_store,
        ledger=ledger,
        device_service=DeviceService(
            device_store,
            clock=clock,
            max_attempts=settings.DELTA_APPLY_MAX_ATTEMPTS,
        ),
        inventory_item_service=InventoryItemService(inventory_item_store, clock=clock),
        delta_service=delta_service,
        reconciler=AvailabilityReconciler(
            delta_service,
            ledger,
            clock=clock,
            structured_logger=structured_logger,
        ),
        verifier=HmacJwtVerifier(
            secret=settings.AUTH_SECRET,
            issuer=settings.AUTH_ISSUER,
            audience=settings.AUTH_AUDIENCE,
        ),
        engine=engine,
    )
