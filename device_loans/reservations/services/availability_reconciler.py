import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from device_loans.core.logging.structured_logger import StructuredLogger
from device_loans.core.time.clock import Clock, SystemClock
from device_loans.devices.domain.exceptions import DeltaRejectedError
from device_loans.devices.services.device_count_delta import DeviceCountDeltaService
from device_loans.reservations.domain.processed_event import ProcessedEventRecord
from device_loans.reservations.domain.reservation_event import (
    DELTA_BY_EVENT_TYPE,
    ReservationStatusEvent,
    as_batch,
)
from device_loans.reservations.store.processed_event_ledger import ProcessedEventLedger


class ReservationEventFailedError(Exception):
    """
    Raised when an event's delta is rejected. The transport is expected to
    redeliver the batch; events after the failed one were not processed.
    """

    def __init__(self, event_id: str, code: str, message: str):
        super().__init__(message)
        self.event_id = event_id
        self.code = code
        self.message = message


@dataclass
class ReconciliationSummary:
    received: int = 0
    applied: int = 0
    already_applied: int = 0
    malformed: int = 0
    ignored: int = 0
    duplicate: int = 0
    invalid_payload: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class AvailabilityReconciler:
    """
    Reconciles device availability against reservation lifecycle events.

    Envelopes in a batch are processed strictly in order. Skips (malformed,
    unrelated type, already processed, bad payload) never surface. A rejected
    delta aborts the batch by raising; store failures propagate unchanged.
    An event is marked in the ledger only after its delta is persisted.
    """

    def __init__(
        self,
        delta_service: DeviceCountDeltaService,
        ledger: ProcessedEventLedger,
        clock: Optional[Clock] = None,
        structured_logger: Optional[StructuredLogger] = None,
    ):
        self.delta_service = delta_service
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.structured_logger = structured_logger or StructuredLogger()

    def handle(self, batch: Any) -> ReconciliationSummary:
        envelopes = as_batch(batch)
        summary = ReconciliationSummary(received=len(envelopes))
        if not envelopes:
            self._log("EVENT_BATCH_EMPTY", logging.WARNING)
            return summary

        for raw in envelopes:
            self._handle_one(raw, summary)
        return summary

    def _handle_one(self, raw: Any, summary: ReconciliationSummary) -> None:
        event = ReservationStatusEvent.from_raw(raw)
        if event is None:
            summary.malformed += 1
            self._log(
                "EVENT_MALFORMED",
                logging.WARNING,
                event_id=_field(raw, "id"),
                event_kind=_field(raw, "type"),
            )
            return

        delta = DELTA_BY_EVENT_TYPE.get(event.type)
        if delta is None:
            summary.ignored += 1
            self._log("EVENT_IGNORED", event_id=event.id, event_kind=event.type)
            return

        if self.ledger.has(event.id):
            summary.duplicate += 1
            self._log("EVENT_DUPLICATE", event_id=event.id, event_kind=event.type)
            return

        data = event.data
        if data is None:
            summary.invalid_payload += 1
            self._log(
                "EVENT_PAYLOAD_INVALID",
                logging.WARNING,
                event_id=event.id,
                event_kind=event.type,
                subject=event.subject,
            )
            return

        self._log(
            "EVENT_APPLYING",
            event_id=event.id,
            event_kind=event.type,
            reservation_id=data.reservation_id,
            device_model_id=data.device_model_id,
            new_status=data.new_status,
            delta=delta,
        )
        try:
            outcome = self.delta_service.apply_delta(data.device_model_id, delta, event_id=event.id)
        except DeltaRejectedError as exc:
            self._log(
                "EVENT_APPLY_FAILED",
                logging.ERROR,
                event_id=event.id,
                event_kind=event.type,
                error=exc.code,
                message=exc.message,
            )
            raise ReservationEventFailedError(event.id, exc.code, exc.message) from exc

        if outcome.applied:
            summary.applied += 1
        else:
            summary.already_applied += 1
            # Effect landed on an earlier delivery that never reached the ledger.
            self._log(
                "EVENT_ALREADY_APPLIED",
                logging.WARNING,
                event_id=event.id,
                device_model_id=data.device_model_id,
            )

        self.ledger.mark_processed(
            ProcessedEventRecord(
                id=event.id,
                processed_at=self.clock.now(),
                type=event.type,
                subject=event.subject,
            )
        )
        self._log(
            "EVENT_PROCESSED",
            event_id=event.id,
            event_kind=event.type,
            device_model_id=data.device_model_id,
            new_count=outcome.device.count,
        )

    def _log(self, event_type: str, level: int = logging.INFO, **fields) -> None:
        self.structured_logger.emit(event_type, level=level, **fields)


def _field(raw: Any, key: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(key)
    return None
