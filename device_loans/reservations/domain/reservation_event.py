from dataclasses import dataclass
from typing import Any, Dict, List, Optional

RESERVATION_COLLECTED = "reservation.collected"
RESERVATION_RETURNED = "reservation.returned"

# A collected device leaves the pool; a returned one re-enters it.
DELTA_BY_EVENT_TYPE: Dict[str, int] = {
    RESERVATION_COLLECTED: -1,
    RESERVATION_RETURNED: 1,
}


@dataclass(frozen=True)
class ReservationStatusData:
    reservation_id: str
    device_model_id: str
    new_status: str
    occurred_at: Optional[str] = None


@dataclass(frozen=True)
class ReservationStatusEvent:
    """
    Envelope delivered by the event transport.
    `data` is None when the payload lacks a required field.
    """
    id: str
    type: str
    data: Optional[ReservationStatusData] = None
    subject: Optional[str] = None
    time: Optional[str] = None

    @staticmethod
    def from_raw(raw: Any) -> Optional["ReservationStatusEvent"]:
        """
        Returns None for envelopes without a usable id or type.
        """
        if not isinstance(raw, dict):
            return None
        event_id = _text(raw.get("id"))
        event_type = _text(raw.get("type"))
        if event_id is None or event_type is None:
            return None
        return ReservationStatusEvent(
            id=event_id,
            type=event_type,
            data=_parse_data(raw.get("data")),
            subject=_text(raw.get("subject")),
            time=_text(raw.get("time")),
        )


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_data(data: Any) -> Optional[ReservationStatusData]:
    if not isinstance(data, dict):
        return None
    device_model_id = _text(data.get("deviceModelId"))
    reservation_id = _text(data.get("reservationId"))
    new_status = _text(data.get("newStatus"))
    if device_model_id is None or reservation_id is None or new_status is None:
        return None
    return ReservationStatusData(
        reservation_id=reservation_id,
        device_model_id=device_model_id,
        new_status=new_status,
        occurred_at=_text(data.get("occurredAt")),
    )


def as_batch(payload: Any) -> List[Any]:
    """The transport delivers either a JSON array or a single JSON object."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return [payload]
    return []
