from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from device_loans.reservations.domain.processed_event import ProcessedEventRecord


class ProcessedEventLedger(ABC):
    """
    Ids of events whose effect has been durably applied.

    mark_processed() must only be called after the effect is persisted. A
    record for id X means "do not reapply X". Records are never updated or
    removed; marking an id twice keeps the first record.
    """

    @abstractmethod
    def has(self, event_id: str) -> bool:
        pass

    @abstractmethod
    def mark_processed(self, record: ProcessedEventRecord) -> None:
        pass

    @abstractmethod
    def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        pass


class InMemoryProcessedEventLedger(ProcessedEventLedger):
    def __init__(self):
        self._records: Dict[str, ProcessedEventRecord] = {}
        self._lock = Lock()

    def has(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._records

    def mark_processed(self, record: ProcessedEventRecord) -> None:
        with self._lock:
            self._records.setdefault(record.id, record)

    def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        with self._lock:
            return self._records.get(event_id)


class PostgresProcessedEventLedger(ProcessedEventLedger):
    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresProcessedEventLedger":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS processed_events (
                        id TEXT PRIMARY KEY,
                        processed_at TIMESTAMPTZ NOT NULL,
                        type TEXT NULL,
                        subject TEXT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_processed_events_processed_at
                    ON processed_events (processed_at DESC)
                    """
                )
            )

    def has(self, event_id: str) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT 1 FROM processed_events WHERE id=:id"),
                {"id": event_id},
            ).first()
            return row is not None

    def mark_processed(self, record: ProcessedEventRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO processed_events (id, processed_at, type, subject)
                    VALUES (:id, :processed_at, :type, :subject)
                    ON CONFLICT (id) DO NOTHING
                    """
                ),
                {
                    "id": record.id,
                    "processed_at": record.processed_at,
                    "type": record.type,
                    "subject": record.subject,
                },
            )

    def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id, processed_at, type, subject
                    FROM processed_events
                    WHERE id=:id
                    """
                ),
                {"id": event_id},
            ).first()
            if not row:
                return None
            return ProcessedEventRecord(
                id=row.id,
                processed_at=row.processed_at,
                type=row.type,
                subject=row.subject,
            )
