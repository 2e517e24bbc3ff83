from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ProcessedEventRecord:
    id: str
    processed_at: datetime
    type: Optional[str] = None
    subject: Optional[str] = None
