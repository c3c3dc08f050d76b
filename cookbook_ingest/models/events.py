from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    INGEST_PROGRESS = "ingest.progress"
    INGEST_REVIEW_READY = "ingest.review_ready"
    INGEST_FAILED = "ingest.failed"
    INGEST_COMMITTED = "ingest.committed"
    INGEST_REJECTED = "ingest.rejected"
    INGEST_EXPIRED = "ingest.expired"


@dataclass
class IngestEvent:
    event: EventType
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps({'taskId': self.task_id, **self.data})}\n\n"
