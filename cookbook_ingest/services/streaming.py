from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from cookbook_ingest.errors import ErrorPayload
from cookbook_ingest.models.events import EventType, IngestEvent


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ingest_progress(task_id: str, phase: str, progress: int, message: str = "") -> IngestEvent:
    """Emit the progress event sent on every phase boundary."""
    return IngestEvent(
        event=EventType.INGEST_PROGRESS,
        task_id=task_id,
        data={
            "phase": phase,
            "progress": int(progress),
            "message": message,
            "timestamp": _now_iso(),
        },
    )


def review_ready(task_id: str, *, extraction_method: str | None = None, **kwargs: Any) -> IngestEvent:
    data: dict[str, Any] = {"progress": 100, "timestamp": _now_iso()}
    if extraction_method:
        data["extractionMethod"] = extraction_method
    data.update(kwargs)
    return IngestEvent(event=EventType.INGEST_REVIEW_READY, task_id=task_id, data=data)


def failed(task_id: str, error: ErrorPayload) -> IngestEvent:
    return IngestEvent(
        event=EventType.INGEST_FAILED,
        task_id=task_id,
        data={"error": error.model_dump(), "timestamp": _now_iso()},
    )


def committed(task_id: str, recipe_id: str, *, idempotent: bool = False) -> IngestEvent:
    return IngestEvent(
        event=EventType.INGEST_COMMITTED,
        task_id=task_id,
        data={"recipeId": recipe_id, "idempotent": idempotent, "timestamp": _now_iso()},
    )


def rejected(task_id: str, reason: str | None = None) -> IngestEvent:
    data: dict[str, Any] = {"timestamp": _now_iso()}
    if reason:
        data["reason"] = reason
    return IngestEvent(event=EventType.INGEST_REJECTED, task_id=task_id, data=data)


def expired(task_id: str) -> IngestEvent:
    return IngestEvent(event=EventType.INGEST_EXPIRED, task_id=task_id, data={"timestamp": _now_iso()})
