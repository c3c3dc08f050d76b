from __future__ import annotations

import json
from typing import Any

from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.models.ingest import ArtifactRef
from cookbook_ingest.ports import BlobStore

TRUNCATION_MARKER = b"\n...[truncated]"

CONTENT_TYPES = {
    ".txt": "text/plain; charset=utf-8",
    ".json": "application/json",
    ".jsonld": "application/ld+json",
    ".md": "text/markdown; charset=utf-8",
}


def artifact_path(thread_id: str, task_id: str, phase: str, name: str) -> str:
    phase_dir = phase.split(".")[-1].lower() if phase else "misc"
    return f"{thread_id}/{task_id}/{phase_dir}/{name}"


def _content_type(name: str) -> str:
    for suffix, content_type in CONTENT_TYPES.items():
        if name.endswith(suffix):
            return content_type
    return "application/octet-stream"


class ArtifactStore:
    """Writes per-phase task artifacts to a blob store with a size cap."""

    def __init__(self, blobs: BlobStore, *, max_bytes: int | None = None):
        self.blobs = blobs
        limit = settings.max_artifact_bytes if max_bytes is None else max_bytes
        self.max_bytes = max(int(limit), 1024)

    async def save_text(
        self,
        thread_id: str,
        task_id: str,
        phase: str,
        name: str,
        text: str,
        artifact_type: str | None = None,
    ) -> ArtifactRef:
        data = text.encode("utf-8")
        if len(data) > self.max_bytes:
            logger.warning(f"Artifact {name} for task {task_id} truncated from {len(data)} bytes")
            data = data[: self.max_bytes - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
        path = artifact_path(thread_id, task_id, phase, name)
        uri = await self.blobs.put(path, data, _content_type(name))
        return ArtifactRef(type=artifact_type or name, uri=uri)

    async def save_json(
        self,
        thread_id: str,
        task_id: str,
        phase: str,
        name: str,
        payload: Any,
        artifact_type: str | None = None,
    ) -> ArtifactRef:
        text = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        return await self.save_text(thread_id, task_id, phase, name, text, artifact_type)
