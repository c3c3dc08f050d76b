"""In-process port implementations for local runs and tests."""
from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Callable

from cookbook_ingest.errors import VersionConflict
from cookbook_ingest.models.events import IngestEvent
from cookbook_ingest.models.ingest import TaskState
from cookbook_ingest.ports import TASK_STATES


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], tuple[dict[str, Any], str]] = {}
        self._counter = itertools.count(1)

    def _next_version(self) -> str:
        return f'"{next(self._counter)}"'

    async def get(self, collection: str, key: str) -> tuple[dict[str, Any] | None, str | None]:
        entry = self._docs.get((collection, key))
        if entry is None:
            return None, None
        doc, version = entry
        return copy.deepcopy(doc), version

    def _write(self, collection: str, key: str, doc: dict[str, Any]) -> str:
        version = self._next_version()
        self._docs[(collection, key)] = (copy.deepcopy(doc), version)
        return version

    async def put(self, collection: str, key: str, doc: dict[str, Any]) -> str:
        return self._write(collection, key, doc)

    async def compare_and_swap(
        self,
        collection: str,
        key: str,
        expected_version: str | None,
        doc: dict[str, Any],
    ) -> str:
        entry = self._docs.get((collection, key))
        current = entry[1] if entry else None
        if current != expected_version:
            raise VersionConflict(f"{collection}/{key}", expected_version, current)
        return self._write(collection, key, doc)

    async def query(
        self,
        collection: str,
        predicate: Callable[[dict[str, Any]], bool],
    ) -> list[tuple[str, dict[str, Any], str]]:
        matches: list[tuple[str, dict[str, Any], str]] = []
        for (coll, key), (doc, version) in list(self._docs.items()):
            if coll == collection and predicate(doc):
                matches.append((key, copy.deepcopy(doc), version))
        return matches

    def count(self, collection: str) -> int:
        return sum(1 for coll, _ in self._docs if coll == collection)


class InMemoryTaskBus:
    """Task queue plus state/event sink backed by a document store."""

    def __init__(self, store: InMemoryDocumentStore | None = None) -> None:
        self.store = store or InMemoryDocumentStore()
        self.events: list[IngestEvent] = []
        self.state_history: list[TaskState] = []
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def enqueue(self, payload: dict[str, Any]) -> None:
        await self._queue.put(payload)

    async def read_next_task(self) -> dict[str, Any] | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get_task_state(self, task_id: str) -> TaskState | None:
        doc, version = await self.store.get(TASK_STATES, task_id)
        if doc is None:
            return None
        state = TaskState.model_validate(doc)
        state.version = version
        return state

    async def set_task_state(self, state: TaskState) -> TaskState:
        version = await self.store.put(TASK_STATES, state.task_id, state.to_json_dict())
        stored = state.model_copy(update={"version": version})
        self.state_history.append(stored)
        return stored

    async def publish_event(self, event: IngestEvent) -> None:
        self.events.append(event)


class InMemoryBlobStore:
    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, str]] = {}

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.blobs[path] = (bytes(data), content_type)
        return f"memory://{path}"

    async def get(self, path: str) -> bytes | None:
        entry = self.blobs.get(path)
        return entry[0] if entry else None
