"""Ports the ingest core consumes; hosts supply the implementations."""
from __future__ import annotations

from typing import Any, Callable, Protocol

from cookbook_ingest.models.events import IngestEvent
from cookbook_ingest.models.ingest import TaskState
from cookbook_ingest.models.search import SearchRequest, SearchResult

TASK_STATES = "task_states"
TASKS = "tasks"
RECIPES = "recipes"


class TaskBus(Protocol):
    async def read_next_task(self) -> dict[str, Any] | None: ...

    async def get_task_state(self, task_id: str) -> TaskState | None: ...

    async def set_task_state(self, state: TaskState) -> TaskState: ...

    async def publish_event(self, event: IngestEvent) -> None: ...


class DocumentStore(Protocol):
    """Point reads/writes plus an ETag-style compare-and-swap.

    ``compare_and_swap`` raises ``VersionConflict`` when the stored version
    differs from ``expected_version``; ``None`` means "must not exist yet".
    """

    async def get(self, collection: str, key: str) -> tuple[dict[str, Any] | None, str | None]: ...

    async def put(self, collection: str, key: str, doc: dict[str, Any]) -> str: ...

    async def compare_and_swap(
        self,
        collection: str,
        key: str,
        expected_version: str | None,
        doc: dict[str, Any],
    ) -> str: ...

    async def query(
        self,
        collection: str,
        predicate: Callable[[dict[str, Any]], bool],
    ) -> list[tuple[str, dict[str, Any], str]]: ...


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    async def get(self, path: str) -> bytes | None: ...


class LlmChat(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        system: str = "",
        phase: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str: ...


class SearchProvider(Protocol):
    provider_id: str
    display_name: str

    @property
    def is_enabled(self) -> bool: ...

    async def search(self, request: SearchRequest) -> SearchResult: ...
