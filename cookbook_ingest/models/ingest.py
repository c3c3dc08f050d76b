from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import ConfigDict, Field, model_validator

from cookbook_ingest.errors import ErrorPayload
from cookbook_ingest.models.patches import NormalizePatchResponse
from cookbook_ingest.models.recipe import CamelModel, Recipe, RecipeSource
from cookbook_ingest.models.search import SearchCandidate


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IngestMode(StrEnum):
    URL = "Url"
    QUERY = "Query"
    NORMALIZE = "Normalize"


class TaskStatus(StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    REVIEW_READY = "ReviewReady"
    COMMITTED = "Committed"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition(self, target: "TaskStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self, frozenset())


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMMITTED,
        TaskStatus.REJECTED,
        TaskStatus.EXPIRED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }
)

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.REVIEW_READY, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.REVIEW_READY: frozenset(
        {TaskStatus.REVIEW_READY, TaskStatus.COMMITTED, TaskStatus.REJECTED, TaskStatus.EXPIRED}
    ),
}


class IngestTask(CamelModel):
    """Immutable description of one ingest request."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    thread_id: str
    mode: IngestMode
    url: str | None = None
    query: str | None = None
    constraints: dict[str, Any] = Field(default_factory=dict)
    recipe_id: str | None = None
    focus_areas: list[str] = Field(default_factory=list)
    search_provider: str | None = None
    prompt_overrides: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def _check_mode_input(self) -> "IngestTask":
        if self.mode == IngestMode.URL and not (self.url or "").strip():
            raise ValueError("url is required for Url mode")
        if self.mode == IngestMode.QUERY and not (self.query or "").strip():
            raise ValueError("query is required for Query mode")
        if self.mode == IngestMode.NORMALIZE and not (self.recipe_id or "").strip():
            raise ValueError("recipeId is required for Normalize mode")
        return self


class TaskState(CamelModel):
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    current_phase: str | None = None
    progress: int = 0
    result: dict[str, Any] | None = None
    error: ErrorPayload | None = None
    last_updated: datetime = Field(default_factory=_utc_now)
    version: str | None = Field(default=None, exclude=True)


class ArtifactRef(CamelModel):
    type: str
    uri: str


class ValidationReport(CamelModel):
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class SimilarityReport(CamelModel):
    max_contiguous_token_overlap: int = 0
    max_ngram_similarity: float = 0.0
    violates_policy: bool = False
    details: str | None = None


class RecipeDraft(CamelModel):
    recipe: Recipe
    source: RecipeSource
    validation_report: ValidationReport = Field(default_factory=ValidationReport)
    similarity_report: SimilarityReport | None = None
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    normalize_patch_response: NormalizePatchResponse | None = None
    candidates: list[SearchCandidate] = Field(default_factory=list)
    confidence: float | None = None
