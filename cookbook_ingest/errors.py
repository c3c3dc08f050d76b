from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(StrEnum):
    # Input / validation
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    EMPTY_URL = "EMPTY_URL"
    INVALID_URL_FORMAT = "INVALID_URL_FORMAT"
    INVALID_SCHEME = "INVALID_SCHEME"
    CREDENTIALS_IN_URL = "CREDENTIALS_IN_URL"
    INVALID_PATCH = "INVALID_PATCH"

    # Acquisition
    SSRF_BLOCKED = "SSRF_BLOCKED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    ROBOTS_TXT_BLOCKED = "ROBOTS_TXT_BLOCKED"
    CONTENT_TOO_LARGE = "CONTENT_TOO_LARGE"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    FETCH_FAILED = "FETCH_FAILED"

    # Extraction
    NO_RECIPE_FOUND = "NO_RECIPE_FOUND"
    LLM_EXTRACTION_FAILED = "LLM_EXTRACTION_FAILED"

    # Search
    UNKNOWN_SEARCH_PROVIDER = "UNKNOWN_SEARCH_PROVIDER"
    DISABLED_SEARCH_PROVIDER = "DISABLED_SEARCH_PROVIDER"
    NO_SEARCH_RESULTS = "NO_SEARCH_RESULTS"

    # Normalize
    RECIPE_NOT_FOUND = "RECIPE_NOT_FOUND"
    NO_PATCHES = "NO_PATCHES"

    # Lifecycle
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    INVALID_TASK_STATE = "INVALID_TASK_STATE"
    TASK_REJECTED = "TASK_REJECTED"
    INVALID_DRAFT = "INVALID_DRAFT"
    DRAFT_EXPIRED = "DRAFT_EXPIRED"
    COMMIT_CONFLICT = "COMMIT_CONFLICT"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    PARAPHRASE_POLICY_VIOLATION = "PARAPHRASE_POLICY_VIOLATION"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorPayload(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    phase: str | None = None


class IngestError(Exception):
    """Error with a stable code that the phase runner maps onto task state."""

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        phase: str | None = None,
    ):
        super().__init__(message)
        self.code = str(code)
        self.message = message
        self.details = details or {}
        self.phase = phase

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(
            code=self.code,
            message=self.message,
            details=self.details,
            phase=self.phase,
        )

    def __repr__(self) -> str:
        return f"IngestError({self.code!r}, {self.message!r})"


class VersionConflict(Exception):
    """Raised by a document store when a compare-and-swap loses the race."""

    def __init__(self, key: str, expected: str | None, actual: str | None):
        super().__init__(f"Version conflict for {key}: expected {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual
