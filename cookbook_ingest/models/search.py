from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import Field

from cookbook_ingest.models.recipe import CamelModel


class SearchCandidate(CamelModel):
    url: str
    title: str = ""
    snippet: str | None = None
    site_name: str | None = None
    score: float | None = None
    position: int = 0


class SearchProviderCapabilities(CamelModel):
    supports_market: bool = False
    supports_safe_search: bool = False
    supports_site_restrictions: bool = False
    max_results_per_request: int = 10
    rate_limit_per_minute: int = 0


class SearchProviderDescriptor(CamelModel):
    id: str
    display_name: str
    enabled: bool
    is_default: bool = False
    capabilities: SearchProviderCapabilities = Field(default_factory=SearchProviderCapabilities)


@dataclass(slots=True)
class SearchRequest:
    query: str
    max_results: int = 10
    market: str | None = None
    safe_search: str | None = None
    site_restrictions: list[str] = field(default_factory=list)


# Failure codes a provider may report that justify trying another provider.
TRANSIENT_SEARCH_ERRORS = frozenset(
    {
        "RATE_LIMITED",
        "QUOTA_EXCEEDED",
        "SERVICE_UNAVAILABLE",
        "TIMEOUT",
        "HTTP_429",
        "HTTP_503",
        "HTTP_504",
    }
)


@dataclass(slots=True)
class SearchResult:
    success: bool
    provider_id: str
    candidates: list[SearchCandidate] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    total_results: int | None = None

    @property
    def is_transient_failure(self) -> bool:
        return not self.success and (self.error_code or "") in TRANSIENT_SEARCH_ERRORS

    @classmethod
    def succeeded(
        cls,
        candidates: list[SearchCandidate],
        provider_id: str,
        total_results: int | None = None,
    ) -> "SearchResult":
        return cls(
            success=True,
            provider_id=provider_id,
            candidates=candidates,
            total_results=total_results,
        )

    @classmethod
    def failed(cls, error: str, error_code: str, provider_id: str) -> "SearchResult":
        return cls(success=False, provider_id=provider_id, error=error, error_code=error_code)

    @classmethod
    def rate_limited(cls, provider_id: str) -> "SearchResult":
        return cls.failed("Rate limit exceeded", "RATE_LIMITED", provider_id)

    @classmethod
    def quota_exceeded(cls, provider_id: str) -> "SearchResult":
        return cls.failed("API quota exceeded", "QUOTA_EXCEEDED", provider_id)


@dataclass
class SearchResponse:
    result: SearchResult
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None
