from __future__ import annotations

from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.errors import ErrorCode, IngestError
from cookbook_ingest.ingest_core.search.brave import BraveSearchProvider
from cookbook_ingest.ingest_core.search.google import GoogleCustomSearchProvider
from cookbook_ingest.ingest_core.search.rate_limit import RateLimiter
from cookbook_ingest.models.search import (
    SearchProviderCapabilities,
    SearchProviderDescriptor,
    SearchRequest,
    SearchResponse,
)
from cookbook_ingest.ports import SearchProvider


class SearchProviderResolver:
    """Registry of search providers keyed by case-insensitive id."""

    def __init__(
        self,
        providers: list[SearchProvider],
        *,
        default_provider: str | None = None,
        allow_fallback: bool | None = None,
    ):
        self._providers: dict[str, SearchProvider] = {p.provider_id.lower(): p for p in providers}
        self.default_provider_id = (default_provider or settings.search_default_provider).strip().lower()
        self.allow_fallback = settings.search_allow_fallback if allow_fallback is None else allow_fallback
        logger.info(
            f"SearchProviderResolver initialized with {len(self._providers)} providers. "
            f"Default: {self.default_provider_id}"
        )

    def _effective_id(self, provider_id: str | None) -> str:
        return (provider_id or "").strip().lower() or self.default_provider_id

    def resolve(self, provider_id: str | None = None) -> SearchProvider:
        effective = self._effective_id(provider_id)
        provider = self._providers.get(effective)
        if provider is None:
            logger.warning(f"Search provider '{effective}' not found")
            raise IngestError(
                ErrorCode.UNKNOWN_SEARCH_PROVIDER,
                f"Unknown search provider: {effective}",
                details={"providerId": effective, "available": sorted(self._providers)},
            )
        if not provider.is_enabled:
            logger.warning(f"Search provider '{effective}' is disabled")
            raise IngestError(
                ErrorCode.DISABLED_SEARCH_PROVIDER,
                f"Search provider is disabled: {effective}",
                details={"providerId": effective},
            )
        return provider

    def try_resolve(self, provider_id: str | None = None) -> SearchProvider | None:
        try:
            return self.resolve(provider_id)
        except IngestError:
            return None

    def _descriptor(self, key: str, provider: SearchProvider) -> SearchProviderDescriptor:
        capabilities = getattr(provider, "capabilities", None) or SearchProviderCapabilities()
        return SearchProviderDescriptor(
            id=provider.provider_id,
            display_name=provider.display_name,
            enabled=provider.is_enabled,
            is_default=key == self.default_provider_id,
            capabilities=capabilities,
        )

    def _sorted(self, descriptors: list[SearchProviderDescriptor]) -> list[SearchProviderDescriptor]:
        return sorted(descriptors, key=lambda d: (not d.is_default, d.display_name.lower()))

    def list_all(self) -> list[SearchProviderDescriptor]:
        return self._sorted([self._descriptor(key, p) for key, p in self._providers.items()])

    def list_enabled(self) -> list[SearchProviderDescriptor]:
        return [d for d in self.list_all() if d.enabled]

    def get_descriptor(self, provider_id: str) -> SearchProviderDescriptor | None:
        key = self._effective_id(provider_id)
        provider = self._providers.get(key)
        return self._descriptor(key, provider) if provider is not None else None

    async def search(self, request: SearchRequest, provider_id: str | None = None) -> SearchResponse:
        provider = self.resolve(provider_id)
        result = await provider.search(request)
        selected = provider.provider_id.lower()

        if result.success or not self.allow_fallback or not result.is_transient_failure:
            return SearchResponse(result=result, provider=provider.provider_id)
        if selected == self.default_provider_id:
            return SearchResponse(result=result, provider=provider.provider_id)

        fallback = self.try_resolve(self.default_provider_id)
        if fallback is None:
            return SearchResponse(result=result, provider=provider.provider_id)

        reason = result.error_code or "UNKNOWN"
        logger.warning(
            f"Search provider '{provider.provider_id}' failed with {reason}; "
            f"falling back to '{fallback.provider_id}'"
        )
        fallback_result = await fallback.search(request)
        return SearchResponse(
            result=fallback_result,
            provider=fallback.provider_id,
            fallback_from=provider.provider_id,
            fallback_reason=reason,
        )


def build_default_resolver(rate_limiter: RateLimiter | None = None) -> SearchProviderResolver:
    """Resolver over the providers configured in settings, sharing one rate limiter."""
    limiter = rate_limiter or RateLimiter()
    return SearchProviderResolver(
        [
            BraveSearchProvider(rate_limiter=limiter),
            GoogleCustomSearchProvider(rate_limiter=limiter),
        ]
    )
