from __future__ import annotations

from typing import Any, Iterable
from urllib.parse import urlparse

import httpx
from loguru import logger

from cookbook_ingest.ingest_core.search.rate_limit import RateLimiter
from cookbook_ingest.models.search import (
    SearchCandidate,
    SearchProviderCapabilities,
    SearchRequest,
    SearchResult,
)
from cookbook_ingest.tools.url_utils import normalize_domain

DEFAULT_TIMEOUT_SECONDS = 15.0


def _clean_domains(domains: Iterable[str] | None) -> list[str]:
    return [normalize_domain(d) for d in domains or [] if d and d.strip()]


def _matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


class BaseSearchProvider:
    """Shared request plumbing for HTTP search APIs.

    Subclasses build the request and parse the payload; this class gates on
    configuration and rate limits, maps transport errors onto result codes and
    turns raw hits into ranked, domain-filtered candidates.
    """

    provider_id = ""
    display_name = ""
    supports_market = False
    supports_safe_search = False
    supports_site_restrictions = False
    max_results_cap = 10

    def __init__(
        self,
        *,
        api_key: str = "",
        enabled: bool = True,
        endpoint: str = "",
        max_results: int = 10,
        rate_limit_per_minute: int = 0,
        allowed_domains: Iterable[str] | None = None,
        denied_domains: Iterable[str] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.enabled = enabled
        self.endpoint = endpoint
        self.max_results = max(min(int(max_results), self.max_results_cap), 1)
        self.rate_limit_per_minute = max(int(rate_limit_per_minute), 0)
        self.allowed_domains = _clean_domains(allowed_domains)
        self.denied_domains = _clean_domains(denied_domains)
        self.timeout_seconds = timeout_seconds
        self.rate_limiter = rate_limiter or RateLimiter()
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.endpoint)

    @property
    def is_enabled(self) -> bool:
        return self.enabled and self.is_configured

    @property
    def capabilities(self) -> SearchProviderCapabilities:
        return SearchProviderCapabilities(
            supports_market=self.supports_market,
            supports_safe_search=self.supports_safe_search,
            supports_site_restrictions=self.supports_site_restrictions,
            max_results_per_request=self.max_results,
            rate_limit_per_minute=self.rate_limit_per_minute,
        )

    def is_domain_allowed(self, url: str) -> bool:
        host = normalize_domain(urlparse(url).hostname or "")
        if not host:
            return False
        if any(_matches(host, denied) for denied in self.denied_domains):
            return False
        if self.allowed_domains:
            return any(_matches(host, allowed) for allowed in self.allowed_domains)
        return True

    def to_candidates(self, hits: list[dict[str, Any]]) -> list[SearchCandidate]:
        """Rank hits by position (``1 - idx/total``) and drop filtered domains."""
        total = len(hits)
        candidates: list[SearchCandidate] = []
        for index, hit in enumerate(hits):
            url = str(hit.get("url") or "").strip()
            if not url:
                continue
            if not self.is_domain_allowed(url):
                logger.debug(f"Filtered out result from denied domain: {url}")
                continue
            candidates.append(
                SearchCandidate(
                    url=url,
                    title=str(hit.get("title") or ""),
                    snippet=hit.get("snippet"),
                    site_name=normalize_domain(url) or None,
                    score=1 - index / total,
                    position=index,
                )
            )
        return candidates

    def build_params(self, request: SearchRequest) -> dict[str, Any]:
        raise NotImplementedError

    def build_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def parse_hits(self, payload: dict[str, Any]) -> tuple[list[dict[str, Any]], int | None]:
        raise NotImplementedError

    def map_error_status(self, response: httpx.Response) -> SearchResult:
        status = response.status_code
        if status == 429:
            logger.warning(f"{self.display_name} API rate limit hit")
            return SearchResult.rate_limited(self.provider_id)
        logger.error(f"{self.display_name} API error: {status} - {response.text[:500]}")
        return SearchResult.failed(f"API returned status {status}", f"HTTP_{status}", self.provider_id)

    async def search(self, request: SearchRequest) -> SearchResult:
        if not self.is_enabled:
            logger.warning(f"{self.display_name} provider is not enabled or not properly configured")
            return SearchResult.failed("Provider is not enabled", "PROVIDER_DISABLED", self.provider_id)
        if not (request.query or "").strip():
            return SearchResult.failed("Query cannot be empty", "INVALID_QUERY", self.provider_id)
        if not self.rate_limiter.try_acquire(self.provider_id, self.rate_limit_per_minute):
            logger.warning(f"Rate limit exceeded for {self.display_name} provider")
            return SearchResult.rate_limited(self.provider_id)

        logger.debug(f"Executing {self.display_name}: {request.query}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers=self.build_headers(),
            ) as client:
                response = await client.get(self.endpoint, params=self.build_params(request))
            if response.status_code >= 400:
                return self.map_error_status(response)
            payload = response.json()
            if not isinstance(payload, dict):
                return SearchResult.failed("Failed to parse API response", "PARSE_ERROR", self.provider_id)
            hits, total = self.parse_hits(payload)
        except httpx.TimeoutException:
            logger.warning(f"{self.display_name} request timed out for query: {request.query}")
            return SearchResult.failed("Request timed out", "TIMEOUT", self.provider_id)
        except httpx.HTTPError as exc:
            logger.error(f"HTTP error during {self.display_name} for query {request.query}: {exc}")
            return SearchResult.failed(f"HTTP error: {exc}", "HTTP_ERROR", self.provider_id)
        except ValueError as exc:
            logger.error(f"Parse error during {self.display_name} for query {request.query}: {exc}")
            return SearchResult.failed(f"Parse error: {exc}", "PARSE_ERROR", self.provider_id)

        candidates = self.to_candidates(hits)
        logger.info(f"{self.display_name} returned {len(candidates)} results for query: {request.query}")
        return SearchResult.succeeded(candidates, self.provider_id, total)
