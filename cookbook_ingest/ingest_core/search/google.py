from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.ingest_core.search.providers import BaseSearchProvider
from cookbook_ingest.models.search import SearchRequest, SearchResult

GOOGLE_PROVIDER_ID = "google"

SAFE_SEARCH_VALUES = {"off": "off", "moderate": "active", "strict": "active", "active": "active"}


class GoogleCustomSearchProvider(BaseSearchProvider):
    provider_id = GOOGLE_PROVIDER_ID
    display_name = "Google Custom Search"
    supports_market = True
    supports_safe_search = True
    supports_site_restrictions = True
    max_results_cap = 10

    def __init__(self, *, search_engine_id: str | None = None, **kwargs):
        kwargs.setdefault("api_key", settings.google_api_key)
        kwargs.setdefault("enabled", settings.google_enabled)
        kwargs.setdefault("endpoint", settings.google_endpoint)
        kwargs.setdefault("max_results", settings.google_max_results)
        kwargs.setdefault("rate_limit_per_minute", settings.google_rate_limit_per_minute)
        kwargs.setdefault("allowed_domains", settings.google_allowed_domains)
        kwargs.setdefault("denied_domains", settings.google_denied_domains)
        super().__init__(**kwargs)
        self.search_engine_id = settings.google_search_engine_id if search_engine_id is None else search_engine_id

    @property
    def is_configured(self) -> bool:
        return super().is_configured and bool(self.search_engine_id)

    @staticmethod
    def build_query(request: SearchRequest) -> str:
        sites = [site.strip() for site in request.site_restrictions if site.strip()]
        if not sites:
            return request.query
        restriction = " OR ".join(f"site:{site}" for site in sites)
        return f"{request.query} ({restriction})" if len(sites) > 1 else f"{request.query} {restriction}"

    def build_params(self, request: SearchRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "key": self.api_key,
            "cx": self.search_engine_id,
            "q": self.build_query(request),
            "num": min(request.max_results, self.max_results),
        }
        if request.market:
            params["gl"] = request.market.split("-")[-1].lower()
        if request.safe_search:
            params["safe"] = SAFE_SEARCH_VALUES.get(request.safe_search.lower(), "active")
        return params

    def parse_hits(self, payload: dict[str, Any]) -> tuple[list[dict[str, Any]], int | None]:
        hits = [
            {"url": item.get("link"), "title": item.get("title"), "snippet": item.get("snippet")}
            for item in payload.get("items") or []
            if isinstance(item, dict)
        ]
        raw_total = (payload.get("searchInformation") or {}).get("totalResults")
        try:
            total = int(raw_total) if raw_total is not None else None
        except (TypeError, ValueError):
            total = None
        return hits, total

    def map_error_status(self, response: httpx.Response) -> SearchResult:
        if response.status_code == 403:
            body = response.text.lower()
            if "quota" in body or "limit" in body:
                logger.warning("Google Custom Search API quota exceeded")
                return SearchResult.quota_exceeded(self.provider_id)
        return super().map_error_status(response)
