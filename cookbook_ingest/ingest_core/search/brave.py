from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.ingest_core.search.providers import BaseSearchProvider
from cookbook_ingest.models.search import SearchRequest, SearchResult

BRAVE_PROVIDER_ID = "brave"


class BraveSearchProvider(BaseSearchProvider):
    provider_id = BRAVE_PROVIDER_ID
    display_name = "Brave Search"
    supports_market = True
    supports_safe_search = True
    max_results_cap = 20

    def __init__(self, *, market: str | None = None, safe_search: str | None = None, **kwargs):
        kwargs.setdefault("api_key", settings.brave_api_key)
        kwargs.setdefault("enabled", settings.brave_enabled)
        kwargs.setdefault("endpoint", settings.brave_endpoint)
        kwargs.setdefault("max_results", settings.brave_max_results)
        kwargs.setdefault("rate_limit_per_minute", settings.brave_rate_limit_per_minute)
        kwargs.setdefault("allowed_domains", settings.brave_allowed_domains)
        kwargs.setdefault("denied_domains", settings.brave_denied_domains)
        super().__init__(**kwargs)
        self.market = settings.brave_market if market is None else market
        self.safe_search = settings.brave_safe_search if safe_search is None else safe_search

    def build_headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-Subscription-Token": self.api_key}

    def build_params(self, request: SearchRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "q": request.query,
            "count": min(request.max_results, self.max_results),
        }
        market = request.market or self.market
        if market:
            params["country"] = market.split("-")[-1]
        safe_search = request.safe_search or self.safe_search
        if safe_search:
            params["safesearch"] = safe_search
        return params

    def parse_hits(self, payload: dict[str, Any]) -> tuple[list[dict[str, Any]], int | None]:
        web = payload.get("web") or {}
        hits = [
            {"url": item.get("url"), "title": item.get("title"), "snippet": item.get("description")}
            for item in web.get("results") or []
            if isinstance(item, dict)
        ]
        total = (payload.get("query") or {}).get("total_count")
        return hits, int(total) if isinstance(total, (int, float)) else None

    def map_error_status(self, response: httpx.Response) -> SearchResult:
        if response.status_code == 402:
            logger.warning("Brave Search API quota exceeded")
            return SearchResult.quota_exceeded(self.provider_id)
        return super().map_error_status(response)
