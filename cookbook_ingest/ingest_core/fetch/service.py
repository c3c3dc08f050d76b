from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable
from urllib.parse import urljoin, urlsplit

import httpx
from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.errors import ErrorCode
from cookbook_ingest.ingest_core.fetch.circuit_breaker import CircuitBreaker
from cookbook_ingest.ingest_core.fetch.robots import RobotsPolicy
from cookbook_ingest.ingest_core.fetch.ssrf import SsrfGuard
from cookbook_ingest.services.logger import log_fetch
from cookbook_ingest.tools.url_utils import normalize_domain

MAX_REDIRECTS = 5
RETRYABLE_STATUS = frozenset({429})

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class UrlValidation:
    ok: bool
    error_code: str | None = None
    message: str | None = None


@dataclass(slots=True)
class FetchResult:
    success: bool
    url: str
    content: str | None = None
    status_code: int | None = None
    content_type: str | None = None
    content_length: int = 0
    final_url: str | None = None
    error: str | None = None
    error_code: str | None = None
    retrieved_at: datetime | None = None
    was_blocked_by_ssrf: bool = False
    was_blocked_by_circuit_breaker: bool = False
    retry_count: int = 0

    @classmethod
    def failed(cls, url: str, error_code: str, error: str, **kwargs) -> "FetchResult":
        return cls(success=False, url=url, error_code=error_code, error=error, **kwargs)


class _RetryableFetchError(Exception):
    def __init__(self, error_code: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class _FetchFailure(Exception):
    def __init__(self, error_code: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


def validate_url(url: str | None) -> UrlValidation:
    """Validate a user-supplied URL before any network I/O."""
    if url is None or not url.strip():
        return UrlValidation(False, ErrorCode.EMPTY_URL, "URL is empty")

    candidate = url.strip()
    try:
        parsed = urlsplit(candidate)
        _ = parsed.port
    except ValueError as exc:
        return UrlValidation(False, ErrorCode.INVALID_URL_FORMAT, f"URL could not be parsed: {exc}")

    if not parsed.scheme:
        return UrlValidation(False, ErrorCode.INVALID_URL_FORMAT, "URL must be absolute")

    if parsed.scheme.lower() not in ("http", "https"):
        return UrlValidation(
            False,
            ErrorCode.INVALID_SCHEME,
            f"Only http and https URLs are supported, got '{parsed.scheme}'",
        )

    if not parsed.netloc:
        return UrlValidation(False, ErrorCode.INVALID_URL_FORMAT, "URL must be absolute")

    if parsed.username is not None or parsed.password is not None:
        return UrlValidation(False, ErrorCode.CREDENTIALS_IN_URL, "URLs with embedded credentials are not allowed")

    if not parsed.hostname:
        return UrlValidation(False, ErrorCode.INVALID_URL_FORMAT, "URL has no host")

    return UrlValidation(True)


class FetchService:
    """SSRF-safe page fetcher with per-domain circuit breaking and retries."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        ssrf_guard: SsrfGuard | None = None,
        user_agent: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        max_bytes: int | None = None,
        respect_robots_txt: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep | None = None,
    ):
        self.circuit_breaker = circuit_breaker
        self.ssrf_guard = ssrf_guard or SsrfGuard()
        self.user_agent = (user_agent or settings.ingest_user_agent).strip()
        self.timeout_seconds = max(
            float(timeout_seconds if timeout_seconds is not None else settings.fetch_timeout_seconds),
            1.0,
        )
        self.max_retries = max(int(max_retries if max_retries is not None else settings.fetch_max_retries), 0)
        self.max_bytes = max(int(max_bytes if max_bytes is not None else settings.fetch_max_bytes), 1)
        self.respect_robots_txt = bool(
            settings.respect_robots_txt if respect_robots_txt is None else respect_robots_txt
        )
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._robots = RobotsPolicy(self.user_agent)

    async def fetch(self, url: str) -> FetchResult:
        validation = validate_url(url)
        if not validation.ok:
            return FetchResult.failed(url, str(validation.error_code), validation.message or "Invalid URL")

        url = url.strip()
        domain = normalize_domain(url)

        if not self.circuit_breaker.is_allowed(domain):
            log_fetch(url, "blocked", error_code=ErrorCode.CIRCUIT_BREAKER_OPEN)
            return FetchResult.failed(
                url,
                ErrorCode.CIRCUIT_BREAKER_OPEN,
                f"Circuit breaker is open for domain {domain}",
                was_blocked_by_circuit_breaker=True,
            )

        if not await self.ssrf_guard.is_allowed(url):
            self.circuit_breaker.record_failure(domain)
            log_fetch(url, "blocked", error_code=ErrorCode.SSRF_BLOCKED)
            return FetchResult.failed(
                url,
                ErrorCode.SSRF_BLOCKED,
                "URL resolves to a private or reserved address",
                was_blocked_by_ssrf=True,
            )

        started = time.monotonic()
        async with self._client() as client:
            if self.respect_robots_txt and not await self._robots.is_allowed(client, url):
                log_fetch(url, "blocked", error_code=ErrorCode.ROBOTS_TXT_BLOCKED)
                return FetchResult.failed(
                    url,
                    ErrorCode.ROBOTS_TXT_BLOCKED,
                    "Fetching this URL is disallowed by robots.txt",
                )

            last_error: _RetryableFetchError | None = None
            for attempt in range(1, self.max_retries + 2):
                if attempt > 1:
                    delay = float(2 ** (attempt - 2))
                    logger.debug(f"Retrying {url} in {delay}s (attempt {attempt})")
                    await self._sleep(delay)
                try:
                    result = await self._fetch_once(client, url)
                except _RetryableFetchError as exc:
                    last_error = exc
                    self.circuit_breaker.record_failure(domain)
                    logger.warning(f"Transient fetch failure for {url}: {exc}")
                    continue
                except _FetchFailure as exc:
                    if exc.status_code is not None and 400 <= exc.status_code < 500:
                        # 4xx counts toward the breaker but is never retried.
                        self.circuit_breaker.record_failure(domain)
                    log_fetch(
                        url,
                        "failed",
                        status_code=exc.status_code,
                        attempts=attempt,
                        duration_ms=int((time.monotonic() - started) * 1000),
                        error_code=exc.error_code,
                    )
                    return FetchResult.failed(
                        url,
                        exc.error_code,
                        str(exc),
                        status_code=exc.status_code,
                        retry_count=attempt - 1,
                    )

                result.retry_count = attempt - 1
                self.circuit_breaker.record_success(domain)
                log_fetch(
                    url,
                    "success",
                    status_code=result.status_code,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                return result

        log_fetch(
            url,
            "failed",
            status_code=last_error.status_code if last_error else None,
            attempts=self.max_retries + 1,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_code=ErrorCode.MAX_RETRIES_EXCEEDED,
        )
        return FetchResult.failed(
            url,
            ErrorCode.MAX_RETRIES_EXCEEDED,
            f"Failed after {self.max_retries + 1} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            retry_count=self.max_retries,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    async def _fetch_once(self, client: httpx.AsyncClient, url: str) -> FetchResult:
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            try:
                async with client.stream(
                    "GET",
                    current,
                    headers={
                        "User-Agent": self.user_agent,
                        "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                    },
                ) as response:
                    if response.is_redirect:
                        location = response.headers.get("location", "")
                        current = await self._next_hop(current, location)
                        continue
                    return await self._read_response(url, current, response)
            except httpx.TimeoutException as exc:
                raise _RetryableFetchError("TIMEOUT", f"Request timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise _RetryableFetchError("NETWORK_ERROR", f"Network error: {exc}") from exc

        raise _FetchFailure(ErrorCode.FETCH_FAILED, f"Too many redirects (>{MAX_REDIRECTS})")

    async def _next_hop(self, current: str, location: str) -> str:
        if not location:
            raise _FetchFailure(ErrorCode.FETCH_FAILED, "Redirect without Location header")
        target = urljoin(current, location)
        validation = validate_url(target)
        if not validation.ok:
            raise _FetchFailure(str(validation.error_code), f"Redirect target rejected: {validation.message}")
        if not await self.ssrf_guard.is_allowed(target):
            raise _FetchFailure(ErrorCode.SSRF_BLOCKED, f"Redirect to blocked address: {target}")
        return target

    async def _read_response(self, url: str, current: str, response: httpx.Response) -> FetchResult:
        status = response.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            raise _RetryableFetchError(f"HTTP_{status}", f"HTTP {status}", status)
        if status >= 400:
            raise _FetchFailure(f"HTTP_{status}", f"HTTP {status}", status)

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise _FetchFailure(
                ErrorCode.CONTENT_TOO_LARGE,
                f"Content-Length {declared} exceeds limit of {self.max_bytes} bytes",
                status,
            )

        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > self.max_bytes:
                raise _FetchFailure(
                    ErrorCode.CONTENT_TOO_LARGE,
                    f"Response body exceeds limit of {self.max_bytes} bytes",
                    status,
                )
            chunks.append(chunk)

        body = b"".join(chunks)
        encoding = response.charset_encoding or "utf-8"
        try:
            content = body.decode(encoding, errors="replace")
        except LookupError:
            content = body.decode("utf-8", errors="replace")

        return FetchResult(
            success=True,
            url=url,
            content=content,
            status_code=status,
            content_type=response.headers.get("content-type"),
            content_length=total,
            final_url=current,
            retrieved_at=datetime.now(timezone.utc),
        )
