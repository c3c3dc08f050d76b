from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Callable

from loguru import logger

from cookbook_ingest.config import settings
from cookbook_ingest.tools.url_utils import normalize_domain

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CircuitState(StrEnum):
    CLOSED = "Closed"
    OPEN = "Open"


@dataclass(slots=True)
class CircuitBreakerState:
    domain: str
    failures: deque[datetime] = field(default_factory=deque)
    state: CircuitState = CircuitState.CLOSED
    opened_at: datetime | None = None


class CircuitBreaker:
    """Per-domain sliding-window failure counter.

    One instance is shared by every fetch in the process. Methods never
    await, so updates cannot interleave within an event loop.
    """

    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        failure_window: timedelta | None = None,
        block_duration: timedelta | None = None,
        clock: Clock | None = None,
    ):
        self.failure_threshold = max(
            int(failure_threshold if failure_threshold is not None else settings.circuit_failure_threshold),
            1,
        )
        self.failure_window = failure_window or timedelta(
            minutes=max(int(settings.circuit_failure_window_minutes), 1)
        )
        self.block_duration = block_duration or timedelta(
            minutes=max(int(settings.circuit_block_duration_minutes), 1)
        )
        self._clock = clock or _utc_now
        self._domains: dict[str, CircuitBreakerState] = {}

    def is_allowed(self, domain: str) -> bool:
        key = normalize_domain(domain)
        entry = self._domains.get(key)
        if entry is None or entry.state == CircuitState.CLOSED:
            return True

        now = self._clock()
        if entry.opened_at is not None and now - entry.opened_at >= self.block_duration:
            entry.state = CircuitState.CLOSED
            entry.opened_at = None
            entry.failures.clear()
            logger.info(f"Circuit closed for {key} after block duration elapsed")
            return True
        return False

    def record_failure(self, domain: str) -> None:
        key = normalize_domain(domain)
        now = self._clock()
        entry = self._domains.setdefault(key, CircuitBreakerState(domain=key))
        entry.failures.append(now)
        self._prune(entry, now)

        if entry.state == CircuitState.CLOSED and len(entry.failures) >= self.failure_threshold:
            entry.state = CircuitState.OPEN
            entry.opened_at = now
            logger.warning(
                f"Circuit opened for {key}: {len(entry.failures)} failures within {self.failure_window}"
            )

    def record_success(self, domain: str) -> None:
        key = normalize_domain(domain)
        entry = self._domains.get(key)
        # Only consecutive failures count toward the threshold.
        if entry is not None and entry.state == CircuitState.CLOSED:
            entry.failures.clear()
        logger.debug(f"Circuit success recorded for {key}")

    def reset(self, domain: str) -> None:
        self._domains.pop(normalize_domain(domain), None)

    def get_state(self, domain: str) -> CircuitState:
        entry = self._domains.get(normalize_domain(domain))
        if entry is None:
            return CircuitState.CLOSED
        return entry.state

    def snapshot(self, domain: str) -> CircuitBreakerState | None:
        return self._domains.get(normalize_domain(domain))

    def _prune(self, entry: CircuitBreakerState, now: datetime) -> None:
        cutoff = now - self.failure_window
        while entry.failures and entry.failures[0] < cutoff:
            entry.failures.popleft()
