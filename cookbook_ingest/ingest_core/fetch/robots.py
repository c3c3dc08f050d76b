from __future__ import annotations

from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx
from loguru import logger

ROBOTS_MAX_BYTES = 512 * 1024


def _origin(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


class RobotsPolicy:
    """Caches parsed robots.txt per origin for the lifetime of the instance."""

    def __init__(self, user_agent: str, *, max_bytes: int = ROBOTS_MAX_BYTES):
        self.user_agent = user_agent
        self.max_bytes = max(int(max_bytes), 1)
        self._parsers: dict[str, RobotFileParser | None] = {}

    async def is_allowed(self, client: httpx.AsyncClient, url: str) -> bool:
        origin = _origin(url)
        if origin not in self._parsers:
            self._parsers[origin] = await self._load(client, origin)
        parser = self._parsers[origin]
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    async def _load(self, client: httpx.AsyncClient, origin: str) -> RobotFileParser | None:
        robots_url = f"{origin}/robots.txt"
        try:
            async with client.stream("GET", robots_url, headers={"User-Agent": self.user_agent}) as response:
                if response.status_code != 200:
                    return None
                body = await self._read_capped(response, origin)
        except httpx.HTTPError as exc:
            logger.debug(f"robots.txt unavailable for {origin}: {exc}")
            return None

        parser = RobotFileParser(robots_url)
        parser.parse(body.decode("utf-8", errors="replace").splitlines())
        return parser

    async def _read_capped(self, response: httpx.Response, origin: str) -> bytes:
        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            chunk = chunk[: self.max_bytes - total]
            chunks.append(chunk)
            total += len(chunk)
            if total >= self.max_bytes:
                logger.debug(f"robots.txt for {origin} truncated at {self.max_bytes} bytes")
                break
        return b"".join(chunks)
