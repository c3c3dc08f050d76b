from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Awaitable, Callable
from urllib.parse import urlparse

from loguru import logger

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Resolver = Callable[[str], Awaitable[list[str]]]

_BLOCKED_V4 = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.0.2.0/24",
        "192.168.0.0/16",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
]

_BLOCKED_V6 = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "::1/128",
        "::/128",
        "fe80::/10",
        "fc00::/7",
    )
]


def is_blocked_address(address: IpAddress) -> bool:
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return is_blocked_address(address.ipv4_mapped)
        return any(address in net for net in _BLOCKED_V6)
    return any(address in net for net in _BLOCKED_V4)


async def _resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


class SsrfGuard:
    """Rejects URLs whose host is, or resolves to, a non-public address."""

    def __init__(self, resolver: Resolver | None = None):
        self._resolver = resolver or _resolve_host

    async def is_allowed(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").strip("[]")
        if not host:
            logger.warning(f"SSRF check rejected URL without host: {url}")
            return False

        try:
            literal = ipaddress.ip_address(host)
        except ValueError:
            literal = None

        if literal is not None:
            allowed = not is_blocked_address(literal)
            if not allowed:
                logger.warning(f"SSRF check blocked direct IP {host}")
            return allowed

        try:
            resolved = await self._resolver(host)
        except (OSError, UnicodeError) as exc:
            logger.warning(f"SSRF check could not resolve {host}: {exc}")
            return False

        if not resolved:
            logger.warning(f"SSRF check found no addresses for {host}")
            return False

        for raw in resolved:
            try:
                address = ipaddress.ip_address(raw.split("%", 1)[0])
            except ValueError:
                logger.warning(f"SSRF check got unparsable address {raw!r} for {host}")
                return False
            if is_blocked_address(address):
                logger.warning(f"SSRF check blocked {host}: resolves to {address}")
                return False
        return True
