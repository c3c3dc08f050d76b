from __future__ import annotations

import base64
import hashlib
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_id",
        "gclid",
        "fbclid",
        "dclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "ref",
        "ref_src",
        "igshid",
        "_ga",
    }
)

URL_HASH_LENGTH = 22


def canonicalize_url(url: str) -> str:
    """Lowercase scheme/host, drop default ports, tracking params and fragment."""
    parsed = urlsplit(url.strip())
    scheme = (parsed.scheme or "https").lower()
    host = (parsed.hostname or "").lower()
    port = parsed.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    params = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    query = urlencode(sorted(params))
    return urlunsplit((scheme, host, path, query, ""))


def compute_url_hash(url: str) -> str:
    """Stable 22-char base64url sha256 of the canonical URL."""
    digest = hashlib.sha256(canonicalize_url(url).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:URL_HASH_LENGTH]


def normalize_domain(url_or_host: str) -> str:
    value = (url_or_host or "").strip()
    if "://" in value:
        host = urlparse(value).hostname or ""
    else:
        host = value.split("/", 1)[0].split(":", 1)[0]
    host = host.lower().strip().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def site_name(url: str) -> str | None:
    domain = normalize_domain(url)
    return domain or None
