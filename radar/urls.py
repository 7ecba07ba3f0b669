"""URL canonicalization used as the primary content identity."""

from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAM_PREFIXES = ("utm_",)
TRACKING_PARAMS = {"fbclid", "gclid"}


def _is_tracking_param(key: str) -> bool:
    lower = key.lower()
    return lower in TRACKING_PARAMS or lower.startswith(TRACKING_PARAM_PREFIXES)


def canonicalize_url(url: str) -> str:
    """Normalize a URL so equivalent links compare equal.

    Lowercases scheme and host, drops tracking params (utm_*, fbclid, gclid),
    the fragment, and a trailing slash on non-root paths. Raises ValueError
    for anything without a scheme and host.
    """
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Not an absolute URL: {url!r}")

    host = parts.hostname.lower()
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        host = f"{userinfo}@{host}"

    path = parts.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query_pairs = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    ]
    query = urlencode(query_pairs)

    return urlunsplit((parts.scheme.lower(), host, path, query, ""))


def url_hash(canonical_url: str) -> str:
    return hashlib.sha256(canonical_url.encode()).hexdigest()
