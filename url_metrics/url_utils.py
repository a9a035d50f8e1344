"""Shared URL utilities: normalize URLs and derive URL Metrics slugs."""

from __future__ import annotations

import hashlib
from urllib.parse import urlparse

# Query params that never change what a page renders.
IGNORED_QUERY_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid")


def normalize_url(url: str) -> str:
    """Normalize a URL so that equivalent page URLs share URL Metrics."""
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    query = ""
    if parsed.query:
        params = sorted(
            p for p in parsed.query.split("&")
            if p and p.split("=", 1)[0] not in IGNORED_QUERY_PARAMS
        )
        if params:
            query = "?" + "&".join(params)
    return f"{parsed.scheme}://{parsed.netloc.lower()}{path}{query}"


def url_metrics_slug(url: str) -> str:
    """Stable storage key for the URL Metrics of a page."""
    return hashlib.md5(normalize_url(url).encode()).hexdigest()
