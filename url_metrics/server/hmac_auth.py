"""HMAC binding a submission to the page view that issued it."""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional


def _message(slug: str, current_etag: str, url: str, cache_purge_post_id: Optional[int]) -> bytes:
    post_id = "" if cache_purge_post_id is None else str(cache_purge_post_id)
    return "|".join([slug, current_etag, url, post_id]).encode("utf-8")


def compute_url_metric_hmac(
    secret: str,
    slug: str,
    current_etag: str,
    url: str,
    cache_purge_post_id: Optional[int] = None,
) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        _message(slug, current_etag, url, cache_purge_post_id),
        hashlib.sha256,
    ).hexdigest()


def verify_url_metric_hmac(
    secret: str,
    signature: str,
    slug: str,
    current_etag: str,
    url: str,
    cache_purge_post_id: Optional[int] = None,
) -> bool:
    expected = compute_url_metric_hmac(secret, slug, current_etag, url, cache_purge_post_id)
    return hmac.compare_digest(expected, signature)
