"""Submission endpoint: validates an incoming URL Metric and stores it.

Transport-agnostic so it can sit behind Flask or be driven in-process; every
rejection is a StoreRequestError carrying the HTTP status and a machine code.
Nothing is persisted unless every check passes.
"""

from __future__ import annotations

import gzip
import json
import logging
import re
import threading
import time
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, MutableMapping, Optional

from pydantic import ValidationError

from url_metrics.detection.gates import MAX_BODY_LENGTH_BYTES, MAX_BODY_LENGTH_KIB
from url_metrics.grouping.collection import URLMetricGroupCollection
from url_metrics.models.config import DetectiveConfig
from url_metrics.models.url_metric import StoredURLMetric, URLMetric
from url_metrics.server.hmac_auth import verify_url_metric_hmac
from url_metrics.storage.lock import RequesterStorageLock
from url_metrics.storage.store import URLMetricStore

logger = logging.getLogger(__name__)

MD5_PATTERN = re.compile(r"[0-9a-f]{32}")
SHA256_PATTERN = re.compile(r"[0-9a-f]{64}")


class StoreRequestError(Exception):
    """A rejected submission, rendered as {"code", "message", "data": {"status"}}."""

    def __init__(self, code: str, message: str, status: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": {"status": self.status}}


@dataclass
class StoreRequest:
    query: Mapping[str, str]
    body: bytes
    content_encoding: Optional[str] = None
    requester_address: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def decompress_request_body(body: bytes, content_encoding: Optional[str]) -> bytes:
    """Undo gzip Content-Encoding, enforcing the transport ceiling first."""
    if not content_encoding or content_encoding.strip().lower() != "gzip":
        return body
    if len(body) > MAX_BODY_LENGTH_BYTES:
        raise StoreRequestError(
            "rest_content_too_large",
            f"Compressed request body exceeds {MAX_BODY_LENGTH_KIB} KiB.",
            413,
        )
    try:
        return gzip.decompress(body)
    except (OSError, EOFError, zlib.error) as e:
        raise StoreRequestError(
            "rest_invalid_payload", f"Unable to decompress request body: {e}", 400,
        ) from e


def _require_param(query: Mapping[str, str], name: str, pattern: re.Pattern) -> str:
    value = query.get(name)
    if value is None or value == "":
        raise StoreRequestError("rest_missing_param", f"Missing parameter: {name}", 400)
    if not pattern.fullmatch(value):
        raise StoreRequestError("rest_invalid_param", f"Invalid parameter: {name}", 400)
    return value


def _optional_post_id(query: Mapping[str, str]) -> Optional[int]:
    raw = query.get("cache_purge_post_id")
    if raw is None or raw == "":
        return None
    try:
        post_id = int(raw)
    except ValueError as e:
        raise StoreRequestError(
            "rest_invalid_param", "Invalid parameter: cache_purge_post_id", 400,
        ) from e
    if post_id < 1:
        raise StoreRequestError(
            "rest_invalid_param", "Invalid parameter: cache_purge_post_id", 400,
        )
    return post_id


class StoreEndpoint:
    """Handles URL Metric submissions for one configured site."""

    def __init__(
        self,
        config: DetectiveConfig,
        store: URLMetricStore,
        lock_storage: Optional[MutableMapping[str, str]] = None,
        on_cache_purge: Optional[Callable[[int], None]] = None,
        now: Callable[[], float] = time.time,
        uuid_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.config = config
        self.store = store
        self.lock_storage: MutableMapping[str, str] = (
            lock_storage if lock_storage is not None else {}
        )
        self.on_cache_purge = on_cache_purge
        self.now = now
        self.uuid_factory = uuid_factory
        self._storage_guard = threading.Lock()

    def handle(self, request: StoreRequest) -> dict[str, Any]:
        config = self.config
        query = request.query

        slug = _require_param(query, "slug", MD5_PATTERN)
        current_etag = _require_param(query, "current_etag", MD5_PATTERN)
        signature = _require_param(query, "hmac", SHA256_PATTERN)
        cache_purge_post_id = _optional_post_id(query)

        body = decompress_request_body(request.body, request.content_encoding)
        if len(body) > config.max_url_metric_size:
            raise StoreRequestError(
                "rest_content_too_large",
                f"URL Metric is {len(body):,} bytes, exceeding the maximum size of "
                f"{config.max_url_metric_size:,} bytes.",
                413,
            )
        try:
            data = json.loads(body)
        except ValueError as e:
            raise StoreRequestError("rest_invalid_param", f"Invalid JSON body: {e}", 400) from e
        if not isinstance(data, dict):
            raise StoreRequestError("rest_invalid_param", "URL Metric must be a JSON object.", 400)

        url = data.get("url")
        if not isinstance(url, str) or not url:
            raise StoreRequestError("rest_missing_param", "Missing parameter: url", 400)

        if not verify_url_metric_hmac(
            config.require_hmac_secret(), signature, slug, current_etag, url, cache_purge_post_id,
        ):
            raise StoreRequestError(
                "url_metric_invalid_hmac", "URL Metric HMAC verification failure.", 403,
            )

        # The requester lock check through the store write must not interleave.
        with self._storage_guard:
            self._store_url_metric(data, url, slug, current_etag, request.requester_address)

        if cache_purge_post_id is not None and self.on_cache_purge is not None:
            self.on_cache_purge(cache_purge_post_id)

        return {"success": True}

    def _store_url_metric(
        self, data: dict[str, Any], url: str, slug: str, current_etag: str, requester_address: str,
    ) -> None:
        config = self.config
        now = self.now()
        lock = RequesterStorageLock(
            self.lock_storage, requester_address, config.storage_lock_ttl_seconds,
        )
        if lock.is_locked(int(now * 1000)):
            raise StoreRequestError(
                "url_metric_storage_locked",
                "URL Metric storage is presently locked for the current requester.",
                403,
            )

        try:
            url_metric = URLMetric.model_validate(data)
        except ValidationError as e:
            raise StoreRequestError(
                "rest_invalid_param", f"Invalid URL Metric: {e.error_count()} validation error(s).", 400,
            ) from e

        viewport = url_metric.viewport
        aspect_ratio = viewport.aspect_ratio
        if not (config.min_viewport_aspect_ratio <= aspect_ratio <= config.max_viewport_aspect_ratio):
            raise StoreRequestError(
                "url_metric_invalid_viewport",
                f"Viewport aspect ratio ({aspect_ratio}) is not in the accepted range of "
                f"{config.min_viewport_aspect_ratio} to {config.max_viewport_aspect_ratio}.",
                400,
            )

        collection = URLMetricGroupCollection(
            self.store.get_url_metrics(slug),
            current_etag,
            config.breakpoint_max_widths,
            config.sample_size,
            config.freshness_ttl_seconds,
            now=lambda: now,
        )
        group = collection.get_group_for_viewport_width(viewport.width)
        if group.is_complete():
            raise StoreRequestError(
                "url_metric_group_complete",
                "The URL Metric group for the provided viewport is already complete.",
                403,
            )

        stored = StoredURLMetric.from_submission(
            url_metric, uuid=self.uuid_factory(), etag=current_etag, timestamp=now,
        )
        collection.add_url_metric(stored)
        self.store.save_url_metrics(slug, url, collection.get_all_url_metrics())
        lock.set_lock(int(now * 1000))
        logger.info(
            "Stored URL Metric %s for %s (viewport %dx%d, group %s)",
            stored.uuid, url, viewport.width, viewport.height, group.media_query or "all",
        )
