"""Template optimization context: per-request view of a URL's stored URL Metrics."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping, Optional

from url_metrics.grouping.collection import URLMetricGroupCollection
from url_metrics.grouping.etag import TagVisitorRegistry, compute_etag
from url_metrics.models.config import DetectiveConfig
from url_metrics.models.detect_args import DetectArgs
from url_metrics.server.hmac_auth import compute_url_metric_hmac
from url_metrics.storage.store import URLMetricStore
from url_metrics.url_utils import url_metrics_slug

logger = logging.getLogger(__name__)

GENERATOR_NAME = "url-metrics"
VERSION = "0.1.0"


class OptimizationContext:
    """Everything derived for one page render: ETag, slug, group collection.

    Built fresh for every request; nothing here is cached between requests.
    """

    def __init__(
        self,
        url: str,
        config: DetectiveConfig,
        store: URLMetricStore,
        tag_visitors: Optional[TagVisitorRegistry] = None,
        page_state: Optional[Mapping[str, Any]] = None,
        cache_purge_post_id: Optional[int] = None,
        now: Callable[[], float] = time.time,
    ):
        self.url = url
        self.config = config
        self.tag_visitors = tag_visitors if tag_visitors is not None else TagVisitorRegistry()
        self.cache_purge_post_id = cache_purge_post_id
        self.slug = url_metrics_slug(url)
        self.current_etag = compute_etag(self.tag_visitors, page_state)
        self.collection = URLMetricGroupCollection(
            store.get_url_metrics(self.slug),
            self.current_etag,
            config.breakpoint_max_widths,
            config.sample_size,
            config.freshness_ttl_seconds,
            now=now,
        )
        logger.debug(
            "Optimization context for %s: slug=%s etag=%s groups=%s",
            url, self.slug, self.current_etag, self.collection.describe_groups(),
        )

    @property
    def needs_detection(self) -> bool:
        return not self.collection.is_every_group_complete()

    def tracked_xpaths(self, elements: Iterable[tuple[str, Any]]) -> list[str]:
        """Xpaths of the (xpath, element) pairs any tag visitor wants tracked.

        Empty once every group is complete, since nothing needs annotating.
        """
        if not self.needs_detection:
            return []
        return [
            xpath for xpath, element in elements
            if self.tag_visitors.visit_all(element)
        ]

    def build_detect_args(self, rest_api_nonce: Optional[str] = None) -> DetectArgs:
        config = self.config
        hmac = compute_url_metric_hmac(
            config.require_hmac_secret(),
            self.slug,
            self.current_etag,
            self.url,
            self.cache_purge_post_id,
        )
        return DetectArgs(
            min_viewport_aspect_ratio=config.min_viewport_aspect_ratio,
            max_viewport_aspect_ratio=config.max_viewport_aspect_ratio,
            is_debug=config.debug,
            extension_modules=list(config.extension_modules),
            rest_api_endpoint=config.rest_api_endpoint,
            rest_api_nonce=rest_api_nonce,
            gzip_available=config.gzip_payloads,
            max_url_metric_size=config.max_url_metric_size,
            current_etag=self.current_etag,
            current_url=self.url,
            slug=self.slug,
            cache_purge_post_id=self.cache_purge_post_id,
            hmac=hmac,
            group_statuses=self.collection.get_group_statuses(),
            storage_lock_ttl=config.storage_lock_ttl_seconds,
            freshness_ttl=config.freshness_ttl_seconds,
            group_collection=self.collection.to_debug_dict() if config.debug else None,
        )

    def generator_meta_content(self) -> str:
        """Content for <meta name="generator">, e.g. 'url-metrics 0.1.0; url_metric_groups={0:empty, 480:complete}'."""
        return (
            f"{GENERATOR_NAME} {VERSION}; "
            f"url_metric_groups={{{self.collection.describe_groups()}}}"
        )
