"""Viewport group: one breakpoint bucket of URL Metric samples."""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Callable, Iterator, Optional

from url_metrics.grouping.media_query import generate_media_query
from url_metrics.models.detect_args import GroupStatus
from url_metrics.models.url_metric import StoredURLMetric

logger = logging.getLogger(__name__)


class URLMetricGroup:
    """URL Metrics captured for viewports in the range (minimum, maximum].

    Freshness is judged against the ETag supplied by ``current_etag`` so that
    every group in a collection agrees on which samples are current.
    """

    def __init__(
        self,
        minimum_viewport_width: int,
        maximum_viewport_width: Optional[int],
        sample_size: int,
        freshness_ttl: int,
        current_etag: Callable[[], str],
        now: Callable[[], float] = time.time,
    ):
        if minimum_viewport_width < 0:
            raise ValueError("minimum_viewport_width must be >= 0")
        if maximum_viewport_width is not None and maximum_viewport_width <= minimum_viewport_width:
            raise ValueError("maximum_viewport_width must be greater than minimum_viewport_width")
        if sample_size <= 0:
            raise ValueError("sample_size must be > 0")

        self.minimum_viewport_width = minimum_viewport_width
        self.maximum_viewport_width = maximum_viewport_width
        self.sample_size = sample_size
        self.freshness_ttl = freshness_ttl
        self._current_etag = current_etag
        self._now = now
        self._samples: list[StoredURLMetric] = []

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[StoredURLMetric]:
        return iter(self._samples)

    def __repr__(self) -> str:
        upper = "inf" if self.maximum_viewport_width is None else self.maximum_viewport_width
        return (
            f"URLMetricGroup(({self.minimum_viewport_width}, {upper}], "
            f"samples={len(self._samples)}, sample_size={self.sample_size})"
        )

    @property
    def samples(self) -> list[StoredURLMetric]:
        return list(self._samples)

    @property
    def media_query(self) -> Optional[str]:
        return generate_media_query(self.minimum_viewport_width, self.maximum_viewport_width)

    def is_viewport_width_in_range(self, viewport_width: int) -> bool:
        return viewport_width > self.minimum_viewport_width and (
            self.maximum_viewport_width is None
            or viewport_width <= self.maximum_viewport_width
        )

    def accept(self, url_metric: StoredURLMetric) -> None:
        """Add a sample. Range containment is the caller's responsibility."""
        self._samples.append(url_metric)

        # Keep only the newest sample_size samples.
        if len(self._samples) > self.sample_size:
            self._samples.sort(key=lambda m: m.timestamp, reverse=True)
            evicted = self._samples[self.sample_size:]
            self._samples = self._samples[: self.sample_size]
            logger.debug("Evicted %d old URL Metrics from %r", len(evicted), self)

    def is_fresh(self, url_metric: StoredURLMetric) -> bool:
        if url_metric.etag != self._current_etag():
            return False
        if self.freshness_ttl <= 0:
            return False
        age = self._now() - url_metric.timestamp
        return age <= self.freshness_ttl

    def get_fresh_url_metrics(self) -> list[StoredURLMetric]:
        return [m for m in self._samples if self.is_fresh(m)]

    def count_fresh_current(self) -> int:
        return sum(1 for m in self._samples if self.is_fresh(m))

    def is_complete(self) -> bool:
        return self.count_fresh_current() >= self.sample_size

    def get_lcp_element(self) -> Optional[str]:
        """Xpath most often reported as LCP across fresh samples.

        Ties go to the element seen in the most recent sample.
        """
        fresh = sorted(self.get_fresh_url_metrics(), key=lambda m: m.timestamp, reverse=True)
        counts: Counter[str] = Counter()
        first_seen: dict[str, int] = {}
        for index, url_metric in enumerate(fresh):
            lcp = url_metric.get_lcp_element()
            if lcp is None:
                continue
            counts[lcp.xpath] += 1
            first_seen.setdefault(lcp.xpath, index)
        if not counts:
            return None
        return max(counts, key=lambda xpath: (counts[xpath], -first_seen[xpath]))

    def describe_status(self) -> str:
        if self.is_complete():
            return "complete"
        if len(self._samples) > 0:
            return "populated"
        return "empty"

    def to_status(self) -> GroupStatus:
        return GroupStatus(
            minimum_viewport_width=self.minimum_viewport_width,
            maximum_viewport_width=self.maximum_viewport_width,
            complete=self.is_complete(),
        )

    def to_debug_dict(self) -> dict:
        return {
            "minimum_viewport_width": self.minimum_viewport_width,
            "maximum_viewport_width": self.maximum_viewport_width,
            "sample_size": self.sample_size,
            "freshness_ttl": self.freshness_ttl,
            "complete": self.is_complete(),
            "url_metrics": [m.to_json_dict() for m in self._samples],
        }
