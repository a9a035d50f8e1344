"""URL Metric group collection: the viewport groups spanning every width."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Iterator, Optional

from url_metrics.grouping.group import URLMetricGroup
from url_metrics.models.detect_args import GroupStatus
from url_metrics.models.url_metric import StoredURLMetric

logger = logging.getLogger(__name__)


class InvalidBreakpointsError(ValueError):
    """Breakpoint max widths were not positive, unique, strictly increasing integers."""


class ViewportWidthOutOfRangeError(LookupError):
    """No group covers the requested viewport width."""


def validate_breakpoints(breakpoints: Iterable[int]) -> list[int]:
    result = list(breakpoints)
    previous = 0
    for width in result:
        if isinstance(width, bool) or not isinstance(width, int):
            raise InvalidBreakpointsError(f"Breakpoint {width!r} is not an integer")
        if width <= previous:
            raise InvalidBreakpointsError(
                f"Breakpoints must be positive and strictly increasing, got {result}"
            )
        previous = width
    return result


class URLMetricGroupCollection:
    """Groups for breakpoints [b1 < ... < bn]: (0,b1], (b1,b2], ..., (bn,inf).

    Built once per request from persisted URL Metrics.
    """

    def __init__(
        self,
        url_metrics: Iterable[StoredURLMetric],
        current_etag: str,
        breakpoints: Iterable[int],
        sample_size: int,
        freshness_ttl: int,
        now: Callable[[], float] = time.time,
    ):
        self.breakpoints = validate_breakpoints(breakpoints)
        self._current_etag = current_etag
        self.sample_size = sample_size
        self.freshness_ttl = freshness_ttl

        self._groups: list[URLMetricGroup] = []
        minimum = 0
        for maximum in [*self.breakpoints, None]:
            self._groups.append(URLMetricGroup(
                minimum_viewport_width=minimum,
                maximum_viewport_width=maximum,
                sample_size=sample_size,
                freshness_ttl=freshness_ttl,
                current_etag=self.get_current_etag,
                now=now,
            ))
            if maximum is not None:
                minimum = maximum

        for url_metric in url_metrics:
            self.add_url_metric(url_metric)

    def __iter__(self) -> Iterator[URLMetricGroup]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def get_current_etag(self) -> str:
        return self._current_etag

    @property
    def current_etag(self) -> str:
        return self._current_etag

    def get_group_for_viewport_width(self, viewport_width: int) -> URLMetricGroup:
        for group in self._groups:
            if group.is_viewport_width_in_range(viewport_width):
                return group
        raise ViewportWidthOutOfRangeError(
            f"No URL Metric group found for viewport width {viewport_width}"
        )

    def add_url_metric(self, url_metric: StoredURLMetric) -> URLMetricGroup:
        group = self.get_group_for_viewport_width(url_metric.viewport.width)
        group.accept(url_metric)
        return group

    def is_every_group_complete(self) -> bool:
        return all(group.is_complete() for group in self._groups)

    def is_any_group_populated(self) -> bool:
        return any(len(group) > 0 for group in self._groups)

    def get_first_group(self) -> URLMetricGroup:
        return self._groups[0]

    def get_last_group(self) -> URLMetricGroup:
        return self._groups[-1]

    def get_all_url_metrics(self) -> list[StoredURLMetric]:
        return [url_metric for group in self._groups for url_metric in group]

    def get_common_lcp_element(self) -> Optional[str]:
        """Xpath that is the LCP element in every group which has fresh samples."""
        common: Optional[str] = None
        seen_any = False
        for group in self._groups:
            if not group.get_fresh_url_metrics():
                continue
            lcp = group.get_lcp_element()
            if lcp is None:
                return None
            if seen_any and lcp != common:
                return None
            common = lcp
            seen_any = True
        return common

    def get_group_statuses(self) -> list[GroupStatus]:
        return [group.to_status() for group in self._groups]

    def describe_groups(self) -> str:
        """Summary like '0:complete, 480:populated, 600:empty, 782:empty'."""
        return ", ".join(
            f"{group.minimum_viewport_width}:{group.describe_status()}"
            for group in self._groups
        )

    def to_debug_dict(self) -> dict:
        return {
            "current_etag": self._current_etag,
            "breakpoints": self.breakpoints,
            "sample_size": self.sample_size,
            "freshness_ttl": self.freshness_ttl,
            "every_group_complete": self.is_every_group_complete(),
            "groups": [group.to_debug_dict() for group in self._groups],
        }
