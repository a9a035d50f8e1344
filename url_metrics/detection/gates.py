"""Pure gate predicates evaluated by the detector before and after observation."""

from __future__ import annotations

import hashlib
from typing import Optional, Sequence

from url_metrics.models.detect_args import GroupStatus

MAX_BODY_LENGTH_KIB = 64
MAX_BODY_LENGTH_BYTES = MAX_BODY_LENGTH_KIB * 1024
SUBMITTED_SESSION_KEY_PREFIX = "umSubmitted-"


def has_viewport_area(width: int, height: int) -> bool:
    return width > 0 and height > 0


def is_page_observable(is_hidden: bool, is_prerendering: bool) -> bool:
    """Background tabs are skipped unless they are being prerendered."""
    return not is_hidden or is_prerendering


def get_group_status_for_viewport_width(
    viewport_width: int, statuses: Sequence[GroupStatus],
) -> GroupStatus:
    for status in statuses:
        if viewport_width > status.minimum_viewport_width and (
            status.maximum_viewport_width is None
            or viewport_width <= status.maximum_viewport_width
        ):
            return status
    raise LookupError(
        f"Unexpectedly unable to locate group for viewport width {viewport_width}"
    )


def submitted_session_key(current_etag: str, current_url: str, status: GroupStatus) -> str:
    """Session storage key for "already submitted for this ETag, URL and group".

    Hashed so that raw URLs never land in client storage.
    """
    message = "-".join([
        current_etag,
        current_url,
        str(status.minimum_viewport_width),
        str(status.maximum_viewport_width or ""),
    ])
    return SUBMITTED_SESSION_KEY_PREFIX + hashlib.sha1(message.encode("utf-8")).hexdigest()


def is_recently_submitted(
    previous_time_ms: Optional[str | int], current_time_ms: int, freshness_ttl: int,
) -> bool:
    """Whether a prior submission still blocks a new one.

    A negative TTL blocks forever; a TTL of 0 never blocks.
    """
    if previous_time_ms is None:
        return False
    try:
        previous = int(previous_time_ms)
    except (TypeError, ValueError):
        return False
    if freshness_ttl < 0:
        return True
    return (current_time_ms - previous) / 1000 < freshness_ttl


def viewport_aspect_ratio(width: int, height: int) -> float:
    return width / height


def is_aspect_ratio_in_range(
    width: int, height: int, minimum: float, maximum: float,
) -> bool:
    return minimum <= viewport_aspect_ratio(width, height) <= maximum


def exceeds_max_url_metric_size(json_body: str, max_url_metric_size: int) -> bool:
    return len(json_body.encode("utf-8")) > max_url_metric_size


def exceeds_transport_limit(payload: bytes) -> bool:
    return len(payload) > MAX_BODY_LENGTH_BYTES


def percent_of_transport_budget(payload: bytes) -> float:
    return len(payload) / MAX_BODY_LENGTH_BYTES * 100
