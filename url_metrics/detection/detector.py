"""Detection orchestrator: decides whether to observe a visit and submits the URL Metric.

The detector is a linear state machine. Every gate that fails raises
DetectionAborted, which run() turns into the single terminal ABORTED state;
reaching the end of the sequence is the SUBMITTED state. Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from url_metrics.detection.compression import COMPRESSION_DEBOUNCE_DELAY, CompressionPipeline
from url_metrics.detection.environment import IntersectionEntry, MetricReport, Observer, PageEnvironment
from url_metrics.detection.extensions import (
    finalize_extensions,
    initialize_extensions,
    load_extensions,
)
from url_metrics.detection.gates import (
    MAX_BODY_LENGTH_KIB,
    exceeds_max_url_metric_size,
    exceeds_transport_limit,
    get_group_status_for_viewport_width,
    has_viewport_area,
    is_aspect_ratio_in_range,
    is_page_observable,
    is_recently_submitted,
    percent_of_transport_budget,
    submitted_session_key,
    viewport_aspect_ratio,
)
from url_metrics.detection.record import URLMetricRecord
from url_metrics.models.detect_args import DetectArgs, GroupStatus
from url_metrics.models.url_metric import DOMRect, ElementData, URLMetric, Viewport
from url_metrics.storage.lock import SessionStorageLock

logger = logging.getLogger(__name__)

LOG_PREFIX = "[URL Metrics]"


class DetectionState(str, Enum):
    PENDING = "pending"
    OBSERVING = "observing"
    ASSEMBLED = "assembled"
    EXTENDED = "extended"
    AWAITING_PAGE_HIDE = "awaiting_page_hide"
    FINALIZED = "finalized"
    SUBMITTED = "submitted"
    ABORTED = "aborted"


class DetectionAborted(Exception):
    def __init__(self, reason: str, level: int = logging.INFO):
        super().__init__(reason)
        self.reason = reason
        self.level = level


@dataclass
class DetectionOutcome:
    state: DetectionState
    reason: str = ""
    payload_size: int = 0
    gzipped: bool = False
    submission_url: Optional[str] = None

    @property
    def submitted(self) -> bool:
        return self.state is DetectionState.SUBMITTED


def build_submission_url(args: DetectArgs) -> str:
    parsed = urlparse(args.rest_api_endpoint)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    if args.rest_api_nonce is not None:
        params.append(("nonce", args.rest_api_nonce))
    params.append(("slug", args.slug))
    params.append(("current_etag", args.current_etag))
    if args.cache_purge_post_id is not None:
        params.append(("cache_purge_post_id", str(args.cache_purge_post_id)))
    params.append(("hmac", args.hmac))
    return urlunparse(parsed._replace(query=urlencode(params)))


class Detector:
    """Runs one detection pass for the current page visit."""

    def __init__(
        self,
        env: PageEnvironment,
        args: DetectArgs,
        compression_debounce_delay: float = COMPRESSION_DEBOUNCE_DELAY,
    ):
        self.env = env
        self.args = args
        self.state = DetectionState.PENDING
        self.session_lock = SessionStorageLock(env.session_storage, args.storage_lock_ttl)
        self.record: Optional[URLMetricRecord] = None
        self.compression: Optional[CompressionPipeline] = None
        self._compression_debounce_delay = compression_debounce_delay
        self._submitted_key: Optional[str] = None
        self._did_resize = False
        self._observer: Optional[Observer] = None
        self._lcp_candidates: list[MetricReport] = []

    @property
    def did_resize(self) -> bool:
        return self._did_resize

    @property
    def lcp_candidates(self) -> list[MetricReport]:
        return list(self._lcp_candidates)

    async def run(self) -> DetectionOutcome:
        try:
            return await self._run()
        except DetectionAborted as e:
            logger.log(e.level, "%s %s", LOG_PREFIX, e.reason)
            self.state = DetectionState.ABORTED
            self._disconnect_observer()
            if self.compression is not None:
                self.compression.cancel()
            return DetectionOutcome(state=DetectionState.ABORTED, reason=e.reason)

    async def _run(self) -> DetectionOutcome:
        self._log_stored_url_metrics()
        self._check_gates()

        self.state = DetectionState.OBSERVING
        # Only flag the resize here; the abort happens at submission time.
        self.env.on_resize_once(self._handle_resize)

        if self.env.scroll_top() > 0:
            raise DetectionAborted(
                "Aborted detection since initial scroll position of page is not at the top.",
                logging.WARNING,
            )
        logger.debug("%s Proceeding with detection", LOG_PREFIX)

        breadcrumbs = self.env.breadcrumbed_elements()
        intersections = await self._observe_intersections(breadcrumbs)
        await self._wait_for_first_lcp_candidate()
        self._disconnect_observer()

        self.record = self._assemble(breadcrumbs, intersections)
        self.state = DetectionState.ASSEMBLED

        self.compression = CompressionPipeline(
            self.record.to_json,
            enabled=self.args.gzip_available,
            debounce_delay=self._compression_debounce_delay,
            idle=self.env.idle,
        )
        self.record.set_on_change(self.compression.schedule)

        extensions = load_extensions(self.args.extension_modules)
        has_finalize = await initialize_extensions(
            extensions, self.record, self.args.is_debug, self.env.on_metric,
        )
        self.state = DetectionState.EXTENDED
        if has_finalize:
            # Finalize mutations land after the last debounced compression could run.
            self.compression.disable("one or more extensions use the deprecated finalize function")

        if self.args.is_debug:
            logger.debug("%s Current URL Metric: %s", LOG_PREFIX, self.record.get_root_data())
        self.compression.schedule()

        self.state = DetectionState.AWAITING_PAGE_HIDE
        await self.env.wait_for_page_hide()

        if self._did_resize:
            raise DetectionAborted("Aborting URL Metric collection due to viewport size change.")

        await finalize_extensions(extensions, self.record, self.args.is_debug)
        self.state = DetectionState.FINALIZED

        return self._submit()

    def _check_gates(self) -> None:
        env, args = self.env, self.args
        width, height = env.viewport_width, env.viewport_height

        if not has_viewport_area(width, height):
            raise DetectionAborted("Window must have non-zero dimensions for URL Metric collection.")

        if not is_page_observable(env.is_hidden(), env.is_prerendering()):
            raise DetectionAborted("Page opened in background tab so URL Metric is not collected.")

        try:
            status = get_group_status_for_viewport_width(width, args.group_statuses)
        except LookupError as e:
            raise DetectionAborted(str(e), logging.ERROR) from e
        if status.complete:
            raise DetectionAborted("No need for URL Metrics from the current viewport.")

        self._submitted_key = self._get_submitted_session_key(status)
        if self._submitted_key is not None and is_recently_submitted(
            env.session_storage.get(self._submitted_key), env.now_ms(), args.freshness_ttl,
        ):
            raise DetectionAborted(
                "The current client session already submitted a fresh URL Metric for this "
                "URL so a new one will not be collected now."
            )

        if not is_aspect_ratio_in_range(
            width, height, args.min_viewport_aspect_ratio, args.max_viewport_aspect_ratio,
        ):
            raise DetectionAborted(
                f"Viewport aspect ratio ({viewport_aspect_ratio(width, height)}) is not in the "
                f"accepted range of {args.min_viewport_aspect_ratio} to "
                f"{args.max_viewport_aspect_ratio}.",
                logging.WARNING,
            )

        if self.session_lock.is_locked(env.now_ms()):
            raise DetectionAborted("Aborted detection due to storage being locked.")

    def _get_submitted_session_key(self, status: GroupStatus) -> Optional[str]:
        if not self.env.supports_hashing():
            logger.warning(
                "%s Unable to generate session storage key for already-submitted URL "
                "since hashing is not available.", LOG_PREFIX,
            )
            return None
        try:
            return submitted_session_key(self.args.current_etag, self.args.current_url, status)
        except ValueError as e:
            logger.error(
                "%s Unable to generate session storage key for already-submitted URL: %s",
                LOG_PREFIX, e,
            )
            return None

    def _handle_resize(self) -> None:
        self._did_resize = True

    async def _observe_intersections(
        self, breadcrumbs: dict[Hashable, str],
    ) -> list[IntersectionEntry]:
        entries: list[IntersectionEntry] = []
        if not breadcrumbs:
            return entries

        first_report: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_entries(batch: list[IntersectionEntry]) -> None:
            entries.extend(batch)
            if not first_report.done():
                first_report.set_result(None)

        # The first callback reports every observed target.
        self._observer = self.env.observe_intersections(list(breadcrumbs), on_entries)
        await first_report

        # Only initial-viewport geometry is wanted.
        self.env.on_scroll_once(self._disconnect_observer)
        return entries

    def _disconnect_observer(self) -> None:
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None

    async def _wait_for_first_lcp_candidate(self) -> None:
        first_candidate: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_lcp(metric: MetricReport) -> None:
            self._lcp_candidates.append(metric)
            if not first_candidate.done():
                first_candidate.set_result(None)

        self.env.on_metric("LCP", on_lcp, True)
        await first_candidate

    def _assemble(
        self, breadcrumbs: dict[Hashable, str], intersections: list[IntersectionEntry],
    ) -> URLMetricRecord:
        url_metric = URLMetric(
            url=self.args.current_url,
            viewport=Viewport(width=self.env.viewport_width, height=self.env.viewport_height),
            elements=[],
        )
        record = URLMetricRecord(url_metric)

        lcp_element = self._lcp_candidates[-1].element if self._lcp_candidates else None
        candidate_elements = {
            c.element for c in self._lcp_candidates if c.element is not None
        }

        for entry in intersections:
            xpath = breadcrumbs.get(entry.target)
            if not xpath:
                logger.warning("%s Unable to look up XPath for element", LOG_PREFIX)
                continue
            record.add_element(ElementData(
                xpath=xpath,
                is_lcp=lcp_element is not None and entry.target == lcp_element,
                is_lcp_candidate=entry.target in candidate_elements,
                intersection_ratio=min(max(entry.intersection_ratio, 0.0), 1.0),
                intersection_rect=DOMRect(**entry.intersection_rect),
                bounding_client_rect=DOMRect(**entry.bounding_client_rect),
            ))
        return record

    def _submit(self) -> DetectionOutcome:
        if self.record is None or self.compression is None:
            raise RuntimeError("URL Metric must be assembled before it is submitted.")

        try:
            json_body = self.record.to_json()
        except ValueError as e:
            raise DetectionAborted(f"Unable to serialize URL Metric: {e}", logging.ERROR) from e
        json_size = len(json_body.encode("utf-8"))
        if exceeds_max_url_metric_size(json_body, self.args.max_url_metric_size):
            raise DetectionAborted(
                f"URL Metric is {json_size:,} bytes, exceeding the maximum size of "
                f"{self.args.max_url_metric_size:,} bytes.",
                logging.ERROR,
            )

        payload, gzipped = self.compression.payload_for_submission(json_body)
        self.compression.cancel()
        percent = percent_of_transport_budget(payload)
        if exceeds_transport_limit(payload):
            raise DetectionAborted(
                f"Unable to send URL Metric because it is {len(payload):,} bytes, "
                f"{round(percent)}% of {MAX_BODY_LENGTH_KIB} KiB limit.",
                logging.ERROR,
            )

        # The response is never inspected, so lock before sending.
        now = self.env.now_ms()
        self.session_lock.set_lock(now)
        if self._submitted_key is not None:
            self.env.session_storage[self._submitted_key] = str(now)

        message = f"Sending URL Metric ({len(payload):,} bytes, {round(percent)}% of {MAX_BODY_LENGTH_KIB} KiB limit"
        if gzipped:
            message += f", gzip compressed -{round((json_size - len(payload)) / json_size * 100)}%"
        else:
            message += ", uncompressed"
        message += ")"
        # All beacons share the budget, so flag anything over half of it.
        logger.log(logging.INFO if percent < 50 else logging.WARNING, "%s %s", LOG_PREFIX, message)

        url = build_submission_url(self.args)
        headers = {"Content-Type": "application/json"}
        if gzipped:
            headers["Content-Encoding"] = "gzip"
        self.env.send(url, payload, headers)

        self.state = DetectionState.SUBMITTED
        return DetectionOutcome(
            state=DetectionState.SUBMITTED,
            payload_size=len(payload),
            gzipped=gzipped,
            submission_url=url,
        )

    def _log_stored_url_metrics(self) -> None:
        collection = self.args.group_collection
        if not self.args.is_debug or not collection:
            return
        stored = [
            url_metric
            for group in collection.get("groups", [])
            for url_metric in group.get("url_metrics", [])
        ]
        stored.sort(key=lambda m: m.get("timestamp", 0), reverse=True)
        logger.debug(
            "%s Stored URL Metrics in reverse chronological order: %s", LOG_PREFIX, stored,
        )


async def detect_when_ready(
    env: PageEnvironment, args: DetectArgs, **detector_kwargs,
) -> DetectionOutcome:
    """Wait for the page to finish loading and go idle, then run detection."""
    await env.wait_for_load()
    await env.idle()
    return await Detector(env, args, **detector_kwargs).run()
