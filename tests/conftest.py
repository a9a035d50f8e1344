"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Any, Callable, Optional

import pytest

from url_metrics.detection.environment import IntersectionEntry, MetricReport
from url_metrics.models.config import DetectiveConfig
from url_metrics.models.detect_args import DetectArgs, GroupStatus
from url_metrics.models.url_metric import DOMRect, ElementData, StoredURLMetric, Viewport
from url_metrics.storage.store import JSONFileURLMetricStore

ETAG = "d41d8cd98f00b204e9800998ecf8427e"
OTHER_ETAG = "0cc175b9c0f1b6a831c399e269772661"
NOW = 1_700_000_000.0
HMAC_SECRET = "test-secret"


# ============================================================================
# URL Metric Fixtures
# ============================================================================


def make_url_metric(
    width: int = 400,
    height: int = 700,
    etag: str = ETAG,
    timestamp: float = NOW,
    lcp_xpath: Optional[str] = "/HTML/BODY/IMG[1]",
    url: str = "https://example.com/",
    uuid: str = "",
) -> StoredURLMetric:
    elements = []
    if lcp_xpath:
        elements.append(ElementData(
            xpath=lcp_xpath,
            is_lcp=True,
            is_lcp_candidate=True,
            intersection_ratio=1.0,
            intersection_rect=DOMRect(width=100, height=50, right=100, bottom=50),
            bounding_client_rect=DOMRect(width=100, height=50, right=100, bottom=50),
        ))
    return StoredURLMetric(
        url=url,
        viewport=Viewport(width=width, height=height),
        elements=elements,
        uuid=uuid or f"uuid-{width}-{timestamp}",
        etag=etag,
        timestamp=timestamp,
    )


@pytest.fixture
def url_metric_factory() -> Callable[..., StoredURLMetric]:
    return make_url_metric


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def detective_config(tmp_path) -> DetectiveConfig:
    """Default config with a fixed HMAC secret and a temp store."""
    return DetectiveConfig(
        hmac_secret=HMAC_SECRET,
        store_path=str(tmp_path / "store.json"),
    )


@pytest.fixture
def store(detective_config: DetectiveConfig) -> JSONFileURLMetricStore:
    return JSONFileURLMetricStore(detective_config.store_path)


def default_group_statuses(complete: bool = False) -> list[GroupStatus]:
    bounds = [(0, 480), (480, 600), (600, 782), (782, None)]
    return [
        GroupStatus(minimum_viewport_width=lo, maximum_viewport_width=hi, complete=complete)
        for lo, hi in bounds
    ]


@pytest.fixture
def detect_args() -> DetectArgs:
    """Client status payload for a page that still needs every group."""
    return DetectArgs(
        min_viewport_aspect_ratio=0.4,
        max_viewport_aspect_ratio=2.5,
        is_debug=False,
        extension_modules=[],
        rest_api_endpoint="https://example.com/url-metrics/store",
        rest_api_nonce=None,
        gzip_available=True,
        max_url_metric_size=1024 * 1024,
        current_etag=ETAG,
        current_url="https://example.com/",
        slug="9a0364b9e99bb480dd25e1f0284c8555",
        cache_purge_post_id=None,
        hmac="f" * 64,
        group_statuses=default_group_statuses(),
        storage_lock_ttl=60,
        freshness_ttl=86400,
    )


# ============================================================================
# Page Environment Fixtures
# ============================================================================


class FakeObserver:
    def __init__(self) -> None:
        self.disconnected = False

    def disconnect(self) -> None:
        self.disconnected = True


class FakePageEnvironment:
    """In-memory PageEnvironment driven by the test."""

    def __init__(
        self,
        width: int = 375,
        height: int = 667,
        hidden: bool = False,
        prerendering: bool = False,
        scroll_top: float = 0,
        now_ms: int = int(NOW * 1000),
        hashing: bool = True,
    ):
        self.viewport_width = width
        self.viewport_height = height
        self.hidden = hidden
        self.prerendering = prerendering
        self.scroll = scroll_top
        self.current_ms = now_ms
        self.hashing = hashing
        self.session_storage: dict[str, str] = {}

        self.elements: dict[Any, str] = {
            "img": "/HTML/BODY/IMG[1]",
            "h1": "/HTML/BODY/H1[1]",
        }
        self.intersections = [
            IntersectionEntry(
                target="img",
                intersection_ratio=1.0,
                intersection_rect={"x": 0, "y": 0, "width": 375, "height": 200,
                                   "top": 0, "right": 375, "bottom": 200, "left": 0},
                bounding_client_rect={"x": 0, "y": 0, "width": 375, "height": 200,
                                      "top": 0, "right": 375, "bottom": 200, "left": 0},
            ),
            IntersectionEntry(target="h1", intersection_ratio=0.5),
        ]
        self.lcp_reports = [
            MetricReport(name="LCP", value=900.0, element="h1"),
            MetricReport(name="LCP", value=1200.0, element="img"),
        ]

        self.observer: Optional[FakeObserver] = None
        self.resize_callbacks: list[Callable[[], None]] = []
        self.scroll_callbacks: list[Callable[[], None]] = []
        self.metric_subscribers: dict[str, list[Callable]] = {}
        self.before_hide: Optional[Callable[[], Any]] = None
        self.sent: list[tuple[str, bytes, dict[str, str]]] = []
        self.loaded = False
        self.idle_calls = 0

    def is_hidden(self) -> bool:
        return self.hidden

    def is_prerendering(self) -> bool:
        return self.prerendering

    def scroll_top(self) -> float:
        return self.scroll

    def supports_hashing(self) -> bool:
        return self.hashing

    def now_ms(self) -> int:
        return self.current_ms

    async def wait_for_load(self) -> None:
        self.loaded = True

    async def idle(self) -> None:
        self.idle_calls += 1

    def breadcrumbed_elements(self) -> dict[Any, str]:
        return dict(self.elements)

    def observe_intersections(self, elements, callback) -> FakeObserver:
        self.observer = FakeObserver()
        asyncio.get_running_loop().call_soon(callback, list(self.intersections))
        return self.observer

    def on_resize_once(self, callback) -> None:
        self.resize_callbacks.append(callback)

    def on_scroll_once(self, callback) -> None:
        self.scroll_callbacks.append(callback)

    def on_metric(self, name, callback, report_all_changes=False) -> None:
        self.metric_subscribers.setdefault(name, []).append(callback)
        if name == "LCP":
            loop = asyncio.get_running_loop()
            for report in self.lcp_reports:
                loop.call_soon(callback, report)

    async def wait_for_page_hide(self) -> None:
        if self.before_hide is not None:
            result = self.before_hide()
            if asyncio.iscoroutine(result):
                await result
        # Let debounced compression finish.
        for _ in range(10):
            await asyncio.sleep(0)

    def resize(self) -> None:
        callbacks, self.resize_callbacks = self.resize_callbacks, []
        for callback in callbacks:
            callback()

    def send(self, url: str, body: bytes, headers: dict[str, str]) -> None:
        self.sent.append((url, body, headers))


@pytest.fixture
def page_env() -> FakePageEnvironment:
    return FakePageEnvironment()
