"""Playwright page environment: runs the detector against a live browser page."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Hashable, MutableMapping, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright

from url_metrics.detection.environment import (
    IntersectionCallback,
    IntersectionEntry,
    MetricCallback,
    MetricReport,
)

logger = logging.getLogger(__name__)

XPATH_ATTRIBUTE = "data-um-xpath"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

# Bindings are looked up lazily since expose_function lands after init scripts run.
# Every call carries the document id so state from a previous navigation can be dropped.
_OBSERVER_INIT_SCRIPT = """
(() => {
    const ATTR = '%(attribute)s';
    const DOCUMENT_ID = Date.now().toString(36) + '-' + Math.random().toString(36).slice(2);
    window.__umDocumentId = DOCUMENT_ID;
    const send = (name, payload) => {
        if (typeof window[name] === 'function') {
            window[name](payload, DOCUMENT_ID);
        }
    };
    const xpathOf = (el) => (el && el.getAttribute) ? el.getAttribute(ATTR) : null;

    addEventListener('resize', () => send('__umResize', null));
    addEventListener('scroll', () => send('__umScroll', null), { passive: true });
    addEventListener('pagehide', () => send('__umPageHide', null));
    document.addEventListener('visibilitychange', () => {
        if (document.visibilityState === 'hidden') {
            send('__umPageHide', null);
        }
    });

    const observe = (type, onEntries) => {
        try {
            new PerformanceObserver((list) => onEntries(list.getEntries()))
                .observe({ type, buffered: true });
        } catch (e) {
            // Entry type not supported by this browser.
        }
    };

    observe('largest-contentful-paint', (entries) => {
        for (const entry of entries) {
            send('__umMetric', {
                name: 'LCP',
                value: entry.startTime,
                element: xpathOf(entry.element),
                entries: [{ startTime: entry.startTime, size: entry.size, url: entry.url || '' }],
            });
        }
    });
    observe('paint', (entries) => {
        for (const entry of entries) {
            if (entry.name === 'first-contentful-paint') {
                send('__umMetric', { name: 'FCP', value: entry.startTime, element: null, entries: [] });
            }
        }
    });
    observe('navigation', (entries) => {
        for (const entry of entries) {
            send('__umMetric', { name: 'TTFB', value: entry.responseStart, element: null, entries: [] });
        }
    });
    let cls = 0;
    observe('layout-shift', (entries) => {
        for (const entry of entries) {
            if (!entry.hadRecentInput) {
                cls += entry.value;
                send('__umMetric', { name: 'CLS', value: cls, element: null, entries: [] });
            }
        }
    });
    let inp = 0;
    observe('event', (entries) => {
        for (const entry of entries) {
            if (entry.interactionId && entry.duration > inp) {
                inp = entry.duration;
                send('__umMetric', { name: 'INP', value: inp, element: null, entries: [] });
            }
        }
    });

    window.__umObserveIntersections = () => {
        const observer = new IntersectionObserver((entries) => {
            send('__umIntersections', entries.map((entry) => ({
                target: xpathOf(entry.target),
                intersectionRatio: entry.intersectionRatio,
                intersectionRect: entry.intersectionRect.toJSON(),
                boundingClientRect: entry.boundingClientRect.toJSON(),
            })));
        });
        for (const el of document.querySelectorAll('[' + ATTR + ']')) {
            observer.observe(el);
        }
        window.__umIntersectionObserver = observer;
    };
})();
"""

_SNAPSHOT_SCRIPT = """
(attribute) => ({
    document: window.__umDocumentId || null,
    width: window.innerWidth,
    height: window.innerHeight,
    hidden: document.visibilityState === 'hidden',
    prerendering: !!document.prerendering,
    scrollTop: document.documentElement.scrollTop || window.scrollY || 0,
    xpaths: Array.from(document.querySelectorAll('[' + attribute + ']'))
        .map((el) => el.getAttribute(attribute)),
})
"""

_IDLE_SCRIPT = """
() => new Promise((resolve) => {
    if (typeof requestIdleCallback === 'function') {
        requestIdleCallback(() => resolve());
    } else {
        setTimeout(resolve, 0);
    }
})
"""

# Stands in for a server-side annotator on pages that were not rendered with xpaths.
ANNOTATE_SCRIPT = """
(attribute) => {
    const pathOf = (el) => {
        const parts = [];
        for (let node = el; node && node.nodeType === 1; node = node.parentElement) {
            let index = 1;
            for (let sib = node.previousElementSibling; sib; sib = sib.previousElementSibling) {
                if (sib.tagName === node.tagName) index++;
            }
            parts.unshift(node.tagName + '[' + index + ']');
        }
        return '/' + parts.join('/');
    };
    const targets = document.querySelectorAll('body > *, img, video, picture, [style*="background"]');
    let count = 0;
    for (const el of targets) {
        if (!el.hasAttribute(attribute)) {
            el.setAttribute(attribute, pathOf(el));
            count++;
        }
    }
    return count;
}
"""

Sender = Callable[[str, bytes, dict[str, str]], Awaitable[Any]]


async def launch_browser(playwright: Playwright, headless: bool = True) -> Browser:
    """Launch Chromium for detection runs."""
    return await playwright.chromium.launch(
        headless=headless,
        args=[
            "--disable-blink-features=AutomationControlled",
        ],
    )


async def create_context(
    browser: Browser,
    viewport: dict,
    user_agent: Optional[str] = None,
) -> BrowserContext:
    """Create a browser context sized to the viewport under test."""
    return await browser.new_context(
        viewport=viewport,
        user_agent=user_agent or DEFAULT_USER_AGENT,
        locale="en-US",
        extra_http_headers={
            "Accept-Language": "en-US,en;q=0.9",
        },
    )


class _PageIntersectionObserver:
    def __init__(self, env: PlaywrightPageEnvironment):
        self._env = env
        self.disconnected = False

    def disconnect(self) -> None:
        if self.disconnected:
            return
        self.disconnected = True
        self._env._spawn(self._env.page.evaluate(
            "() => window.__umIntersectionObserver && window.__umIntersectionObserver.disconnect()"
        ))


class PlaywrightPageEnvironment:
    """PageEnvironment over a Playwright page.

    Create with attach() before navigating so the observers are installed
    ahead of the page's own scripts. Element handles are the xpath strings
    carried by the ``data-um-xpath`` attribute.

    The synchronous checks (visibility, scroll position, breadcrumbs) read a
    snapshot taken by wait_for_load() / refresh().

    The environment can be reused across navigations: the first report from a
    new document resets hide state, metric history and subscriptions, and late
    reports from a previous document are ignored.
    """

    def __init__(
        self,
        page: Page,
        session_storage: Optional[MutableMapping[str, str]] = None,
        sender: Optional[Sender] = None,
        annotate: bool = False,
    ):
        self.page = page
        self.session_storage: MutableMapping[str, str] = (
            session_storage if session_storage is not None else {}
        )
        self.annotate = annotate
        self._sender = sender
        viewport = page.viewport_size or {"width": 0, "height": 0}
        self.viewport_width: int = viewport["width"]
        self.viewport_height: int = viewport["height"]
        self._hidden = False
        self._prerendering = False
        self._scroll_top = 0.0
        self._xpaths: list[str] = []
        self._document_id: Optional[str] = None
        self._retired_documents: set[str] = set()

        self._page_hidden = asyncio.Event()
        self._resize_callbacks: list[Callable[[], None]] = []
        self._scroll_callbacks: list[Callable[[], None]] = []
        self._intersection_callback: Optional[IntersectionCallback] = None
        self._intersection_observer: Optional[_PageIntersectionObserver] = None
        self._metric_subscribers: dict[str, list[tuple[MetricCallback, bool]]] = {}
        self._metric_history: dict[str, list[MetricReport]] = {}
        self._background: set[asyncio.Task] = set()
        self.sends: list[asyncio.Task] = []

    @classmethod
    async def attach(cls, page: Page, **kwargs) -> PlaywrightPageEnvironment:
        env = cls(page, **kwargs)
        await env.install()
        return env

    async def install(self) -> None:
        await self.page.expose_function("__umResize", self._handle_resize)
        await self.page.expose_function("__umScroll", self._handle_scroll)
        await self.page.expose_function("__umPageHide", self._handle_page_hide)
        await self.page.expose_function("__umMetric", self._handle_metric)
        await self.page.expose_function("__umIntersections", self._handle_intersections)
        await self.page.add_init_script(_OBSERVER_INIT_SCRIPT % {"attribute": XPATH_ATTRIBUTE})

    async def refresh(self) -> None:
        if self.annotate:
            count = await self.page.evaluate(ANNOTATE_SCRIPT, XPATH_ATTRIBUTE)
            logger.debug("Annotated %d elements with %s", count, XPATH_ATTRIBUTE)
        snapshot = await self.page.evaluate(_SNAPSHOT_SCRIPT, XPATH_ATTRIBUTE)
        self._enter_document(snapshot.get("document"))
        self.viewport_width = int(snapshot["width"])
        self.viewport_height = int(snapshot["height"])
        self._hidden = bool(snapshot["hidden"])
        self._prerendering = bool(snapshot["prerendering"])
        self._scroll_top = float(snapshot["scrollTop"])
        self._xpaths = [x for x in snapshot["xpaths"] if x]

    # --- PageEnvironment -------------------------------------------------

    def is_hidden(self) -> bool:
        return self._hidden

    def is_prerendering(self) -> bool:
        return self._prerendering

    def scroll_top(self) -> float:
        return self._scroll_top

    def supports_hashing(self) -> bool:
        return True

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def wait_for_load(self) -> None:
        await self.page.wait_for_load_state("load")
        await self.refresh()

    async def idle(self) -> None:
        await self.page.evaluate(_IDLE_SCRIPT)

    def breadcrumbed_elements(self) -> dict[Hashable, str]:
        return {xpath: xpath for xpath in self._xpaths}

    def observe_intersections(
        self, elements: list[Hashable], callback: IntersectionCallback,
    ) -> _PageIntersectionObserver:
        self._intersection_callback = callback
        self._intersection_observer = _PageIntersectionObserver(self)
        self._spawn(self.page.evaluate("() => window.__umObserveIntersections()"))
        return self._intersection_observer

    def on_resize_once(self, callback: Callable[[], None]) -> None:
        self._resize_callbacks.append(callback)

    def on_scroll_once(self, callback: Callable[[], None]) -> None:
        self._scroll_callbacks.append(callback)

    def on_metric(
        self, name: str, callback: MetricCallback, report_all_changes: bool = False,
    ) -> None:
        self._metric_subscribers.setdefault(name, []).append((callback, report_all_changes))
        # Buffered entries may have arrived before the subscription.
        if report_all_changes:
            for report in self._metric_history.get(name, []):
                callback(report)

    async def wait_for_page_hide(self) -> None:
        await self._page_hidden.wait()

    def send(self, url: str, body: bytes, headers: dict[str, str]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._post(url, body, headers))
        self.sends.append(task)
        return task

    # --- driver controls --------------------------------------------------

    def hide(self) -> None:
        """Simulate the page being hidden (tab switch or navigation away)."""
        self._handle_page_hide(None)

    async def drain(self) -> None:
        """Wait for in-flight submissions and page calls to finish."""
        pending = [*self.sends, *self._background]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # --- bindings ---------------------------------------------------------

    def _handle_resize(self, _payload: Any = None, document_id: Optional[str] = None) -> None:
        if not self._enter_document(document_id):
            return
        callbacks, self._resize_callbacks = self._resize_callbacks, []
        for callback in callbacks:
            callback()

    def _handle_scroll(self, _payload: Any = None, document_id: Optional[str] = None) -> None:
        if not self._enter_document(document_id):
            return
        callbacks, self._scroll_callbacks = self._scroll_callbacks, []
        for callback in callbacks:
            callback()

    def _handle_page_hide(self, _payload: Any = None, document_id: Optional[str] = None) -> None:
        if self._enter_document(document_id):
            self._dispatch_page_hide()

    def _dispatch_page_hide(self) -> None:
        if self._page_hidden.is_set():
            return
        # Subscribers without report_all_changes get the final value on hide.
        for name, subscribers in self._metric_subscribers.items():
            history = self._metric_history.get(name)
            if not history:
                continue
            for callback, report_all_changes in subscribers:
                if not report_all_changes:
                    callback(history[-1])
        self._page_hidden.set()

    def _handle_metric(self, payload: dict[str, Any], document_id: Optional[str] = None) -> None:
        if not self._enter_document(document_id):
            return
        report = MetricReport(
            name=payload["name"],
            value=float(payload.get("value") or 0),
            element=payload.get("element"),
            entries=list(payload.get("entries") or []),
        )
        self._metric_history.setdefault(report.name, []).append(report)
        for callback, report_all_changes in self._metric_subscribers.get(report.name, []):
            if report_all_changes:
                callback(report)

    def _handle_intersections(
        self, payload: list[dict[str, Any]], document_id: Optional[str] = None,
    ) -> None:
        if not self._enter_document(document_id) or self._intersection_callback is None:
            return
        if self._intersection_observer is not None and self._intersection_observer.disconnected:
            return
        entries = [
            IntersectionEntry(
                target=item["target"],
                intersection_ratio=float(item["intersectionRatio"]),
                intersection_rect=item.get("intersectionRect") or {},
                bounding_client_rect=item.get("boundingClientRect") or {},
            )
            for item in payload
            if item.get("target")
        ]
        self._intersection_callback(entries)

    def _enter_document(self, document_id: Optional[str]) -> bool:
        """Track the reporting document; False for reports from a retired one."""
        if document_id is None or document_id == self._document_id:
            return True
        if document_id in self._retired_documents:
            return False
        if self._document_id is not None:
            logger.debug("New document loaded, resetting page state")
            self._retired_documents.add(self._document_id)
            self._reset_document_state()
        self._document_id = document_id
        return True

    def _reset_document_state(self) -> None:
        # Navigating away hides the previous document.
        self._dispatch_page_hide()
        self._page_hidden = asyncio.Event()
        self._resize_callbacks = []
        self._scroll_callbacks = []
        self._intersection_callback = None
        self._intersection_observer = None
        self._metric_subscribers = {}
        self._metric_history = {}

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> Any:
        if self._sender is not None:
            return await self._sender(url, body, headers)
        response = await self.page.context.request.post(url, data=body, headers=headers)
        logger.debug("URL Metric submission returned %d", response.status)
        return response

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
