"""Page environment interface the detector runs against."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable, MutableMapping, Optional, Protocol


@dataclass
class IntersectionEntry:
    target: Hashable  # element handle, as returned by breadcrumbed_elements()
    intersection_ratio: float
    intersection_rect: dict[str, float] = field(default_factory=dict)
    bounding_client_rect: dict[str, float] = field(default_factory=dict)


@dataclass
class MetricReport:
    """A web vitals style metric report (LCP, FCP, CLS, INP, TTFB)."""

    name: str
    value: float
    element: Optional[Hashable] = None  # LCP candidate element handle
    entries: list[dict[str, Any]] = field(default_factory=list)


class Observer(Protocol):
    def disconnect(self) -> None: ...


MetricCallback = Callable[[MetricReport], None]
IntersectionCallback = Callable[[list[IntersectionEntry]], None]


class PageEnvironment(Protocol):
    """What the detector needs from the page it is observing."""

    viewport_width: int
    viewport_height: int
    session_storage: MutableMapping[str, str]

    def is_hidden(self) -> bool: ...

    def is_prerendering(self) -> bool: ...

    def scroll_top(self) -> float: ...

    def supports_hashing(self) -> bool: ...

    def now_ms(self) -> int: ...

    async def wait_for_load(self) -> None: ...

    async def idle(self) -> None: ...

    def breadcrumbed_elements(self) -> dict[Hashable, str]:
        """Element handle -> xpath for every element annotated for tracking."""
        ...

    def observe_intersections(
        self, elements: list[Hashable], callback: IntersectionCallback,
    ) -> Observer: ...

    def on_resize_once(self, callback: Callable[[], None]) -> None: ...

    def on_scroll_once(self, callback: Callable[[], None]) -> None: ...

    def on_metric(
        self, name: str, callback: MetricCallback, report_all_changes: bool = False,
    ) -> None: ...

    async def wait_for_page_hide(self) -> None: ...

    def send(self, url: str, body: bytes, headers: dict[str, str]) -> Optional[Awaitable[Any]]:
        """Fire-and-forget POST; the detector never awaits the result."""
        ...
