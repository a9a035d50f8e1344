"""Tag visitor registry and the ETag computed over it."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

# Returns True when the visited element should be tracked in URL Metrics.
TagVisitor = Callable[[Any], Optional[bool]]


class TagVisitorRegistry:
    """Named tag visitors, invoked in registration order."""

    def __init__(self) -> None:
        self._visitors: dict[str, TagVisitor] = {}

    def register(self, visitor_id: str, visitor: TagVisitor) -> None:
        if not callable(visitor):
            raise TypeError(f"Tag visitor '{visitor_id}' is not callable")
        self._visitors[visitor_id] = visitor

    def is_registered(self, visitor_id: str) -> bool:
        return visitor_id in self._visitors

    def get(self, visitor_id: str) -> Optional[TagVisitor]:
        return self._visitors.get(visitor_id)

    def unregister(self, visitor_id: str) -> bool:
        return self._visitors.pop(visitor_id, None) is not None

    def __iter__(self) -> Iterator[tuple[str, TagVisitor]]:
        return iter(list(self._visitors.items()))

    def __len__(self) -> int:
        return len(self._visitors)

    def ids(self) -> list[str]:
        return list(self._visitors)

    def visit_all(self, context: Any) -> bool:
        """Run every visitor against one element; returns whether any asked to track it.

        A failing visitor is logged and skipped so the rest still run.
        """
        tracked = False
        for visitor_id, visitor in self:
            try:
                if visitor(context) is True:
                    tracked = True
            except Exception as e:
                logger.error("Tag visitor '%s' failed: %s", visitor_id, e)
        return tracked


def compute_etag(
    registry: TagVisitorRegistry,
    page_state: Optional[Mapping[str, Any]] = None,
) -> str:
    """Fingerprint everything that changes how elements get classified.

    Visitor ids are sorted so registration order does not matter; page state
    must be JSON serialisable.
    """
    data = {
        "tag_visitors": sorted(registry.ids()),
        "page_state": dict(page_state or {}),
    }
    serialized = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    etag = hashlib.md5(serialized.encode()).hexdigest()
    logger.debug("Computed URL Metrics ETag %s from %d tag visitors", etag, len(registry))
    return etag
