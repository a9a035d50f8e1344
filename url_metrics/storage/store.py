"""URL Metrics store: persists URL Metrics per slug in a JSON registry file."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Protocol

from url_metrics.models.registry import SlugEntry, URLMetricsRegistry
from url_metrics.models.url_metric import StoredURLMetric

logger = logging.getLogger(__name__)


class URLMetricStore(Protocol):
    """Keyed store of URL Metric records per URL slug."""

    def get_url_metrics(self, slug: str) -> list[StoredURLMetric]: ...

    def save_url_metrics(self, slug: str, url: str, url_metrics: list[StoredURLMetric]) -> None: ...


class JSONFileURLMetricStore:
    """Manages the URL Metrics registry JSON file.

    Writes are serialized within the process and land through a temporary
    file swapped into place, so readers never see a partially written registry.
    """

    def __init__(self, registry_path: Path):
        self.path = Path(registry_path)
        self._lock = threading.RLock()

    def load(self) -> URLMetricsRegistry:
        """Load registry from disk, or create a new one."""
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = json.load(f)
                return URLMetricsRegistry(**data)
            except Exception as e:
                logger.warning("Failed to load URL Metrics registry: %s. Creating new.", e)
        return URLMetricsRegistry()

    def save(self, registry: URLMetricsRegistry) -> None:
        """Persist registry to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        registry.last_updated = time.strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._lock:
            with NamedTemporaryFile(
                "w", prefix=".registry_", suffix=".json", dir=str(self.path.parent), delete=False,
            ) as tmp:
                json.dump(registry.model_dump(mode="json"), tmp, indent=2)
                tmp_path = Path(tmp.name)
            try:
                os.replace(tmp_path, self.path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise
        logger.debug("Saved URL Metrics registry to %s", self.path)

    def get_entry(self, slug: str) -> SlugEntry | None:
        return self.load().entries.get(slug)

    def get_url_metrics(self, slug: str) -> list[StoredURLMetric]:
        entry = self.get_entry(slug)
        return list(entry.url_metrics) if entry else []

    def save_url_metrics(self, slug: str, url: str, url_metrics: list[StoredURLMetric]) -> None:
        """Replace the stored URL Metrics for a slug."""
        with self._lock:
            registry = self.load()
            registry.entries[slug] = SlugEntry(
                slug=slug,
                url=url,
                url_metrics=url_metrics,
                last_stored=time.strftime("%Y-%m-%dT%H:%M:%SZ"),
            )
            self.save(registry)
        logger.info("Stored %d URL Metrics for slug %s", len(url_metrics), slug)

    def delete(self, slug: str) -> bool:
        with self._lock:
            registry = self.load()
            if registry.entries.pop(slug, None) is None:
                return False
            self.save(registry)
            return True
