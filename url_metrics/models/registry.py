"""Persisted URL Metrics registry data structures."""

from __future__ import annotations

from pydantic import BaseModel, Field

from url_metrics.models.url_metric import StoredURLMetric


class SlugEntry(BaseModel):
    slug: str
    url: str = ""
    url_metrics: list[StoredURLMetric] = Field(default_factory=list)
    last_stored: str = ""


class URLMetricsRegistry(BaseModel):
    last_updated: str = ""
    entries: dict[str, SlugEntry] = Field(default_factory=dict)
    # key: URL Metrics slug
