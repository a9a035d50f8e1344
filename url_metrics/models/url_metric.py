"""URL Metric data structures captured by the detection client."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Keys owned by the core record; extensions may not set these.
RESERVED_ROOT_KEYS = frozenset({"url", "viewport", "elements"})
RESERVED_ELEMENT_KEYS = frozenset({
    "isLCP",
    "isLCPCandidate",
    "xpath",
    "intersectionRatio",
    "intersectionRect",
    "boundingClientRect",
})


class DOMRect(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    top: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    left: float = 0.0


class Viewport(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


class ElementData(BaseModel):
    """One observed DOM element, plus any extension-contributed properties."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    xpath: str = Field(min_length=1)
    is_lcp: bool = Field(default=False, alias="isLCP")
    is_lcp_candidate: bool = Field(default=False, alias="isLCPCandidate")
    intersection_ratio: float = Field(default=0.0, ge=0.0, le=1.0, alias="intersectionRatio")
    intersection_rect: DOMRect = Field(default_factory=DOMRect, alias="intersectionRect")
    bounding_client_rect: DOMRect = Field(default_factory=DOMRect, alias="boundingClientRect")


class URLMetric(BaseModel):
    """One client observation of a page visit."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url: str = Field(min_length=1)
    viewport: Viewport
    elements: list[ElementData] = Field(default_factory=list)

    @field_validator("elements")
    @classmethod
    def unique_xpaths(cls, v: list[ElementData]) -> list[ElementData]:
        seen: set[str] = set()
        for element in v:
            if element.xpath in seen:
                raise ValueError(f"Duplicate element xpath: {element.xpath}")
            seen.add(element.xpath)
        return v

    def get_lcp_element(self) -> Optional[ElementData]:
        for element in self.elements:
            if element.is_lcp:
                return element
        return None

    def to_json_dict(self) -> dict[str, Any]:
        """Wire representation (camelCase keys, extension properties included)."""
        return self.model_dump(by_alias=True, mode="json")


class StoredURLMetric(URLMetric):
    """A URL Metric as persisted by the server, stamped on receipt."""

    uuid: str
    etag: str
    timestamp: float  # epoch seconds

    @classmethod
    def from_submission(
        cls, url_metric: URLMetric, uuid: str, etag: str, timestamp: float,
    ) -> "StoredURLMetric":
        data = url_metric.to_json_dict()
        # Server-assigned values always win over anything the client sent.
        data.update(uuid=uuid, etag=etag, timestamp=timestamp)
        return cls.model_validate(data)
