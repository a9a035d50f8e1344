"""The in-progress URL Metric and the accessors handed to extensions."""

from __future__ import annotations

import json
import logging
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from pydantic_core import PydanticSerializationError, to_jsonable_python

from url_metrics.models.url_metric import (
    RESERVED_ELEMENT_KEYS,
    RESERVED_ROOT_KEYS,
    ElementData,
    URLMetric,
)

logger = logging.getLogger(__name__)


class ReservedKeyError(ValueError):
    """An extension tried to overwrite a property owned by the core record."""


class UnserializableDataError(ValueError):
    """An extension tried to store a value that cannot be sent as JSON."""


def jsonable(properties: Mapping[str, Any], where: str) -> dict[str, Any]:
    """Copy properties into plain JSON values, rejecting anything unserializable."""
    try:
        return to_jsonable_python(dict(properties))
    except PydanticSerializationError as e:
        raise UnserializableDataError(f"Unable to serialize data for {where}: {e}") from e


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into read-only equivalents."""
    if isinstance(value, dict):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


class URLMetricRecord:
    """Single-writer wrapper around the URL Metric being assembled.

    Reads hand out frozen deep copies; writes go through extend_* which
    reject reserved keys and notify ``on_change`` (used to schedule
    recompression).
    """

    def __init__(self, url_metric: URLMetric, on_change: Optional[Callable[[], None]] = None):
        self._url_metric = url_metric
        self._elements_by_xpath: dict[str, ElementData] = {
            element.xpath: element for element in url_metric.elements
        }
        self._on_change = on_change

    def set_on_change(self, on_change: Optional[Callable[[], None]]) -> None:
        self._on_change = on_change

    @property
    def url_metric(self) -> URLMetric:
        return self._url_metric

    def add_element(self, element: ElementData) -> None:
        if element.xpath in self._elements_by_xpath:
            logger.debug("Skipping duplicate element for xpath %s", element.xpath)
            return
        self._url_metric.elements.append(element)
        self._elements_by_xpath[element.xpath] = element

    def get_root_data(self) -> Mapping[str, Any]:
        return freeze(self._url_metric.to_json_dict())

    def extend_root_data(self, properties: Mapping[str, Any]) -> None:
        for key in properties:
            if key in RESERVED_ROOT_KEYS or key in URLMetric.model_fields:
                raise ReservedKeyError(f"Disallowed setting of key '{key}' on root.")
        self._url_metric.model_extra.update(jsonable(properties, "root"))
        self._changed()

    def get_element_data(self, xpath: str) -> Optional[Mapping[str, Any]]:
        element = self._elements_by_xpath.get(xpath)
        if element is None:
            return None
        return freeze(element.model_dump(by_alias=True, mode="json"))

    def extend_element_data(self, xpath: str, properties: Mapping[str, Any]) -> None:
        element = self._elements_by_xpath.get(xpath)
        if element is None:
            raise KeyError(f"Unknown element with XPath: {xpath}")
        for key in properties:
            if key in RESERVED_ELEMENT_KEYS or key in ElementData.model_fields:
                raise ReservedKeyError(f"Disallowed setting of key '{key}' on element.")
        element.model_extra.update(jsonable(properties, f"element {xpath}"))
        self._changed()

    def to_json(self) -> str:
        return json.dumps(self._url_metric.to_json_dict(), separators=(",", ":"))

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
