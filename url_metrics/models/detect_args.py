"""Status payload handed from the server to the detection client."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class GroupStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    minimum_viewport_width: int = Field(alias="minimumViewportWidth")  # exclusive
    maximum_viewport_width: Optional[int] = Field(default=None, alias="maximumViewportWidth")  # inclusive
    complete: bool = False


class DetectArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    min_viewport_aspect_ratio: float = Field(alias="minViewportAspectRatio")
    max_viewport_aspect_ratio: float = Field(alias="maxViewportAspectRatio")
    is_debug: bool = Field(default=False, alias="isDebug")
    extension_modules: list[str] = Field(default_factory=list, alias="extensionModuleUrls")
    rest_api_endpoint: str = Field(alias="restApiEndpoint")
    rest_api_nonce: Optional[str] = Field(default=None, alias="restApiNonce")
    gzip_available: bool = Field(default=True, alias="gzdecodeAvailable")
    max_url_metric_size: int = Field(alias="maxUrlMetricSize")
    current_etag: str = Field(alias="currentETag")
    current_url: str = Field(alias="currentUrl")
    slug: str = Field(alias="urlMetricSlug")
    cache_purge_post_id: Optional[int] = Field(default=None, alias="cachePurgePostId")
    hmac: str = Field(alias="urlMetricHMAC")
    group_statuses: list[GroupStatus] = Field(alias="urlMetricGroupStatuses")
    storage_lock_ttl: int = Field(alias="storageLockTTL")
    freshness_ttl: int = Field(alias="freshnessTTL")
    group_collection: Optional[dict[str, Any]] = Field(default=None, alias="urlMetricGroupCollection")

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        # Optional extras are omitted rather than sent as null.
        for key in ("restApiNonce", "urlMetricGroupCollection"):
            if data.get(key) is None:
                data.pop(key, None)
        return data
