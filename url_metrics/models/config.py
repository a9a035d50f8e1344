"""Configuration models for URL Metrics collection."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MIB_IN_BYTES = 1024 * 1024
HMAC_SECRET_ENV_REFERENCE = "env:URL_METRICS_HMAC_SECRET"


class DetectiveConfig(BaseModel):
    # Sampling
    breakpoint_max_widths: list[int] = Field(default_factory=lambda: [480, 600, 782])
    sample_size: int = Field(default=3, gt=0)
    freshness_ttl_seconds: int = 86400  # one day; negative values never count as fresh

    # Submission limits
    storage_lock_ttl_seconds: int = Field(default=60, ge=0)
    min_viewport_aspect_ratio: float = 0.4
    max_viewport_aspect_ratio: float = 2.5
    max_url_metric_size: int = Field(default=MIB_IN_BYTES, gt=0)
    gzip_payloads: bool = True

    # Client
    extension_modules: list[str] = Field(default_factory=list)
    rest_api_endpoint: str = "http://127.0.0.1:8000/url-metrics/store"
    debug: bool = False

    # Server
    hmac_secret: str = Field(default=HMAC_SECRET_ENV_REFERENCE, validate_default=True)
    store_path: str = "./.url-metrics/store.json"

    @field_validator("breakpoint_max_widths")
    @classmethod
    def validate_breakpoints(cls, v: list[int]) -> list[int]:
        previous = 0
        for width in v:
            if width <= previous:
                raise ValueError(
                    "Breakpoint max widths must be positive and strictly increasing, "
                    f"got {v}"
                )
            previous = width
        return v

    @field_validator("hmac_secret", mode="before")
    @classmethod
    def resolve_env_secret(cls, v: str) -> str:
        if isinstance(v, str) and v.startswith("env:"):
            env_var = v[4:]
            resolved = os.environ.get(env_var)
            if resolved is None:
                # Unset secrets are only fatal for the server; see require_hmac_secret().
                return ""
            return resolved
        return v

    @model_validator(mode="after")
    def check_aspect_ratio_bounds(self) -> "DetectiveConfig":
        if self.min_viewport_aspect_ratio > self.max_viewport_aspect_ratio:
            raise ValueError("min_viewport_aspect_ratio cannot exceed max_viewport_aspect_ratio")
        return self

    def require_hmac_secret(self) -> str:
        if not self.hmac_secret:
            raise EnvironmentError(
                "No HMAC secret configured. Set URL_METRICS_HMAC_SECRET or hmac_secret "
                "in the config file."
            )
        return self.hmac_secret

    @classmethod
    def load(cls, path: str | Path) -> "DetectiveConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    @classmethod
    def load_or_default(cls, path: Optional[str | Path]) -> "DetectiveConfig":
        if path is not None and Path(path).exists():
            return cls.load(path)
        return cls()

    def save(self, path: str | Path, hmac_secret: Optional[str] = None) -> None:
        """Save config to a JSON file.

        Pass ``hmac_secret`` to persist a value other than the resolved secret,
        such as an ``env:`` reference.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump()
        if hmac_secret is not None:
            data["hmac_secret"] = hmac_secret
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
