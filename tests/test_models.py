"""Tests for URL Metric, config and status payload models."""

import json

import pytest
from pydantic import ValidationError

from url_metrics.models.config import MIB_IN_BYTES, DetectiveConfig
from url_metrics.models.detect_args import DetectArgs, GroupStatus
from url_metrics.models.url_metric import ElementData, StoredURLMetric, URLMetric, Viewport

from tests.conftest import ETAG, make_url_metric


# ============================================================================
# URLMetric
# ============================================================================


class TestURLMetric:
    """Tests for the wire shape and validation of URL Metrics."""

    def test_parses_camel_case_wire_keys(self):
        metric = URLMetric.model_validate({
            "url": "https://example.com/",
            "viewport": {"width": 400, "height": 700},
            "elements": [{
                "xpath": "/HTML/BODY/IMG[1]",
                "isLCP": True,
                "isLCPCandidate": True,
                "intersectionRatio": 0.75,
                "intersectionRect": {"width": 10, "height": 10},
                "boundingClientRect": {"width": 10, "height": 20},
            }],
        })
        element = metric.elements[0]
        assert element.is_lcp is True
        assert element.intersection_ratio == 0.75
        assert element.bounding_client_rect.height == 20

    def test_to_json_dict_uses_aliases(self):
        metric = make_url_metric()
        data = metric.to_json_dict()
        element = data["elements"][0]
        assert element["isLCP"] is True
        assert "intersectionRect" in element
        assert "is_lcp" not in element

    def test_extension_properties_survive_round_trip(self):
        metric = URLMetric.model_validate({
            "url": "https://example.com/",
            "viewport": {"width": 400, "height": 700},
            "elements": [{"xpath": "/HTML/BODY/DIV[1]", "lcpBackground": "yes"}],
            "embedSize": 42,
        })
        data = metric.to_json_dict()
        assert data["embedSize"] == 42
        assert data["elements"][0]["lcpBackground"] == "yes"

    def test_rejects_zero_viewport(self):
        with pytest.raises(ValidationError):
            Viewport(width=0, height=700)

    def test_rejects_intersection_ratio_out_of_range(self):
        with pytest.raises(ValidationError):
            ElementData(xpath="/HTML/BODY", intersection_ratio=1.5)

    def test_rejects_duplicate_xpaths(self):
        with pytest.raises(ValidationError, match="Duplicate element xpath"):
            URLMetric(
                url="https://example.com/",
                viewport=Viewport(width=400, height=700),
                elements=[ElementData(xpath="/HTML/BODY"), ElementData(xpath="/HTML/BODY")],
            )

    def test_get_lcp_element(self):
        metric = make_url_metric(lcp_xpath="/HTML/BODY/H1[1]")
        assert metric.get_lcp_element().xpath == "/HTML/BODY/H1[1]"
        assert make_url_metric(lcp_xpath=None).get_lcp_element() is None


class TestStoredURLMetric:
    """Tests for stamping submissions with server-assigned values."""

    def test_server_values_override_client_values(self):
        submitted = URLMetric.model_validate({
            "url": "https://example.com/",
            "viewport": {"width": 400, "height": 700},
            "elements": [],
            "uuid": "client-uuid",
            "etag": "client-etag",
            "timestamp": 1,
        })
        stored = StoredURLMetric.from_submission(
            submitted, uuid="server-uuid", etag=ETAG, timestamp=123.0,
        )
        assert stored.uuid == "server-uuid"
        assert stored.etag == ETAG
        assert stored.timestamp == 123.0

    def test_persisted_form_reloads(self):
        stored = make_url_metric()
        reloaded = StoredURLMetric.model_validate(json.loads(json.dumps(stored.model_dump(mode="json"))))
        assert reloaded.elements[0].is_lcp is True
        assert reloaded.timestamp == stored.timestamp


# ============================================================================
# DetectiveConfig
# ============================================================================


class TestDetectiveConfig:
    """Tests for configuration defaults, validation and persistence."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("URL_METRICS_HMAC_SECRET", raising=False)
        config = DetectiveConfig()
        assert config.breakpoint_max_widths == [480, 600, 782]
        assert config.sample_size == 3
        assert config.freshness_ttl_seconds == 86400
        assert config.storage_lock_ttl_seconds == 60
        assert config.max_url_metric_size == MIB_IN_BYTES
        assert config.hmac_secret == ""

    def test_hmac_secret_from_env(self, monkeypatch):
        monkeypatch.setenv("URL_METRICS_HMAC_SECRET", "s3cret")
        assert DetectiveConfig().hmac_secret == "s3cret"

    def test_require_hmac_secret_raises_when_unset(self, monkeypatch):
        monkeypatch.delenv("URL_METRICS_HMAC_SECRET", raising=False)
        with pytest.raises(EnvironmentError):
            DetectiveConfig().require_hmac_secret()

    @pytest.mark.parametrize("breakpoints", [[0, 480], [600, 480], [480, 480], [-1]])
    def test_rejects_malformed_breakpoints(self, breakpoints):
        with pytest.raises(ValidationError):
            DetectiveConfig(breakpoint_max_widths=breakpoints)

    def test_rejects_inverted_aspect_ratio_bounds(self):
        with pytest.raises(ValidationError):
            DetectiveConfig(min_viewport_aspect_ratio=3.0, max_viewport_aspect_ratio=2.0)

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "url-metrics.json"
        DetectiveConfig(hmac_secret="abc", sample_size=5).save(path)
        loaded = DetectiveConfig.load(path)
        assert loaded.sample_size == 5
        assert loaded.hmac_secret == "abc"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DetectiveConfig.load(tmp_path / "missing.json")

    def test_load_or_default_without_file(self, tmp_path):
        config = DetectiveConfig.load_or_default(tmp_path / "missing.json")
        assert config.sample_size == 3


# ============================================================================
# DetectArgs
# ============================================================================


class TestDetectArgs:
    """Tests for the client status payload."""

    def test_json_uses_client_keys(self, detect_args):
        data = detect_args.to_json_dict()
        assert data["currentETag"] == ETAG
        assert data["urlMetricGroupStatuses"][0] == {
            "minimumViewportWidth": 0,
            "maximumViewportWidth": 480,
            "complete": False,
        }
        assert data["urlMetricGroupStatuses"][-1]["maximumViewportWidth"] is None

    def test_optional_extras_omitted(self, detect_args):
        data = detect_args.to_json_dict()
        assert "restApiNonce" not in data
        assert "urlMetricGroupCollection" not in data
        assert data["cachePurgePostId"] is None

    def test_parses_client_keys(self, detect_args):
        parsed = DetectArgs.model_validate(detect_args.to_json_dict())
        assert parsed.group_statuses[1] == GroupStatus(
            minimum_viewport_width=480, maximum_viewport_width=600,
        )
        assert parsed.slug == detect_args.slug
