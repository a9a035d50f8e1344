"""Tests for viewport groups, the group collection, media queries and ETags."""

import pytest

from url_metrics.grouping.collection import (
    InvalidBreakpointsError,
    URLMetricGroupCollection,
    ViewportWidthOutOfRangeError,
)
from url_metrics.grouping.etag import TagVisitorRegistry, compute_etag
from url_metrics.grouping.group import URLMetricGroup
from url_metrics.grouping.media_query import generate_media_query

from tests.conftest import ETAG, NOW, OTHER_ETAG, make_url_metric


def make_group(
    minimum=0, maximum=480, sample_size=3, freshness_ttl=86400, etag=ETAG, now=NOW,
) -> URLMetricGroup:
    return URLMetricGroup(
        minimum_viewport_width=minimum,
        maximum_viewport_width=maximum,
        sample_size=sample_size,
        freshness_ttl=freshness_ttl,
        current_etag=lambda: etag,
        now=lambda: now,
    )


def make_collection(url_metrics=(), etag=ETAG, sample_size=3, freshness_ttl=86400, now=NOW):
    return URLMetricGroupCollection(
        url_metrics, etag, [480, 600, 782], sample_size, freshness_ttl, now=lambda: now,
    )


# ============================================================================
# Media queries
# ============================================================================


class TestGenerateMediaQuery:
    """Tests for media queries spanning a group's width range."""

    @pytest.mark.parametrize("minimum,maximum,expected", [
        (480, 600, "(480px < width <= 600px)"),
        (782, None, "(782px < width)"),
        (0, 480, "(width <= 480px)"),
        (None, 480, "(width <= 480px)"),
        (0, None, None),
        (None, None, None),
    ])
    def test_ranges(self, minimum, maximum, expected):
        assert generate_media_query(minimum, maximum) == expected

    @pytest.mark.parametrize("minimum,maximum", [(600, 480), (480, 480)])
    def test_inverted_bounds_raise(self, minimum, maximum):
        with pytest.raises(ValueError):
            generate_media_query(minimum, maximum)


# ============================================================================
# URLMetricGroup
# ============================================================================


class TestURLMetricGroup:
    """Tests for range checks, freshness, completeness and eviction."""

    def test_width_range_is_exclusive_min_inclusive_max(self):
        group = make_group(480, 600)
        assert not group.is_viewport_width_in_range(480)
        assert group.is_viewport_width_in_range(481)
        assert group.is_viewport_width_in_range(600)
        assert not group.is_viewport_width_in_range(601)

    def test_unbounded_group(self):
        group = make_group(782, None)
        assert group.is_viewport_width_in_range(100_000)
        assert group.media_query == "(782px < width)"

    def test_invalid_construction(self):
        with pytest.raises(ValueError):
            make_group(minimum=-1)
        with pytest.raises(ValueError):
            make_group(minimum=600, maximum=480)
        with pytest.raises(ValueError):
            make_group(sample_size=0)

    def test_complete_after_sample_size_fresh_samples(self):
        group = make_group(sample_size=2)
        group.accept(make_url_metric(timestamp=NOW - 10))
        assert not group.is_complete()
        group.accept(make_url_metric(timestamp=NOW - 5))
        assert group.is_complete()

    def test_etag_mismatch_is_stale(self):
        group = make_group(sample_size=1)
        group.accept(make_url_metric(etag=OTHER_ETAG))
        assert len(group) == 1
        assert group.count_fresh_current() == 0
        assert not group.is_complete()

    def test_expired_samples_are_stale(self):
        group = make_group(sample_size=1, freshness_ttl=60)
        group.accept(make_url_metric(timestamp=NOW - 61))
        assert not group.is_complete()

    def test_age_equal_to_ttl_is_fresh(self):
        group = make_group(sample_size=1, freshness_ttl=60)
        group.accept(make_url_metric(timestamp=NOW - 60))
        assert group.is_complete()

    @pytest.mark.parametrize("ttl", [0, -1])
    def test_non_positive_ttl_is_never_fresh(self, ttl):
        group = make_group(sample_size=1, freshness_ttl=ttl)
        group.accept(make_url_metric(timestamp=NOW))
        assert group.count_fresh_current() == 0

    def test_eviction_keeps_newest(self):
        group = make_group(sample_size=2)
        for offset in (30, 10, 20):
            group.accept(make_url_metric(timestamp=NOW - offset))
        assert len(group) == 2
        assert sorted(m.timestamp for m in group) == [NOW - 20, NOW - 10]

    def test_staleness_alone_never_deletes(self):
        group = make_group(sample_size=3)
        group.accept(make_url_metric(etag=OTHER_ETAG))
        assert len(group) == 1

    def test_lcp_element_most_common_among_fresh(self):
        group = make_group(sample_size=3)
        group.accept(make_url_metric(timestamp=NOW - 3, lcp_xpath="/HTML/BODY/IMG[1]"))
        group.accept(make_url_metric(timestamp=NOW - 2, lcp_xpath="/HTML/BODY/IMG[1]"))
        group.accept(make_url_metric(timestamp=NOW - 1, lcp_xpath="/HTML/BODY/H1[1]"))
        assert group.get_lcp_element() == "/HTML/BODY/IMG[1]"

    def test_lcp_element_tie_goes_to_most_recent(self):
        group = make_group(sample_size=3)
        group.accept(make_url_metric(timestamp=NOW - 2, lcp_xpath="/HTML/BODY/IMG[1]"))
        group.accept(make_url_metric(timestamp=NOW - 1, lcp_xpath="/HTML/BODY/H1[1]"))
        assert group.get_lcp_element() == "/HTML/BODY/H1[1]"

    def test_lcp_element_ignores_stale(self):
        group = make_group(sample_size=3)
        group.accept(make_url_metric(etag=OTHER_ETAG, lcp_xpath="/HTML/BODY/IMG[1]"))
        assert group.get_lcp_element() is None

    def test_describe_status(self):
        group = make_group(sample_size=1)
        assert group.describe_status() == "empty"
        group.accept(make_url_metric(etag=OTHER_ETAG))
        assert group.describe_status() == "populated"
        group.accept(make_url_metric(timestamp=NOW + 1))
        assert group.describe_status() == "complete"

    def test_to_status(self):
        status = make_group(480, 600).to_status()
        assert status.minimum_viewport_width == 480
        assert status.maximum_viewport_width == 600
        assert status.complete is False


# ============================================================================
# URLMetricGroupCollection
# ============================================================================


class TestURLMetricGroupCollection:
    """Tests for building and querying the breakpoint groups."""

    def test_builds_one_more_group_than_breakpoints(self):
        collection = make_collection()
        bounds = [(g.minimum_viewport_width, g.maximum_viewport_width) for g in collection]
        assert bounds == [(0, 480), (480, 600), (600, 782), (782, None)]

    @pytest.mark.parametrize("width,index", [(1, 0), (480, 0), (481, 1), (600, 1), (782, 2), (10000, 3)])
    def test_routes_width_to_exactly_one_group(self, width, index):
        collection = make_collection()
        groups = list(collection)
        assert collection.get_group_for_viewport_width(width) is groups[index]
        assert sum(g.is_viewport_width_in_range(width) for g in groups) == 1

    def test_width_zero_has_no_group(self):
        with pytest.raises(ViewportWidthOutOfRangeError):
            make_collection().get_group_for_viewport_width(0)

    @pytest.mark.parametrize("breakpoints", [[0, 480], [600, 480], [480, 480], [480.5]])
    def test_rejects_malformed_breakpoints(self, breakpoints):
        with pytest.raises(InvalidBreakpointsError):
            URLMetricGroupCollection([], ETAG, breakpoints, 3, 86400)

    def test_routes_stored_url_metrics(self):
        collection = make_collection([make_url_metric(width=400), make_url_metric(width=900)])
        assert [len(g) for g in collection] == [1, 0, 0, 1]
        assert len(collection.get_all_url_metrics()) == 2

    def test_every_group_complete(self):
        widths = [400, 500, 700, 1000]
        metrics = [make_url_metric(width=w, timestamp=NOW - i) for w in widths for i in range(3)]
        collection = make_collection(metrics)
        assert collection.is_every_group_complete()

    def test_etag_change_makes_every_group_incomplete(self):
        widths = [400, 500, 700, 1000]
        metrics = [make_url_metric(width=w, timestamp=NOW - i) for w in widths for i in range(3)]
        collection = make_collection(metrics, etag=OTHER_ETAG)
        assert not collection.is_every_group_complete()
        assert collection.current_etag == OTHER_ETAG
        assert len(collection.get_all_url_metrics()) == 12

    def test_add_url_metric_returns_group(self):
        collection = make_collection()
        group = collection.add_url_metric(make_url_metric(width=500))
        assert group.minimum_viewport_width == 480
        assert collection.is_any_group_populated()

    def test_common_lcp_element(self):
        collection = make_collection([
            make_url_metric(width=400, lcp_xpath="/HTML/BODY/IMG[1]"),
            make_url_metric(width=900, lcp_xpath="/HTML/BODY/IMG[1]"),
        ])
        assert collection.get_common_lcp_element() == "/HTML/BODY/IMG[1]"

    def test_no_common_lcp_element_when_groups_differ(self):
        collection = make_collection([
            make_url_metric(width=400, lcp_xpath="/HTML/BODY/IMG[1]"),
            make_url_metric(width=900, lcp_xpath="/HTML/BODY/H1[1]"),
        ])
        assert collection.get_common_lcp_element() is None

    def test_describe_groups(self):
        metrics = [make_url_metric(width=400, timestamp=NOW - i) for i in range(3)]
        metrics.append(make_url_metric(width=500))
        assert make_collection(metrics).describe_groups() == (
            "0:complete, 480:populated, 600:empty, 782:empty"
        )

    @pytest.mark.parametrize("width", [400, 500, 700, 1000])
    def test_adding_sample_only_completes_its_own_group(self, width):
        widths = [400, 500, 700, 1000]
        # Every group is one fresh sample short; other groups also hold stale samples.
        metrics = [make_url_metric(width=w, timestamp=NOW - i) for w in widths for i in range(2)]
        metrics += [make_url_metric(width=w, etag=OTHER_ETAG, timestamp=NOW - 5) for w in widths]
        collection = make_collection(metrics)
        before = [group.is_complete() for group in collection]
        assert before == [False, False, False, False]

        target = collection.add_url_metric(make_url_metric(width=width, timestamp=NOW))

        after = {id(group): group.is_complete() for group in collection}
        assert after.pop(id(target)) is True
        assert set(after.values()) == {False}

    def test_group_statuses(self):
        statuses = make_collection().get_group_statuses()
        assert [s.minimum_viewport_width for s in statuses] == [0, 480, 600, 782]
        assert statuses[-1].maximum_viewport_width is None

    def test_first_and_last_group(self):
        collection = make_collection()
        assert collection.get_first_group().minimum_viewport_width == 0
        assert collection.get_last_group().maximum_viewport_width is None


# ============================================================================
# ETag and tag visitors
# ============================================================================


class TestTagVisitorRegistry:
    """Tests for the named tag visitor registry."""

    def test_register_and_lookup(self):
        registry = TagVisitorRegistry()
        visitor = lambda context: True  # noqa: E731
        registry.register("images", visitor)
        assert registry.is_registered("images")
        assert registry.get("images") is visitor
        assert len(registry) == 1
        assert registry.unregister("images") is True
        assert registry.unregister("images") is False

    def test_register_rejects_non_callable(self):
        with pytest.raises(TypeError):
            TagVisitorRegistry().register("bad", "not callable")

    def test_iterates_in_registration_order(self):
        registry = TagVisitorRegistry()
        registry.register("b", lambda c: None)
        registry.register("a", lambda c: None)
        assert [visitor_id for visitor_id, _ in registry] == ["b", "a"]

    def test_visit_all_isolates_failures(self, caplog):
        calls = []

        def broken(context):
            raise RuntimeError("boom")

        def tracker(context):
            calls.append(context)
            return True

        registry = TagVisitorRegistry()
        registry.register("broken", broken)
        registry.register("tracker", tracker)
        assert registry.visit_all("IMG") is True
        assert calls == ["IMG"]
        assert "broken" in caplog.text

    def test_visit_all_false_when_nothing_tracks(self):
        registry = TagVisitorRegistry()
        registry.register("noop", lambda c: None)
        assert registry.visit_all("DIV") is False


class TestComputeETag:
    """Tests for the ETag fingerprint."""

    def test_is_md5_hex(self):
        etag = compute_etag(TagVisitorRegistry())
        assert len(etag) == 32
        int(etag, 16)

    def test_registration_order_does_not_matter(self):
        first, second = TagVisitorRegistry(), TagVisitorRegistry()
        first.register("a", lambda c: None)
        first.register("b", lambda c: None)
        second.register("b", lambda c: None)
        second.register("a", lambda c: None)
        assert compute_etag(first) == compute_etag(second)

    def test_changes_with_visitors(self):
        registry = TagVisitorRegistry()
        before = compute_etag(registry)
        registry.register("images", lambda c: None)
        assert compute_etag(registry) != before

    def test_changes_with_page_state(self):
        registry = TagVisitorRegistry()
        assert compute_etag(registry, {"template": "single"}) != compute_etag(
            registry, {"template": "page"},
        )
        assert compute_etag(registry, {"a": 1, "b": 2}) == compute_etag(registry, {"b": 2, "a": 1})
