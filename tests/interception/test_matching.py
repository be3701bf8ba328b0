"""Tests for UrlMatcher."""

import pytest

from tapline.interception.matching import HEURISTIC_PATTERNS, UrlMatcher


class TestConfiguredPattern:
    """Primary pattern and alternates."""

    def test_substring_match(self):
        m = UrlMatcher("https://shopee.vn/api/v4/pdp/get_pc")
        assert m.matches("https://shopee.vn/api/v4/pdp/get_pc?item_id=1&shop_id=2")
        assert not m.matches("https://shopee.vn/api/v4/search")

    def test_pattern_case_insensitive(self):
        assert UrlMatcher("API/V4/PDP").matches("https://x/api/v4/pdp/get_pc")

    def test_pattern_is_stripped(self):
        m = UrlMatcher("  /api/stock  ")
        assert m.pattern == "/api/stock"
        assert m.matches("https://x/api/stock/1")

    def test_alternates(self):
        m = UrlMatcher("https://shopee.vn/api/v4/pdp/get_pc", ("/api/v4/item/get",))
        assert m.matches("https://mirror.example/api/v4/item/get?id=3")
        assert not m.matches("https://mirror.example/static/app.js")

    def test_alternates_ignore_blank_entries(self):
        m = UrlMatcher("/api/stock", ("", "/api/item"))
        assert m.alternates == ("/api/item",)
        assert not m.matches("https://x/home")

    def test_heuristics_unused_when_pattern_set(self):
        assert not UrlMatcher("/api/stock").matches("https://x/data.json")

    @pytest.mark.parametrize("url", [None, ""])
    def test_empty_url_never_matches(self, url):
        assert UrlMatcher("/api").matches(url) is False
        assert UrlMatcher().matches(url) is False


class TestHeuristic:
    """No configured pattern."""

    def test_uses_heuristic(self):
        assert UrlMatcher().uses_heuristic is True
        assert UrlMatcher("   ").uses_heuristic is True
        assert UrlMatcher("/api").uses_heuristic is False

    @pytest.mark.parametrize(
        "url",
        [
            "https://x/API/v1/items",
            "https://x/backend/ajax/load",
            "https://x/stock.php?id=1",
            "https://x/feed.json",
            "https://x/rest/v2/item",
        ],
    )
    def test_common_api_paths(self, url):
        assert UrlMatcher().matches(url)

    def test_plain_page_not_matched(self):
        assert not UrlMatcher().matches("https://x/product/blue-shirt.html")


class TestSerialisation:
    """to_dict / from_dict / __call__."""

    def test_round_trip(self):
        m = UrlMatcher("/api/stock", ("/api/item",))
        data = m.to_dict()
        assert data["heuristics"] == list(HEURISTIC_PATTERNS)
        assert UrlMatcher.from_dict(data) == m

    def test_from_empty_dict(self):
        assert UrlMatcher.from_dict({}) == UrlMatcher()

    def test_callable(self):
        assert UrlMatcher("/api/stock")("https://x/api/stock")
