"""Tests for InterceptionBridge (correlation, extraction, dedup, persistence)."""

import json

import pytest

from tapline.interception.bridge import InterceptionBridge, same_request_url
from tapline.interception.events import ExchangeEvent
from tapline.interception.matching import UrlMatcher

URL = "https://shop.example/api/v4/pdp/get_pc?item_id=42"
BODY = json.dumps({"data": {"item": {"models": [{"modelid": 1, "stock": 5}]}}})


@pytest.fixture
def bridge(store):
    return InterceptionBridge(store, UrlMatcher("api/v4/pdp/get_pc"), "data.item.models", dedup_window_seconds=2.0)


def _started(exchange_id="fetch_1", url=URL, layer="page", ts=1_000, method="get"):
    return ExchangeEvent.from_message(
        {
            "type": "EXCHANGE_STARTED",
            "layer": layer,
            "id": exchange_id,
            "url": url,
            "method": method,
            "requestHeaders": {"Accept": "application/json"},
            "requestBody": "q=1",
            "timestamp": ts,
        }
    )


def _completed(exchange_id="fetch_1", url=URL, layer="page", ts=1_100, body=BODY, method=None):
    message = {
        "type": "EXCHANGE_COMPLETED",
        "layer": layer,
        "id": exchange_id,
        "url": url,
        "status": 200,
        "statusText": "OK",
        "responseHeaders": {"Content-Type": "application/json"},
        "responseBody": body,
        "timestamp": ts,
    }
    if method:
        message["method"] = method
    return ExchangeEvent.from_message(message)


class TestCorrelation:
    """Pairing request and response halves."""

    def test_by_id(self, bridge, store):
        assert bridge.handle_event("s1", "sbx-1", _started()) is None
        assert bridge.pending_count("sbx-1") == 1

        exchange = bridge.handle_event("s1", "sbx-1", _completed())

        assert exchange is not None
        assert exchange.method == "GET"
        assert exchange.request_headers == {"accept": "application/json"}
        assert exchange.request_body == "q=1"
        assert exchange.response_status == 200
        assert exchange.response_headers == {"content-type": "application/json"}
        assert exchange.extracted == [{"modelid": 1, "stock": 5}]
        assert exchange.complete is True
        assert exchange.layer == "page"
        assert bridge.pending_count("sbx-1") == 0
        assert [e.id for e in store.list_captured_exchanges("s1")] == [exchange.id]

    def test_by_url_within_window(self, bridge):
        bridge.handle_event("s1", "sbx-1", _started("req-7", method="post"))
        exchange = bridge.handle_event("s1", "sbx-1", _completed("other-id", ts=1_500))
        assert exchange.method == "POST"
        assert exchange.request_body == "q=1"
        assert bridge.pending_count("sbx-1") == 0

    def test_url_fallback_picks_nearest(self, bridge):
        bridge.handle_event("s1", "sbx-1", _started("a", ts=1_000, method="get"))
        bridge.handle_event("s1", "sbx-1", _started("b", ts=1_400, method="post"))
        exchange = bridge.handle_event("s1", "sbx-1", _completed("zzz", ts=1_450))
        assert exchange.method == "POST"
        assert bridge.pending_count("sbx-1") == 1

    def test_url_fallback_outside_window(self, bridge):
        bridge.handle_event("s1", "sbx-1", _started("a", ts=1_000, method="post"))
        exchange = bridge.handle_event("s1", "sbx-1", _completed("zzz", ts=10_000))
        assert exchange.method == "GET"
        assert exchange.request_body is None
        assert bridge.pending_count("sbx-1") == 1

    def test_completion_only(self, bridge, store):
        exchange = bridge.handle_event("s1", "sbx-1", _completed(method="put"))
        assert exchange.method == "PUT"
        assert exchange.extracted is not None
        assert len(store.list_captured_exchanges("s1")) == 1

    def test_pending_is_per_sandbox(self, bridge):
        bridge.handle_event("s1", "sbx-1", _started("fetch_1", method="post"))
        exchange = bridge.handle_event("s1", "sbx-2", _completed("fetch_1"))
        assert exchange.method == "GET"
        assert bridge.pending_count("sbx-1") == 1


class TestFilteringAndExtraction:
    """Matching and payload extraction."""

    def test_non_matching_ignored(self, bridge, store):
        other = "https://shop.example/static/app.js"
        assert bridge.handle_event("s1", "sbx-1", _started(url=other)) is None
        assert bridge.handle_event("s1", "sbx-1", _completed(url=other)) is None
        assert bridge.pending_count("sbx-1") == 0
        assert store.list_captured_exchanges("s1") == []

    def test_extraction_miss_still_persisted(self, bridge, store):
        exchange = bridge.handle_event("s1", "sbx-1", _completed(body='{"error": 4}'))
        assert exchange.extracted is None
        assert len(store.list_captured_exchanges("s1")) == 1

    def test_failed_exchange(self, bridge):
        bridge.handle_event("s1", "sbx-1", _started())
        event = ExchangeEvent.from_message(
            {"type": "EXCHANGE_FAILED", "layer": "page", "id": "fetch_1", "url": URL, "error": "aborted", "timestamp": 1_050}
        )
        exchange = bridge.handle_event("s1", "sbx-1", event)
        assert exchange.response_status == 0
        assert exchange.response_status_text == "aborted"
        assert exchange.extracted is None


class TestCrossLayerDedup:
    """The same call seen by both hooks is stored once."""

    def test_page_copy_dropped_after_network_payload(self, bridge, store):
        assert bridge.handle_event("s1", "sbx-1", _completed("net_1", layer="network", ts=1_100)) is not None
        assert bridge.handle_event("s1", "sbx-1", _completed("fetch_1", layer="page", ts=1_150)) is None
        assert len(store.list_captured_exchanges("s1")) == 1

    def test_page_copy_kept_when_it_adds_payload(self, bridge, store):
        bridge.handle_event("s1", "sbx-1", _completed("net_1", layer="network", ts=1_100, body=None))
        exchange = bridge.handle_event("s1", "sbx-1", _completed("fetch_1", layer="page", ts=1_150))
        assert exchange is not None
        assert exchange.extracted is not None
        assert [e.layer for e in store.list_captured_exchanges("s1")] == ["network", "page"]

    def test_same_layer_repeats_kept(self, bridge, store):
        bridge.handle_event("s1", "sbx-1", _completed("fetch_1", ts=1_100))
        bridge.handle_event("s1", "sbx-1", _completed("fetch_2", ts=1_200))
        assert len(store.list_captured_exchanges("s1")) == 2

    def test_relative_page_url_matches_absolute_network_url(self, bridge, store):
        assert bridge.handle_event("s1", "sbx-1", _completed("net_1", layer="network", ts=1_100)) is not None
        relative = "/api/v4/pdp/get_pc?item_id=42"
        assert bridge.handle_event("s1", "sbx-1", _completed("fetch_1", url=relative, layer="page", ts=1_150)) is None
        assert len(store.list_captured_exchanges("s1")) == 1

    def test_relative_url_with_other_query_kept(self, bridge, store):
        bridge.handle_event("s1", "sbx-1", _completed("net_1", layer="network", ts=1_100))
        other = "/api/v4/pdp/get_pc?item_id=7"
        assert bridge.handle_event("s1", "sbx-1", _completed("fetch_1", url=other, layer="page", ts=1_150)) is not None
        assert len(store.list_captured_exchanges("s1")) == 2

    def test_outside_window_kept(self, bridge, store):
        bridge.handle_event("s1", "sbx-1", _completed("net_1", layer="network", ts=1_000))
        bridge.handle_event("s1", "sbx-1", _completed("fetch_1", layer="page", ts=9_000))
        assert len(store.list_captured_exchanges("s1")) == 2


class TestDiscard:
    """discard_pending()."""

    def test_discard(self, bridge, store):
        bridge.handle_event("s1", "sbx-1", _started("a"))
        bridge.handle_event("s1", "sbx-1", _started("b"))
        assert bridge.discard_pending("sbx-1") == 2
        assert bridge.pending_count("sbx-1") == 0
        assert store.list_captured_exchanges("s1") == []

    def test_discard_unknown(self, bridge):
        assert bridge.discard_pending("nope") == 0


class TestSameRequestUrl:
    """same_request_url()."""

    @pytest.mark.parametrize(
        "a, b, expected",
        [
            (URL, URL, True),
            (URL, "/api/v4/pdp/get_pc?item_id=42", True),
            ("/api/v4/pdp/get_pc?item_id=42", URL, True),
            (URL, "/api/v4/pdp/get_pc?item_id=1", False),
            (URL, "https://other.example/api/v4/pdp/get_pc?item_id=42", False),
        ],
    )
    def test_cases(self, a, b, expected):
        assert same_request_url(a, b) is expected
