"""Tests for the channel message vocabulary."""

import pytest

from tapline.interception.events import (
    ExchangeEvent,
    HookLayer,
    MessageType,
    heartbeat,
    hook_ready,
    message_type,
)


class TestMessageType:
    """message_type()."""

    def test_known(self):
        assert message_type({"type": "HOOK_READY"}) == MessageType.HOOK_READY

    @pytest.mark.parametrize("message", [{"type": "PING"}, {}, "HOOK_READY", None])
    def test_rejected(self, message):
        with pytest.raises(ValueError):
            message_type(message)


class TestExchangeEvent:
    """ExchangeEvent.from_message normalization."""

    def test_started(self):
        event = ExchangeEvent.from_message(
            {
                "type": "EXCHANGE_STARTED",
                "layer": "network",
                "id": "net_1",
                "url": "https://x/api",
                "method": "post",
                "requestHeaders": {"X-Token": "abc"},
                "requestBody": '{"q": 1}',
                "timestamp": 1000,
            }
        )
        assert event.is_start and not event.is_final
        assert event.layer == HookLayer.NETWORK
        assert event.method == "POST"
        assert event.request_headers == {"x-token": "abc"}
        assert event.request_body == '{"q": 1}'
        assert event.timestamp_ms == 1000

    def test_completed_header_pairs(self):
        event = ExchangeEvent.from_message(
            {
                "type": "EXCHANGE_COMPLETED",
                "id": "fetch_1",
                "url": "https://x/api",
                "status": "200",
                "statusText": "OK",
                "responseHeaders": [["Content-Type", "application/json"]],
                "responseBody": "{}",
                "timestamp": 1100,
            }
        )
        assert event.is_final
        assert event.layer == HookLayer.PAGE
        assert event.status == 200
        assert event.response_headers == {"content-type": "application/json"}

    def test_failed_gets_status_zero(self):
        event = ExchangeEvent.from_message(
            {"type": "EXCHANGE_FAILED", "id": "xhr_1", "url": "https://x/api", "error": "net::ERR_ABORTED"}
        )
        assert event.status == 0
        assert event.status_text == "net::ERR_ABORTED"
        assert event.error == "net::ERR_ABORTED"
        assert event.timestamp_ms > 0

    def test_failed_default_error(self):
        event = ExchangeEvent.from_message({"type": "EXCHANGE_FAILED", "id": "x", "url": "https://x"})
        assert event.error == "Request failed"

    @pytest.mark.parametrize(
        "message, match",
        [
            ({"type": "HEARTBEAT"}, "not an exchange"),
            ({"type": "EXCHANGE_STARTED", "url": "https://x"}, "'id'"),
            ({"type": "EXCHANGE_STARTED", "id": "a"}, "'url'"),
            ({"type": "EXCHANGE_STARTED", "id": "a", "url": "u", "layer": "dom"}, "hook layer"),
            ({"type": "EXCHANGE_STARTED", "id": "a", "url": "u", "timestamp": "soon"}, "timestamp"),
            ({"type": "EXCHANGE_COMPLETED", "id": "a", "url": "u", "status": "ok"}, "status"),
            ({"type": "EXCHANGE_STARTED", "id": "a", "url": "u", "requestHeaders": "x"}, "Headers"),
        ],
    )
    def test_malformed(self, message, match):
        with pytest.raises(ValueError, match=match):
            ExchangeEvent.from_message(message)


class TestControlMessages:
    """hook_ready() / heartbeat()."""

    def test_hook_ready(self):
        assert hook_ready(HookLayer.NETWORK) == {"type": "HOOK_READY", "layer": "network"}
        assert hook_ready("page") == {"type": "HOOK_READY", "layer": "page"}

    def test_heartbeat(self):
        msg = heartbeat()
        assert msg["type"] == "HEARTBEAT"
        assert msg["layer"] == "page"
        assert isinstance(msg["timestamp"], int)
