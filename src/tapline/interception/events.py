"""Message channel vocabulary shared by the hooks and the bridge.

Both interception layers relay plain JSON objects out of a sandbox:

    {"type": "HOOK_READY", "layer": "page"}
    {"type": "HEARTBEAT", "layer": "page", "timestamp": 1736000000000}
    {"type": "EXCHANGE_STARTED",   "layer": "page", "id": "fetch_1736000000000_1",
     "url": "...", "method": "GET", "requestHeaders": {...}, "requestBody": null,
     "timestamp": 1736000000000}
    {"type": "EXCHANGE_COMPLETED", "layer": "page", "id": "fetch_1736000000000_1",
     "url": "...", "status": 200, "statusText": "OK", "responseHeaders": {...},
     "responseBody": "...", "timestamp": 1736000000123}
    {"type": "EXCHANGE_FAILED",    "layer": "network", "id": "net_...",
     "url": "...", "error": "net::ERR_ABORTED", "timestamp": ...}

``ExchangeEvent.from_message`` is the only parser; the bridge never sees
platform-specific objects.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageType(str, Enum):
    HOOK_READY = "HOOK_READY"
    HEARTBEAT = "HEARTBEAT"
    EXCHANGE_STARTED = "EXCHANGE_STARTED"
    EXCHANGE_COMPLETED = "EXCHANGE_COMPLETED"
    EXCHANGE_FAILED = "EXCHANGE_FAILED"


class HookLayer(str, Enum):
    NETWORK = "network"
    PAGE = "page"


EXCHANGE_TYPES = frozenset(
    {MessageType.EXCHANGE_STARTED, MessageType.EXCHANGE_COMPLETED, MessageType.EXCHANGE_FAILED}
)


def now_ms() -> int:
    return int(time.time() * 1000)


def message_type(message: Any) -> MessageType:
    """Return the message's type or raise ``ValueError``."""
    if not isinstance(message, dict):
        raise ValueError(f"Channel message must be an object, got {type(message).__name__}")
    raw = message.get("type")
    try:
        return MessageType(raw)
    except ValueError:
        raise ValueError(f"Unknown channel message type: {raw!r}") from None


def _headers(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k).lower(): str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        # [[name, value], ...] as produced by Headers.entries()
        return {str(pair[0]).lower(): str(pair[1]) for pair in raw if len(pair) == 2}
    raise ValueError("Headers must be an object or a list of pairs")


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    return raw if isinstance(raw, str) else str(raw)


@dataclass
class ExchangeEvent:
    """One half (or the whole) of a captured exchange, normalized."""

    kind: MessageType
    layer: HookLayer
    exchange_id: str
    url: str
    timestamp_ms: int
    method: str | None = None
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    status: int | None = None
    status_text: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    error: str | None = None

    @property
    def is_start(self) -> bool:
        return self.kind == MessageType.EXCHANGE_STARTED

    @property
    def is_final(self) -> bool:
        return self.kind in (MessageType.EXCHANGE_COMPLETED, MessageType.EXCHANGE_FAILED)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> ExchangeEvent:
        """Validate and normalize a channel message.

        Raises:
            ValueError: Not an exchange message, or a required field is missing
        """
        kind = message_type(message)
        if kind not in EXCHANGE_TYPES:
            raise ValueError(f"{kind.value} is not an exchange message")

        try:
            layer = HookLayer(message.get("layer", HookLayer.PAGE.value))
        except ValueError:
            raise ValueError(f"Unknown hook layer: {message.get('layer')!r}") from None

        exchange_id = message.get("id")
        url = message.get("url")
        if not exchange_id or not isinstance(exchange_id, str):
            raise ValueError("Exchange message is missing 'id'")
        if not url or not isinstance(url, str):
            raise ValueError("Exchange message is missing 'url'")

        timestamp = message.get("timestamp")
        try:
            timestamp_ms = int(timestamp) if timestamp is not None else now_ms()
        except (TypeError, ValueError):
            raise ValueError(f"Invalid timestamp: {timestamp!r}") from None

        method = message.get("method")
        status = message.get("status")
        status_text = _text(message.get("statusText"))
        error = _text(message.get("error"))

        if kind == MessageType.EXCHANGE_FAILED:
            error = error or "Request failed"
            status = 0
            status_text = error
        elif status is not None:
            try:
                status = int(status)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid status: {status!r}") from None

        return cls(
            kind=kind,
            layer=layer,
            exchange_id=exchange_id,
            url=url,
            timestamp_ms=timestamp_ms,
            method=method.upper() if isinstance(method, str) and method else None,
            request_headers=_headers(message.get("requestHeaders")),
            request_body=_text(message.get("requestBody")),
            status=status,
            status_text=status_text,
            response_headers=_headers(message.get("responseHeaders")),
            response_body=_text(message.get("responseBody")),
            error=error,
        )


def hook_ready(layer: HookLayer | str) -> dict[str, Any]:
    return {"type": MessageType.HOOK_READY.value, "layer": HookLayer(layer).value}


def heartbeat(layer: HookLayer | str = HookLayer.PAGE) -> dict[str, Any]:
    return {"type": MessageType.HEARTBEAT.value, "layer": HookLayer(layer).value, "timestamp": now_ms()}


__all__ = [
    "EXCHANGE_TYPES",
    "ExchangeEvent",
    "HookLayer",
    "MessageType",
    "heartbeat",
    "hook_ready",
    "message_type",
    "now_ms",
]
