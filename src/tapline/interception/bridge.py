"""
Interception bridge: correlate, extract, persist.

Manifesto:
    Both hooks speak the same channel vocabulary, so the bridge does not
    care whether an exchange was seen at the network boundary or inside
    the page. It pairs request and response halves, runs extraction on
    the completed pair, and writes the CapturedExchange straight to the
    store so nothing is lost if the sandbox is force-closed a moment later.

Architecture:
    ::

        EXCHANGE_STARTED ──► pending[sandbox][id]
                                   │
        EXCHANGE_COMPLETED ────────┤ by id, else same URL within window,
        EXCHANGE_FAILED            │ else completion-only (request info on msg)
                                   ▼
                           extract_from_body(path)
                                   │
                           cross-layer dedup (method+URL within window,
                           relative page URL ~ absolute network URL)
                                   │
                                   ▼
                     store.append_captured_exchange()

Tags:
    interception, correlation, extraction, dedup, bridge
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import urlsplit
from uuid import uuid4

from tapline.core.logging import get_logger
from tapline.core.models import CapturedExchange
from tapline.core.repository import CaptureStore

from .events import ExchangeEvent, HookLayer, MessageType
from .extraction import extract_from_body
from .matching import UrlMatcher

logger = get_logger(__name__)


def same_request_url(a: str, b: str) -> bool:
    """Equal URLs, or a relative URL equal to the path and query of the other.

    The page hook can see the relative form a script passed to fetch, while
    the network layer always reports the absolute one.
    """
    if a == b:
        return True
    left, right = urlsplit(a), urlsplit(b)
    if left.netloc and right.netloc:
        return False
    return (left.path, left.query) == (right.path, right.query)


@dataclass
class PendingExchange:
    """Request half waiting for its response."""

    exchange_id: str
    layer: HookLayer
    url: str
    method: str
    started_ms: int
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None


@dataclass
class _RecentCapture:
    layer: HookLayer
    method: str
    url: str
    completed_ms: int
    has_payload: bool


class InterceptionBridge:
    """Turns channel events from one or more sandboxes into CapturedExchanges.

    Example:
        >>> bridge = InterceptionBridge(store, UrlMatcher("api/v4/pdp/get_pc"), "data.item.models")
        >>> bridge.handle_event("sched-1", "sbx-1", ExchangeEvent.from_message(msg))
    """

    def __init__(
        self,
        repository: CaptureStore,
        matcher: UrlMatcher,
        extraction_path: str,
        dedup_window_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.matcher = matcher
        self.extraction_path = extraction_path
        self._window_ms = int(dedup_window_seconds * 1000)
        self._pending: dict[str, dict[str, PendingExchange]] = {}
        self._recent: dict[str, list[_RecentCapture]] = {}

    def handle_event(
        self, schedule_id: str, sandbox_id: str, event: ExchangeEvent
    ) -> CapturedExchange | None:
        """Process one exchange event.

        Returns:
            The persisted exchange, or None when nothing was written
            (request half, non-matching URL, or cross-layer duplicate).
        """
        if not self.matcher.matches(event.url):
            return None

        if event.is_start:
            self._pending.setdefault(sandbox_id, {})[event.exchange_id] = PendingExchange(
                exchange_id=event.exchange_id,
                layer=event.layer,
                url=event.url,
                method=event.method or "GET",
                started_ms=event.timestamp_ms,
                request_headers=dict(event.request_headers),
                request_body=event.request_body,
            )
            return None

        pending = self._take_pending(sandbox_id, event)
        exchange = self._build_exchange(schedule_id, sandbox_id, event, pending)

        if self._is_duplicate(sandbox_id, exchange, event.timestamp_ms):
            logger.debug(
                "exchange.duplicate",
                sandbox_id=sandbox_id,
                url=exchange.url,
                layer=exchange.layer,
            )
            return None

        self.repository.append_captured_exchange(schedule_id, exchange)
        self._remember(sandbox_id, exchange, event.timestamp_ms)
        logger.info(
            "exchange.captured",
            sandbox_id=sandbox_id,
            url=exchange.url,
            method=exchange.method,
            status=exchange.response_status,
            layer=exchange.layer,
            has_payload=exchange.extracted is not None,
        )
        return exchange

    def pending_count(self, sandbox_id: str) -> int:
        return len(self._pending.get(sandbox_id, {}))

    def discard_pending(self, sandbox_id: str) -> int:
        """Drop incomplete exchanges for a torn-down sandbox."""
        dropped = self._pending.pop(sandbox_id, {})
        self._recent.pop(sandbox_id, None)
        if dropped:
            logger.info("exchange.discarded", sandbox_id=sandbox_id, count=len(dropped))
        return len(dropped)

    # === Private Helpers ===

    def _take_pending(self, sandbox_id: str, event: ExchangeEvent) -> PendingExchange | None:
        pending = self._pending.get(sandbox_id)
        if not pending:
            return None

        found = pending.pop(event.exchange_id, None)
        if found is not None:
            return found

        # Platform request id unknown: nearest pending call to the same URL.
        candidates = [
            p
            for p in pending.values()
            if p.url == event.url and abs(event.timestamp_ms - p.started_ms) <= self._window_ms
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda p: abs(event.timestamp_ms - p.started_ms))
        return pending.pop(best.exchange_id)

    def _build_exchange(
        self,
        schedule_id: str,
        sandbox_id: str,
        event: ExchangeEvent,
        pending: PendingExchange | None,
    ) -> CapturedExchange:
        if pending is not None:
            method = pending.method
            request_headers = pending.request_headers
            request_body = pending.request_body
            url = pending.url
        else:
            method = event.method or "GET"
            request_headers = event.request_headers
            request_body = event.request_body
            url = event.url

        extracted = None
        if event.kind == MessageType.EXCHANGE_COMPLETED:
            extracted = extract_from_body(event.response_body, self.extraction_path)

        return CapturedExchange(
            id=str(uuid4()),
            schedule_id=schedule_id,
            sandbox_id=sandbox_id,
            url=url,
            method=method,
            request_headers=dict(request_headers),
            request_body=request_body,
            response_status=event.status,
            response_status_text=event.status_text,
            response_headers=dict(event.response_headers),
            response_body=event.response_body,
            extracted=extracted,
            captured_at=datetime.now(UTC),
            complete=True,
            layer=event.layer.value,
        )

    def _is_duplicate(self, sandbox_id: str, exchange: CapturedExchange, at_ms: int) -> bool:
        recent = self._recent.get(sandbox_id)
        if not recent:
            return False

        recent[:] = [r for r in recent if at_ms - r.completed_ms <= self._window_ms]
        for r in recent:
            if r.layer.value == exchange.layer:
                continue
            if r.method != exchange.method or not same_request_url(r.url, exchange.url):
                continue
            if abs(at_ms - r.completed_ms) > self._window_ms:
                continue
            # The other layer already stored it; keep this copy only if it adds the payload.
            return r.has_payload or exchange.extracted is None
        return False

    def _remember(self, sandbox_id: str, exchange: CapturedExchange, at_ms: int) -> None:
        self._recent.setdefault(sandbox_id, []).append(
            _RecentCapture(
                layer=HookLayer(exchange.layer),
                method=exchange.method,
                url=exchange.url,
                completed_ms=at_ms,
                has_payload=exchange.extracted is not None,
            )
        )
