"""Headless-browser sandbox platform (Playwright).

One browser per platform, one fresh browser context + page per sandbox,
so no browser state leaks between worker contexts.

The two observation capabilities are realised as:

    NetworkLayer   observe_network_layer(): page "request" / "response" /
                   "requestfailed" listeners filtered by the network rule's
                   predicate; response bodies are read as a separate step
                   and may be unavailable.
    PageLayer      observe_page_layer(): an exposed ``__taplineRelay``
                   binding that the injected page hook calls with channel
                   messages; PAGE code is evaluated now and registered as an
                   init script so it survives re-navigation.

Both feed the same listener ``on_message`` with channel messages.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from playwright.async_api import (
    Browser,
    BrowserContext,
    Frame,
    Page,
    Playwright,
    Request,
    Response,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from tapline.core.errors import InjectionError, SandboxClosedError, SandboxCreateError
from tapline.interception.events import HookLayer, MessageType, hook_ready, now_ms
from tapline.interception.hooks import RELAY_BINDING, parse_network_rule
from tapline.interception.matching import UrlMatcher

from .protocol import LoadState, SandboxHandle, SandboxListener, VisibilityLevel

logger = logging.getLogger(__name__)

Relay = Callable[[dict[str, Any]], None]


class NetworkLayer:
    """Network-visibility hook for one page."""

    def __init__(self, page: Page, relay: Relay) -> None:
        self._page = page
        self._relay = relay
        self._matcher: UrlMatcher | None = None
        self._ids: dict[int, str] = {}
        self._counter = itertools.count(1)
        self._body_tasks: set[asyncio.Task] = set()

    @property
    def armed(self) -> bool:
        return self._matcher is not None

    def arm(self, rule: dict[str, Any]) -> None:
        """Install listeners (once) and acknowledge readiness."""
        first = self._matcher is None
        self._matcher = UrlMatcher.from_dict(rule.get("matcher") or {})
        if first:
            self._page.on("request", self._on_request)
            self._page.on("response", self._on_response)
            self._page.on("requestfailed", self._on_request_failed)
        self._relay(hook_ready(HookLayer.NETWORK))

    def close(self) -> None:
        for task in self._body_tasks:
            task.cancel()
        self._body_tasks.clear()

    def _matches(self, url: str) -> bool:
        return self._matcher is not None and self._matcher.matches(url)

    def _on_request(self, request: Request) -> None:
        if not self._matches(request.url):
            return
        exchange_id = f"net_{now_ms()}_{next(self._counter)}"
        self._ids[id(request)] = exchange_id
        self._relay(
            {
                "type": MessageType.EXCHANGE_STARTED.value,
                "layer": HookLayer.NETWORK.value,
                "id": exchange_id,
                "url": request.url,
                "method": request.method,
                "requestHeaders": request.headers,
                "requestBody": request.post_data,
                "timestamp": now_ms(),
            }
        )

    def _on_response(self, response: Response) -> None:
        exchange_id = self._ids.pop(id(response.request), None)
        if exchange_id is None:
            return
        task = asyncio.get_running_loop().create_task(self._complete(response, exchange_id))
        self._body_tasks.add(task)
        task.add_done_callback(self._body_tasks.discard)

    async def _complete(self, response: Response, exchange_id: str) -> None:
        try:
            body: str | None = await response.text()
        except PlaywrightError as e:
            # Redirects and closed pages have no retrievable body.
            logger.debug(f"Response body unavailable for {response.url}: {e}")
            body = None
        self._relay(
            {
                "type": MessageType.EXCHANGE_COMPLETED.value,
                "layer": HookLayer.NETWORK.value,
                "id": exchange_id,
                "url": response.url,
                "method": response.request.method,
                "status": response.status,
                "statusText": response.status_text,
                "responseHeaders": response.headers,
                "responseBody": body,
                "timestamp": now_ms(),
            }
        )

    def _on_request_failed(self, request: Request) -> None:
        exchange_id = self._ids.pop(id(request), None)
        if exchange_id is None:
            return
        self._relay(
            {
                "type": MessageType.EXCHANGE_FAILED.value,
                "layer": HookLayer.NETWORK.value,
                "id": exchange_id,
                "url": request.url,
                "method": request.method,
                "error": request.failure or "Request failed",
                "timestamp": now_ms(),
            }
        )


class PageLayer:
    """Page-script-visibility hook for one browser context."""

    def __init__(self, context: BrowserContext, page: Page, relay: Relay) -> None:
        self._context = context
        self._page = page
        self._relay = relay

    async def attach(self) -> None:
        await self._context.expose_binding(RELAY_BINDING, self._on_binding)

    def _on_binding(self, source: dict[str, Any], message: Any) -> None:
        if isinstance(message, dict):
            self._relay(message)
        else:
            logger.debug(f"Ignoring non-object relay payload: {message!r}")

    async def inject(self, code: str) -> None:
        await self._page.add_init_script(script=code)
        await self._page.evaluate(code)


@dataclass
class _Sandbox:
    handle: SandboxHandle
    context: BrowserContext
    page: Page
    network: NetworkLayer
    page_layer: PageLayer
    navigation: asyncio.Task | None = None
    closing: bool = False


class PlaywrightSandboxPlatform:
    """``SandboxPlatform`` backed by a Playwright browser.

    Example:
        >>> async with PlaywrightSandboxPlatform(headless=True) as platform:
        ...     manager = WorkerContextManager(platform, bridge, state, settings)
        ...     await manager.run_context(target, schedule)
    """

    name = "playwright"

    def __init__(
        self,
        headless: bool = True,
        browser: str = "chromium",
        navigation_timeout_seconds: float = 60.0,
    ) -> None:
        self.headless = headless
        self.browser_name = browser
        self.navigation_timeout_seconds = navigation_timeout_seconds
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._listener: SandboxListener | None = None
        self._sandboxes: dict[str, _Sandbox] = {}

    # === Lifecycle ===

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        launcher = getattr(self._playwright, self.browser_name)
        self._browser = await launcher.launch(headless=self.headless)
        logger.info(f"Playwright {self.browser_name} launched (headless={self.headless})")

    async def stop(self) -> None:
        for sandbox_id in list(self._sandboxes):
            with contextlib.suppress(SandboxClosedError):
                await self.close_sandbox(self._sandboxes[sandbox_id].handle)
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Playwright stopped")

    async def __aenter__(self) -> PlaywrightSandboxPlatform:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # === SandboxPlatform ===

    def bind(self, listener: SandboxListener) -> None:
        self._listener = listener

    async def create_sandbox(self, url: str) -> SandboxHandle:
        if self._browser is None:
            raise SandboxCreateError("Playwright platform is not started")

        try:
            context = await self._browser.new_context()
            page = await context.new_page()
        except PlaywrightError as e:
            raise SandboxCreateError(f"Could not open browser context: {e}", cause=e) from e

        handle = SandboxHandle(id=f"pw-{uuid4().hex[:12]}", url=url)

        def relay(message: dict[str, Any]) -> None:
            self._deliver(handle.id, message)

        sandbox = _Sandbox(
            handle=handle,
            context=context,
            page=page,
            network=NetworkLayer(page, relay),
            page_layer=PageLayer(context, page, relay),
        )
        try:
            await sandbox.page_layer.attach()
        except PlaywrightError as e:
            await context.close()
            raise SandboxCreateError(f"Could not expose relay binding: {e}", cause=e) from e

        page.on("framenavigated", lambda frame: self._on_navigated(handle.id, frame))
        page.on("load", lambda _page: self._emit_load(handle.id, LoadState.COMPLETE))
        page.on("close", lambda _page: self._on_page_closed(handle.id))

        self._sandboxes[handle.id] = sandbox
        sandbox.navigation = asyncio.get_running_loop().create_task(self._navigate(sandbox))
        logger.debug(f"Sandbox {handle.id} created for {url}")
        return handle

    async def inject_code(self, handle: SandboxHandle, code: str, visibility: VisibilityLevel) -> None:
        sandbox = self._sandboxes.get(handle.id)
        if sandbox is None or sandbox.page.is_closed():
            raise SandboxClosedError(handle.id)

        if visibility == VisibilityLevel.NETWORK:
            sandbox.network.arm(parse_network_rule(code))
            return

        try:
            await sandbox.page_layer.inject(code)
        except PlaywrightError as e:
            if sandbox.page.is_closed():
                raise SandboxClosedError(handle.id) from e
            raise InjectionError(f"Page not ready for injection: {e}", cause=e) from e

    async def close_sandbox(self, handle: SandboxHandle) -> None:
        sandbox = self._sandboxes.pop(handle.id, None)
        if sandbox is None:
            raise SandboxClosedError(handle.id)

        sandbox.closing = True
        if sandbox.navigation is not None and not sandbox.navigation.done():
            sandbox.navigation.cancel()
        sandbox.network.close()
        try:
            await sandbox.context.close()
        except PlaywrightError as e:
            logger.debug(f"Context close for {handle.id} raised: {e}")
        logger.debug(f"Sandbox {handle.id} closed")

    # === Private Helpers ===

    async def _navigate(self, sandbox: _Sandbox) -> None:
        try:
            await sandbox.page.goto(
                sandbox.handle.url,
                wait_until="load",
                timeout=self.navigation_timeout_seconds * 1000,
            )
        except PlaywrightError as e:
            if not sandbox.closing:
                logger.warning(f"Navigation failed for {sandbox.handle.id}: {e}")

    def _deliver(self, sandbox_id: str, message: dict[str, Any]) -> None:
        if self._listener is not None and sandbox_id in self._sandboxes:
            self._listener.on_message(sandbox_id, message)

    def _emit_load(self, sandbox_id: str, state: LoadState) -> None:
        if self._listener is not None and sandbox_id in self._sandboxes:
            self._listener.on_load_state_changed(sandbox_id, state)

    def _on_navigated(self, sandbox_id: str, frame: Frame) -> None:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is not None and frame == sandbox.page.main_frame:
            self._emit_load(sandbox_id, LoadState.LOADING)

    def _on_page_closed(self, sandbox_id: str) -> None:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None or sandbox.closing:
            return
        self._sandboxes.pop(sandbox_id, None)
        sandbox.network.close()
        logger.info(f"Sandbox {sandbox_id} closed externally")
        if self._listener is not None:
            self._listener.on_removed(sandbox_id)
