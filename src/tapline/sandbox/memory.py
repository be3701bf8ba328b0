"""In-process sandbox platform for tests and dry runs.

Behaves like a well-mannered browser by default:

    create_sandbox()   → LOADING signal on the next loop iteration
    inject NETWORK     → HOOK_READY(network)
    inject page hook   → HOOK_READY(page)
    both layers ready  → scripted channel messages replayed in order

Every knob that makes a real sandbox unpleasant can be turned on: failing
creations, the first N injections raising ``InjectionError``, never loading,
never acknowledging hooks, or being closed from outside via ``remove()``.

Example:
    >>> platform = MemorySandboxPlatform(messages=[started, completed], injection_failures=1)
    >>> manager = WorkerContextManager(platform, bridge, state, settings)
    >>> outcome = await manager.run_context(target, schedule)
    >>> platform.events
    [('create', 'mem-1'), ('close', 'mem-1')]
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

from tapline.core.errors import InjectionError, SandboxClosedError, SandboxCreateError
from tapline.interception.events import HookLayer, hook_ready
from tapline.interception.hooks import PAGE_HOOK_MARKER, parse_network_rule

from .protocol import LoadState, SandboxHandle, SandboxListener, VisibilityLevel

MessageScript = list[dict[str, Any]] | Callable[[SandboxHandle], list[dict[str, Any]]]


class MemorySandboxPlatform:
    """Scriptable ``SandboxPlatform``.

    Args:
        messages: Channel messages replayed once both hooks are ready, or a
            callable producing them per sandbox
        fail_create: Every creation raises ``SandboxCreateError``
        create_failures: Only the first N creations fail
        injection_failures: The first N ``inject_code`` calls per sandbox
            raise ``InjectionError``
        auto_load: Emit the LOADING signal after creation
        auto_ready: Acknowledge injected hooks with HOOK_READY
        create_delay: Seconds ``create_sandbox`` takes
        replay_interval: Seconds between replayed messages
    """

    name = "memory"

    def __init__(
        self,
        messages: MessageScript | None = None,
        *,
        fail_create: bool = False,
        create_failures: int = 0,
        injection_failures: int = 0,
        auto_load: bool = True,
        auto_ready: bool = True,
        create_delay: float = 0.0,
        replay_interval: float = 0.0,
    ) -> None:
        self.messages = messages or []
        self.fail_create = fail_create
        self.create_failures = create_failures
        self.injection_failures = injection_failures
        self.auto_load = auto_load
        self.auto_ready = auto_ready
        self.create_delay = create_delay
        self.replay_interval = replay_interval

        self.events: list[tuple[str, str]] = []
        self.injections: list[tuple[str, VisibilityLevel, str]] = []
        self.close_calls: dict[str, int] = {}
        self.max_open = 0

        self._listener: SandboxListener | None = None
        self._open: dict[str, SandboxHandle] = {}
        self._ready: dict[str, set[str]] = {}
        self._inject_attempts: dict[str, int] = {}
        self._replay_tasks: dict[str, asyncio.Task] = {}
        self._created = 0

    # === SandboxPlatform ===

    def bind(self, listener: SandboxListener) -> None:
        self._listener = listener

    async def create_sandbox(self, url: str) -> SandboxHandle:
        self._created += 1
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create or self._created <= self.create_failures:
            self.events.append(("create_failed", url))
            raise SandboxCreateError(f"Could not open sandbox for {url}")

        handle = SandboxHandle(id=f"mem-{self._created}", url=url)
        self._open[handle.id] = handle
        self._ready[handle.id] = set()
        self.events.append(("create", handle.id))
        self.max_open = max(self.max_open, len(self._open))

        if self.auto_load:
            asyncio.get_running_loop().call_soon(self._emit_load, handle.id, LoadState.LOADING)
        return handle

    async def inject_code(self, handle: SandboxHandle, code: str, visibility: VisibilityLevel) -> None:
        if handle.id not in self._open:
            raise SandboxClosedError(handle.id)

        attempt = self._inject_attempts.get(handle.id, 0) + 1
        self._inject_attempts[handle.id] = attempt
        if attempt <= self.injection_failures:
            raise InjectionError(f"Content not ready in {handle.id} (attempt {attempt})")

        self.injections.append((handle.id, visibility, code))
        if not self.auto_ready:
            return

        loop = asyncio.get_running_loop()
        if visibility == VisibilityLevel.NETWORK:
            parse_network_rule(code)
            loop.call_soon(self._ack, handle.id, HookLayer.NETWORK)
        elif PAGE_HOOK_MARKER in code:
            loop.call_soon(self._ack, handle.id, HookLayer.PAGE)

    async def close_sandbox(self, handle: SandboxHandle) -> None:
        self.close_calls[handle.id] = self.close_calls.get(handle.id, 0) + 1
        if handle.id not in self._open:
            raise SandboxClosedError(handle.id)
        self._forget(handle.id)
        self.events.append(("close", handle.id))

    # === Test controls ===

    @property
    def open_sandboxes(self) -> list[str]:
        return list(self._open)

    def emit(self, sandbox_id: str, message: dict[str, Any]) -> None:
        """Deliver a channel message as if a hook sent it."""
        if self._listener is not None and sandbox_id in self._open:
            self._listener.on_message(sandbox_id, message)

    def signal_load(self, sandbox_id: str, state: LoadState = LoadState.LOADING) -> None:
        self._emit_load(sandbox_id, state)

    def remove(self, sandbox_id: str) -> None:
        """Close a sandbox from outside the orchestrator."""
        if sandbox_id not in self._open:
            return
        self._forget(sandbox_id)
        self.events.append(("removed", sandbox_id))
        if self._listener is not None:
            self._listener.on_removed(sandbox_id)

    # === Private Helpers ===

    def _forget(self, sandbox_id: str) -> None:
        self._open.pop(sandbox_id, None)
        self._ready.pop(sandbox_id, None)
        task = self._replay_tasks.pop(sandbox_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _emit_load(self, sandbox_id: str, state: LoadState) -> None:
        if self._listener is not None and sandbox_id in self._open:
            self._listener.on_load_state_changed(sandbox_id, state)

    def _ack(self, sandbox_id: str, layer: HookLayer) -> None:
        ready = self._ready.get(sandbox_id)
        if ready is None:
            return
        ready.add(layer.value)
        self.emit(sandbox_id, hook_ready(layer))
        if len(ready) == 2 and sandbox_id not in self._replay_tasks:
            handle = self._open[sandbox_id]
            script = self.messages(handle) if callable(self.messages) else self.messages
            self._replay_tasks[sandbox_id] = asyncio.get_running_loop().create_task(
                self._replay(sandbox_id, copy.deepcopy(script))
            )

    async def _replay(self, sandbox_id: str, script: list[dict[str, Any]]) -> None:
        for message in script:
            await asyncio.sleep(self.replay_interval)
            self.emit(sandbox_id, message)
