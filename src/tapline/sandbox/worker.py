"""
Worker context manager: one isolated sandbox per unit of scheduled work.

Manifesto:
    A sandbox is unreliable and timing-sensitive: it loads on its own
    schedule, rejects injected code until its content is ready, and can be
    closed from outside at any moment. The manager models each context as
    an explicit status enum moved only by ``transition(status, event)``,
    drives it with two timers (observation window, hard timeout) and a
    retried injection task, and guarantees a single idempotent teardown.

Architecture:
    ::

        ┌────────── status machine (pure) ──────────────────────────────┐
        │                                                               │
        │  LOADING ──LOAD_STARTED──► INJECTING ──HOOKS_READY──► READY   │
        │                                │                        │     │
        │                                └──EXCHANGE_CAPTURED─────┤     │
        │                                                         ▼     │
        │                                                     TRACKING  │
        │                                                         │     │
        │  READY/TRACKING ──OBSERVATION_ELAPSED──► COMPLETED ◄────┘     │
        │  any live ──TIMEOUT──► TIMED_OUT                              │
        │  any live ──FAILED───► ERROR                                  │
        │  TRACKING ──REMOVED──► COMPLETED, other live ──REMOVED──► ERROR│
        └───────────────────────────────────────────────────────────────┘

        run_context()
          ├── platform.create_sandbox(url)       SandboxCreateError → failed outcome
          ├── state.register_context(ctx)
          ├── call_later(timeout)     → TIMEOUT
          ├── on LOADING signal: inject settings + page hook + network rule
          │     RetryContext(StepBackoff(0s, 2s, 5s)), retried while is_retryable
          ├── on READY or TRACKING: call_later(observation) → OBSERVATION_ELAPSED
          │     (fires ahead of the hard timeout when readiness comes late)
          ├── await terminal status
          └── teardown (once): cancel timers/task, discard pending,
                               unregister, close_sandbox (tolerate closed)

Tags:
    sandbox, worker, state-machine, timeout, retry, teardown

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from tapline.core.errors import (
    SandboxClosedError,
    SandboxCreateError,
    SandboxError,
    categorize_error,
    is_retryable,
)
from tapline.core.logging import get_logger
from tapline.core.models import CapturedExchange, Schedule, Target
from tapline.core.retry import RetryContext, StepBackoff
from tapline.core.settings import TaplineSettings, get_settings
from tapline.interception.bridge import InterceptionBridge
from tapline.interception.events import ExchangeEvent, HookLayer, MessageType, message_type
from tapline.interception.hooks import (
    PAGE_HOOK_SCRIPT,
    HookConfig,
    render_network_rule,
    render_settings_script,
)

from .protocol import LoadState, SandboxHandle, SandboxPlatform, VisibilityLevel

if TYPE_CHECKING:
    from tapline.scheduling.state import OrchestratorState

logger = get_logger(__name__)

# Observation ends at least this long before the hard timeout.
_DEADLINE_MARGIN_SECONDS = 0.05


# =============================================================================
# STATUS MACHINE
# =============================================================================


class ContextStatus(str, Enum):
    LOADING = "loading"
    INJECTING = "injecting"
    READY = "ready"
    TRACKING = "tracking"
    COMPLETED = "completed"
    ERROR = "error"
    TIMED_OUT = "timed_out"


class ContextEvent(str, Enum):
    LOAD_STARTED = "load_started"
    HOOKS_READY = "hooks_ready"
    EXCHANGE_CAPTURED = "exchange_captured"
    OBSERVATION_ELAPSED = "observation_elapsed"
    TIMEOUT = "timeout"
    FAILED = "failed"
    REMOVED = "removed"


TERMINAL_STATUSES = frozenset({ContextStatus.COMPLETED, ContextStatus.ERROR, ContextStatus.TIMED_OUT})

_TRANSITIONS: dict[tuple[ContextStatus, ContextEvent], ContextStatus] = {
    (ContextStatus.LOADING, ContextEvent.LOAD_STARTED): ContextStatus.INJECTING,
    (ContextStatus.INJECTING, ContextEvent.HOOKS_READY): ContextStatus.READY,
    (ContextStatus.INJECTING, ContextEvent.EXCHANGE_CAPTURED): ContextStatus.TRACKING,
    (ContextStatus.READY, ContextEvent.EXCHANGE_CAPTURED): ContextStatus.TRACKING,
    (ContextStatus.READY, ContextEvent.OBSERVATION_ELAPSED): ContextStatus.COMPLETED,
    (ContextStatus.TRACKING, ContextEvent.OBSERVATION_ELAPSED): ContextStatus.COMPLETED,
}


def transition(status: ContextStatus, event: ContextEvent) -> ContextStatus:
    """Next status for ``event``; events that do not apply leave it unchanged.

    Example:
        >>> transition(ContextStatus.LOADING, ContextEvent.LOAD_STARTED)
        <ContextStatus.INJECTING: 'injecting'>
        >>> transition(ContextStatus.COMPLETED, ContextEvent.TIMEOUT)
        <ContextStatus.COMPLETED: 'completed'>
    """
    if status in TERMINAL_STATUSES:
        return status
    if event == ContextEvent.TIMEOUT:
        return ContextStatus.TIMED_OUT
    if event == ContextEvent.FAILED:
        return ContextStatus.ERROR
    if event == ContextEvent.REMOVED:
        return ContextStatus.COMPLETED if status == ContextStatus.TRACKING else ContextStatus.ERROR
    return _TRANSITIONS.get((status, event), status)


# =============================================================================
# RUNTIME CONTEXT + OUTCOME
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class WorkerContext:
    """Runtime-only state of one sandbox. Never persisted."""

    handle: SandboxHandle
    schedule_id: str
    target: Target
    index: int = 0
    status: ContextStatus = ContextStatus.LOADING
    started_at: datetime = field(default_factory=_utcnow)
    last_heartbeat: datetime | None = None
    exchanges: list[CapturedExchange] = field(default_factory=list)
    force_close_timer: asyncio.TimerHandle | None = None
    deadline: float | None = None
    observation_timer: asyncio.TimerHandle | None = None
    injection_task: asyncio.Task | None = None
    ready_layers: set[str] = field(default_factory=set)
    error: str | None = None
    removed_externally: bool = False
    torn_down: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def sandbox_id(self) -> str:
        return self.handle.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_stalled(self, now: datetime, window_seconds: float) -> bool:
        """No heartbeat for ``window_seconds``. Reporting only; nothing closes on it."""
        if self.is_terminal:
            return False
        reference = self.last_heartbeat or self.started_at
        return (now - reference).total_seconds() > window_seconds

    def to_dict(self, now: datetime | None = None, stall_after: float = 30.0) -> dict[str, Any]:
        now = now or _utcnow()
        return {
            "sandbox_id": self.sandbox_id,
            "schedule_id": self.schedule_id,
            "target_id": self.target.id,
            "index": self.index,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "exchanges": len(self.exchanges),
            "ready_layers": sorted(self.ready_layers),
            "stalled": self.is_stalled(now, stall_after),
        }


@dataclass
class WorkerOutcome:
    """What one worker context contributes to its ExecutionRecord."""

    index: int
    sandbox_id: str | None
    status: ContextStatus
    exchanges: list[CapturedExchange] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == ContextStatus.COMPLETED or len(self.exchanges) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "sandbox_id": self.sandbox_id,
            "status": self.status.value,
            "success": self.success,
            "exchanges": len(self.exchanges),
            "error": self.error,
        }


# =============================================================================
# MANAGER
# =============================================================================


_BOTH_LAYERS = frozenset({HookLayer.NETWORK.value, HookLayer.PAGE.value})
_OBSERVING = frozenset({ContextStatus.READY, ContextStatus.TRACKING})


class WorkerContextManager:
    """Creates, instruments, watches and tears down worker contexts.

    Also the platform's ``SandboxListener``: lifecycle signals and channel
    messages for every sandbox arrive here and are routed to the owning
    context through the shared ``OrchestratorState`` registry.

    Example:
        >>> manager = WorkerContextManager(platform, bridge, state, settings)
        >>> outcome = await manager.run_context(target, schedule, index=0)
        >>> outcome.success, outcome.status
    """

    def __init__(
        self,
        platform: SandboxPlatform,
        bridge: InterceptionBridge,
        state: OrchestratorState,
        settings: TaplineSettings | None = None,
    ) -> None:
        self.platform = platform
        self.bridge = bridge
        self.state = state
        self.settings = settings or get_settings()
        platform.bind(self)

    # === Public API ===

    async def run_context(self, target: Target, schedule: Schedule, index: int = 0) -> WorkerOutcome:
        """Run one worker context to a terminal status and tear it down.

        Never raises for sandbox failures; they come back as a failed outcome.
        """
        try:
            handle = await self.platform.create_sandbox(target.url)
        except SandboxCreateError as e:
            logger.warning("context.create_failed", index=index, url=target.url, error=e.message)
            return WorkerOutcome(index=index, sandbox_id=None, status=ContextStatus.ERROR, error=str(e))
        except Exception as e:
            err = SandboxCreateError(f"Sandbox creation failed: {e}", cause=e).with_context(
                schedule_id=schedule.id, url=target.url
            )
            logger.warning("context.create_failed", index=index, url=target.url, error=err.message)
            return WorkerOutcome(index=index, sandbox_id=None, status=ContextStatus.ERROR, error=str(err))

        ctx = WorkerContext(handle=handle, schedule_id=schedule.id, target=target, index=index)
        self.state.register_context(ctx)

        loop = asyncio.get_running_loop()
        ctx.deadline = loop.time() + self.settings.context_timeout_seconds
        ctx.force_close_timer = loop.call_later(
            self.settings.context_timeout_seconds, self._on_timeout, ctx.sandbox_id
        )
        logger.info("context.created", sandbox_id=ctx.sandbox_id, index=index, url=target.url)

        try:
            await ctx.done.wait()
        finally:
            if not ctx.is_terminal:
                ctx.error = ctx.error or "Context cancelled"
                self._apply(ctx, ContextEvent.FAILED)
            await self._teardown(ctx)

        return WorkerOutcome(
            index=index,
            sandbox_id=ctx.sandbox_id,
            status=ctx.status,
            exchanges=list(ctx.exchanges),
            error=ctx.error,
        )

    async def close_schedule_contexts(self, schedule_id: str) -> int:
        """Force-teardown every live context of a schedule. Returns how many."""
        contexts = self.state.contexts_for_schedule(schedule_id)
        for ctx in contexts:
            if not ctx.is_terminal:
                ctx.error = ctx.error or "Closed on request"
                self._apply(ctx, ContextEvent.REMOVED)
            await self._teardown(ctx)
        if contexts:
            logger.info("context.closed_for_schedule", schedule_id=schedule_id, count=len(contexts))
        return len(contexts)

    def snapshot(self) -> list[dict[str, Any]]:
        """Status of every live context, including stall detection."""
        now = _utcnow()
        return [
            ctx.to_dict(now=now, stall_after=self.settings.stall_after_seconds)
            for ctx in self.state.active_contexts()
        ]

    # === SandboxListener ===

    def on_load_state_changed(self, sandbox_id: str, state: LoadState) -> None:
        ctx = self.state.get_context(sandbox_id)
        if ctx is None or ctx.is_terminal:
            return

        if ctx.status == ContextStatus.LOADING:
            self._apply(ctx, ContextEvent.LOAD_STARTED)

        if ctx.status == ContextStatus.INJECTING and (
            ctx.injection_task is None or ctx.injection_task.done()
        ):
            logger.debug("context.load_state", sandbox_id=sandbox_id, state=state.value)
            ctx.injection_task = asyncio.get_running_loop().create_task(self._inject(ctx))

    def on_removed(self, sandbox_id: str) -> None:
        ctx = self.state.get_context(sandbox_id)
        if ctx is None:
            return
        ctx.removed_externally = True
        if not ctx.is_terminal:
            logger.warning(
                "context.removed_externally",
                sandbox_id=sandbox_id,
                status=ctx.status.value,
                exchanges=len(ctx.exchanges),
            )
            if ctx.status != ContextStatus.TRACKING:
                ctx.error = ctx.error or "Sandbox closed externally"
            self._apply(ctx, ContextEvent.REMOVED)

    def on_message(self, sandbox_id: str, message: dict[str, Any]) -> None:
        ctx = self.state.get_context(sandbox_id)
        if ctx is None or ctx.torn_down:
            return

        try:
            kind = message_type(message)
        except ValueError as e:
            logger.warning("channel.malformed", sandbox_id=sandbox_id, error=str(e))
            return

        if kind == MessageType.HOOK_READY:
            self._on_hook_ready(ctx, message.get("layer"))
        elif kind == MessageType.HEARTBEAT:
            ctx.last_heartbeat = _utcnow()
        else:
            self._on_exchange(ctx, message)

    # === Private Helpers ===

    def _apply(self, ctx: WorkerContext, event: ContextEvent) -> ContextStatus:
        previous = ctx.status
        ctx.status = transition(previous, event)
        if ctx.status != previous:
            logger.info(
                "context.status",
                sandbox_id=ctx.sandbox_id,
                from_status=previous.value,
                to_status=ctx.status.value,
                trigger=event.value,
            )
            if ctx.is_terminal:
                ctx.done.set()
            elif ctx.status in _OBSERVING and ctx.observation_timer is None:
                self._arm_observation(ctx)
        return ctx.status

    def _arm_observation(self, ctx: WorkerContext) -> None:
        """Start the observation window, clipped to the remaining timeout budget."""
        loop = asyncio.get_running_loop()
        delay = self.settings.observation_seconds
        if ctx.deadline is not None:
            remaining = ctx.deadline - loop.time() - _DEADLINE_MARGIN_SECONDS
            delay = min(delay, max(0.0, remaining))
        ctx.observation_timer = loop.call_later(delay, self._on_observation_elapsed, ctx.sandbox_id)

    def _on_hook_ready(self, ctx: WorkerContext, layer: Any) -> None:
        if layer not in _BOTH_LAYERS:
            logger.warning("channel.unknown_layer", sandbox_id=ctx.sandbox_id, layer=layer)
            return
        ctx.ready_layers.add(layer)
        ctx.last_heartbeat = _utcnow()
        if _BOTH_LAYERS <= ctx.ready_layers:
            self._apply(ctx, ContextEvent.HOOKS_READY)

    def _on_exchange(self, ctx: WorkerContext, message: dict[str, Any]) -> None:
        try:
            event = ExchangeEvent.from_message(message)
        except ValueError as e:
            logger.warning("channel.malformed", sandbox_id=ctx.sandbox_id, error=str(e))
            return

        try:
            exchange = self.bridge.handle_event(ctx.schedule_id, ctx.sandbox_id, event)
        except Exception as e:
            logger.exception("exchange.persist_failed", sandbox_id=ctx.sandbox_id, error=str(e))
            return

        if exchange is not None:
            ctx.exchanges.append(exchange)
            ctx.last_heartbeat = _utcnow()
            self._apply(ctx, ContextEvent.EXCHANGE_CAPTURED)

    def _on_timeout(self, sandbox_id: str) -> None:
        ctx = self.state.get_context(sandbox_id)
        if ctx is None or ctx.is_terminal:
            return
        ctx.error = ctx.error or f"Timed out after {self.settings.context_timeout_seconds}s"
        logger.warning(
            "context.timeout",
            sandbox_id=sandbox_id,
            status=ctx.status.value,
            exchanges=len(ctx.exchanges),
        )
        self._apply(ctx, ContextEvent.TIMEOUT)

    def _on_observation_elapsed(self, sandbox_id: str) -> None:
        ctx = self.state.get_context(sandbox_id)
        if ctx is None or ctx.is_terminal:
            return
        if self._apply(ctx, ContextEvent.OBSERVATION_ELAPSED) != ContextStatus.COMPLETED:
            logger.debug("context.observation_not_ready", sandbox_id=sandbox_id, status=ctx.status.value)

    def _hook_config(self, ctx: WorkerContext) -> HookConfig:
        return HookConfig(
            schedule_id=ctx.schedule_id,
            target_id=ctx.target.id,
            sandbox_id=ctx.sandbox_id,
            matcher=self.bridge.matcher,
            heartbeat_interval_seconds=self.settings.heartbeat_interval_seconds,
        )

    async def _inject(self, ctx: WorkerContext) -> None:
        config = self._hook_config(ctx)

        def _log_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.info(
                "context.inject_retry",
                sandbox_id=ctx.sandbox_id,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        retry = RetryContext(StepBackoff(tuple(self.settings.injection_delays)), on_retry=_log_retry)
        try:
            await retry.run_async(self._inject_once, ctx, config)
        except Exception as e:
            category = categorize_error(e).value
            if is_retryable(e):
                ctx.error = f"Injection failed after {retry.attempts} attempts: {e}"
                logger.warning(
                    "context.inject_failed",
                    sandbox_id=ctx.sandbox_id,
                    attempts=retry.attempts,
                    category=category,
                )
            elif isinstance(e, SandboxError):
                ctx.error = ctx.error or str(e)
                logger.warning(
                    "context.inject_aborted", sandbox_id=ctx.sandbox_id, error=str(e), category=category
                )
            else:
                ctx.error = ctx.error or f"Injection error: {e}"
                logger.exception("context.inject_error", sandbox_id=ctx.sandbox_id, category=category)
            self._apply(ctx, ContextEvent.FAILED)

    async def _inject_once(self, ctx: WorkerContext, config: HookConfig) -> None:
        if ctx.is_terminal:
            return
        await self.platform.inject_code(ctx.handle, render_settings_script(config), VisibilityLevel.PAGE)
        await self.platform.inject_code(ctx.handle, PAGE_HOOK_SCRIPT, VisibilityLevel.PAGE)
        await self.platform.inject_code(ctx.handle, render_network_rule(config), VisibilityLevel.NETWORK)
        logger.debug("context.injected", sandbox_id=ctx.sandbox_id)

    async def _teardown(self, ctx: WorkerContext) -> None:
        if ctx.torn_down:
            return
        ctx.torn_down = True

        for timer in (ctx.force_close_timer, ctx.observation_timer):
            if timer is not None:
                timer.cancel()
        task = ctx.injection_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        discarded = self.bridge.discard_pending(ctx.sandbox_id)
        self.state.unregister_context(ctx.sandbox_id)

        if not ctx.removed_externally:
            try:
                await self.platform.close_sandbox(ctx.handle)
            except SandboxClosedError:
                logger.debug("context.already_closed", sandbox_id=ctx.sandbox_id)
            except Exception as e:
                logger.warning("context.close_failed", sandbox_id=ctx.sandbox_id, error=str(e))

        logger.info(
            "context.torn_down",
            sandbox_id=ctx.sandbox_id,
            status=ctx.status.value,
            exchanges=len(ctx.exchanges),
            discarded=discarded,
        )
