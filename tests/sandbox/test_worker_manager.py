"""Tests for WorkerContextManager driven by the memory platform."""

import asyncio

import pytest

from tapline.core.errors import SandboxClosedError
from tapline.sandbox.memory import MemorySandboxPlatform
from tapline.sandbox.protocol import VisibilityLevel
from tapline.sandbox.worker import ContextStatus


class TestRunContextHappyPath:
    """LOADING → INJECTING → READY → TRACKING → COMPLETED."""

    @pytest.mark.asyncio
    async def test_capture_and_complete(self, make_manager, exchange_messages, target, schedule, store, state):
        platform = MemorySandboxPlatform(messages=exchange_messages())
        manager = make_manager(platform)

        outcome = await manager.run_context(target, schedule, index=0)

        assert outcome.status == ContextStatus.COMPLETED
        assert outcome.success is True
        assert outcome.sandbox_id == "mem-1"
        assert outcome.error is None
        assert len(outcome.exchanges) == 1
        assert outcome.exchanges[0].extracted[0]["modelid"] == 1
        assert len(store.list_captured_exchanges(schedule.id)) == 1

        assert platform.events == [("create", "mem-1"), ("close", "mem-1")]
        assert platform.close_calls == {"mem-1": 1}
        assert state.active_contexts() == []

    @pytest.mark.asyncio
    async def test_injection_order(self, make_manager, target, schedule):
        platform = MemorySandboxPlatform()
        manager = make_manager(platform)

        await manager.run_context(target, schedule)

        levels = [level for _, level, _ in platform.injections]
        assert levels == [VisibilityLevel.PAGE, VisibilityLevel.PAGE, VisibilityLevel.NETWORK]
        settings_script = platform.injections[0][2]
        assert "__TAPLINE_SETTINGS__" in settings_script
        assert schedule.id in settings_script

    @pytest.mark.asyncio
    async def test_ready_without_capture_completes(self, make_manager, target, schedule):
        outcome = await make_manager(MemorySandboxPlatform()).run_context(target, schedule)
        assert outcome.status == ContextStatus.COMPLETED
        assert outcome.exchanges == []
        assert outcome.success is True


class TestObservationWindow:
    """The observation window starts once hooks are ready."""

    @pytest.mark.asyncio
    async def test_late_readiness_still_completes(self, make_manager, target, schedule, state, wait_until):
        """Hooks ready after observation_seconds has passed since creation."""
        platform = MemorySandboxPlatform(auto_load=False)
        manager = make_manager(platform, observation_seconds=0.1, context_timeout_seconds=0.6)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(lambda: state.get_context("mem-1") is not None)
        await asyncio.sleep(0.2)
        platform.signal_load("mem-1")
        outcome = await task

        assert outcome.status == ContextStatus.COMPLETED
        assert outcome.success is True
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_window_clipped_to_timeout_budget(self, make_manager, target, schedule, state, wait_until):
        """Readiness close to the deadline completes instead of timing out."""
        platform = MemorySandboxPlatform(auto_load=False)
        manager = make_manager(platform, observation_seconds=0.4, context_timeout_seconds=0.5)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(lambda: state.get_context("mem-1") is not None)
        await asyncio.sleep(0.25)
        platform.signal_load("mem-1")
        outcome = await task

        assert outcome.status == ContextStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_window_before_ready(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(
            lambda: (ctx := state.get_context("mem-1")) is not None and ctx.status == ContextStatus.INJECTING
        )
        assert state.get_context("mem-1").observation_timer is None

        await manager.close_schedule_contexts(schedule.id)
        await task


class TestRunContextFailures:
    """Creation failures, timeouts, exhausted injection."""

    @pytest.mark.asyncio
    async def test_create_failure(self, make_manager, target, schedule, state):
        platform = MemorySandboxPlatform(fail_create=True)

        outcome = await make_manager(platform).run_context(target, schedule, index=2)

        assert outcome.status == ContextStatus.ERROR
        assert outcome.sandbox_id is None
        assert outcome.index == 2
        assert "Could not open sandbox" in outcome.error
        assert outcome.success is False
        assert platform.close_calls == {}

    @pytest.mark.asyncio
    async def test_timeout_closes_exactly_once(self, make_manager, target, schedule):
        """A context whose hooks never report ready times out and is closed once."""
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform, context_timeout_seconds=0.3, observation_seconds=0.1)

        outcome = await manager.run_context(target, schedule)

        assert outcome.status == ContextStatus.TIMED_OUT
        assert outcome.success is False
        assert "Timed out" in outcome.error
        assert platform.close_calls == {"mem-1": 1}

    @pytest.mark.asyncio
    async def test_never_loads_times_out(self, make_manager, target, schedule):
        platform = MemorySandboxPlatform(auto_load=False)
        manager = make_manager(platform, context_timeout_seconds=0.2, observation_seconds=0.05)

        outcome = await manager.run_context(target, schedule)

        assert outcome.status == ContextStatus.TIMED_OUT
        assert platform.injections == []

    @pytest.mark.asyncio
    async def test_injection_retried_until_ready(self, make_manager, target, schedule):
        platform = MemorySandboxPlatform(injection_failures=2)

        outcome = await make_manager(platform).run_context(target, schedule)

        assert outcome.status == ContextStatus.COMPLETED
        assert len(platform.injections) == 3

    @pytest.mark.asyncio
    async def test_injection_exhausted(self, make_manager, target, schedule):
        platform = MemorySandboxPlatform(injection_failures=10)

        outcome = await make_manager(platform).run_context(target, schedule)

        assert outcome.status == ContextStatus.ERROR
        assert "Injection failed after 3 attempts" in outcome.error
        assert platform.injections == []
        assert platform.close_calls == {"mem-1": 1}

    @pytest.mark.asyncio
    async def test_non_retryable_injection_error_not_retried(self, make_manager, target, schedule):
        class BrokenRulePlatform(MemorySandboxPlatform):
            attempts = 0

            async def inject_code(self, handle, code, visibility):
                self.attempts += 1
                raise RuntimeError("renderer crashed")

        platform = BrokenRulePlatform()
        outcome = await make_manager(platform).run_context(target, schedule)

        assert outcome.status == ContextStatus.ERROR
        assert outcome.error == "Injection error: renderer crashed"
        assert platform.attempts == 1
        assert platform.close_calls == {"mem-1": 1}

    @pytest.mark.asyncio
    async def test_cancelled_run_still_tears_down(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(lambda: state.active_contexts())
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert platform.close_calls == {"mem-1": 1}
        assert state.active_contexts() == []


class TestExternalRemoval:
    """Sandbox closed from outside."""

    @pytest.mark.asyncio
    async def test_removed_while_tracking_completes(
        self, make_manager, exchange_messages, target, schedule, state, wait_until
    ):
        platform = MemorySandboxPlatform(messages=exchange_messages())
        manager = make_manager(platform, observation_seconds=0.5)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(
            lambda: (ctx := state.get_context("mem-1")) is not None and ctx.status == ContextStatus.TRACKING
        )
        platform.remove("mem-1")
        outcome = await task

        assert outcome.status == ContextStatus.COMPLETED
        assert len(outcome.exchanges) == 1
        assert platform.close_calls == {}

    @pytest.mark.asyncio
    async def test_removed_before_capture_errors(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform()
        manager = make_manager(platform, observation_seconds=0.5)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(
            lambda: (ctx := state.get_context("mem-1")) is not None and ctx.status == ContextStatus.READY
        )
        platform.remove("mem-1")
        outcome = await task

        assert outcome.status == ContextStatus.ERROR
        assert outcome.error == "Sandbox closed externally"
        assert platform.close_calls == {}


class TestChannelHandling:
    """on_message routing."""

    @pytest.mark.asyncio
    async def test_heartbeat_and_malformed_messages(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(lambda: state.get_context("mem-1") is not None)
        ctx = state.get_context("mem-1")

        platform.emit("mem-1", {"type": "BOGUS"})
        platform.emit("mem-1", {"type": "EXCHANGE_COMPLETED", "layer": "page"})
        platform.emit("mem-1", {"type": "HOOK_READY", "layer": "dom"})
        assert ctx.last_heartbeat is None
        assert ctx.status in (ContextStatus.LOADING, ContextStatus.INJECTING)

        platform.emit("mem-1", {"type": "HEARTBEAT", "layer": "page", "timestamp": 1})
        assert ctx.last_heartbeat is not None

        await manager.close_schedule_contexts(schedule.id)
        await task

    @pytest.mark.asyncio
    async def test_one_layer_is_not_ready(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform)

        task = asyncio.create_task(manager.run_context(target, schedule))
        await wait_until(
            lambda: (ctx := state.get_context("mem-1")) is not None and ctx.status == ContextStatus.INJECTING
        )
        ctx = state.get_context("mem-1")

        platform.emit("mem-1", {"type": "HOOK_READY", "layer": "page"})
        assert ctx.status == ContextStatus.INJECTING
        platform.emit("mem-1", {"type": "HOOK_READY", "layer": "network"})
        assert ctx.status == ContextStatus.READY

        outcome = await task
        assert outcome.status == ContextStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_snapshot(self, make_manager, target, schedule, state, wait_until):
        platform = MemorySandboxPlatform(auto_ready=False)
        manager = make_manager(platform)

        task = asyncio.create_task(manager.run_context(target, schedule, index=4))
        await wait_until(lambda: state.get_context("mem-1") is not None)

        [entry] = manager.snapshot()
        assert entry["sandbox_id"] == "mem-1"
        assert entry["schedule_id"] == schedule.id
        assert entry["index"] == 4
        assert entry["stalled"] is False

        assert await manager.close_schedule_contexts(schedule.id) == 1
        outcome = await task
        assert outcome.error == "Closed on request"
        assert manager.snapshot() == []


class TestTeardown:
    """Teardown tolerates an already-closed sandbox."""

    @pytest.mark.asyncio
    async def test_close_already_gone(self, make_manager, target, schedule):
        class VanishingPlatform(MemorySandboxPlatform):
            async def close_sandbox(self, handle):
                self.close_calls[handle.id] = self.close_calls.get(handle.id, 0) + 1
                raise SandboxClosedError(handle.id)

        platform = VanishingPlatform()
        outcome = await make_manager(platform).run_context(target, schedule)

        assert outcome.status == ContextStatus.COMPLETED
        assert platform.close_calls == {"mem-1": 1}
