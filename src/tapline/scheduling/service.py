"""Orchestrator: the scheduled interception dispatcher.

Manifesto:
    The Orchestrator combines a timing backend, the capture store, the
    owned claim/context state and the worker context manager into one
    beat-as-poller loop. A tick only decides what is due and spawns
    firings; each firing owns its claim from start to release, so one
    schedule never has two overlapping ExecutionRecords, and one broken
    schedule never stops the others.

Tags:
    tapline, scheduling, orchestrator, beat-as-poller, dispatcher

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  ORCHESTRATOR                                                                 │
│                                                                               │
│   backend ──tick()──► list_enabled_schedules()                                │
│                        │  next_run missing → compute_next_run + persist       │
│                        │  ScheduleConfigError → log, skip                     │
│                        ▼                                                      │
│                     is_due && state.try_claim  ──► spawn fire task            │
│                                                                               │
│   fire (claimed):                                                             │
│     1. create ExecutionRecord (start_time = now), mark FIRING                 │
│     2. get_target (TargetNotFoundError)                                       │
│     3. quantity == 1  → run_context directly                                  │
│        quantity  > 1  → batches of min(quantity, batch_size),                 │
│                         gather(return_exceptions=True), inter-batch delay     │
│     4. finalize record: success = any context ok OR any exchange captured     │
│     5. advance: once → disable, cron/interval → compute_next_run              │
│     6. release claim (always)                                                 │
│                                                                               │
│   start(): reconcile unfinished records as abandoned, then backend.start()    │
│   stop():  backend.stop(), then await in-flight firings                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from tapline.core.errors import ScheduleConfigError, TargetNotFoundError
from tapline.core.logging import LogContext, get_logger
from tapline.core.models import ExecutionRecord, Schedule, ScheduleKind, Target
from tapline.core.repository import CaptureStore, ExecutionRecordUpdate
from tapline.core.settings import TaplineSettings, get_settings
from tapline.sandbox.worker import ContextStatus, WorkerContextManager, WorkerOutcome

from . import clock
from .protocol import BackendHealth, SchedulerBackend
from .state import OrchestratorState

logger = get_logger(__name__)

ABANDONED_MESSAGE = "Abandoned: orchestrator stopped before this execution finished"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class OrchestratorStats:
    """Counters for the running orchestrator."""

    tick_count: int = 0
    schedules_fired: int = 0
    schedules_skipped: int = 0
    schedules_failed: int = 0
    contexts_run: int = 0
    exchanges_captured: int = 0
    records_reconciled: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "schedules_fired": self.schedules_fired,
            "schedules_skipped": self.schedules_skipped,
            "schedules_failed": self.schedules_failed,
            "contexts_run": self.contexts_run,
            "exchanges_captured": self.exchanges_captured,
            "records_reconciled": self.records_reconciled,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class OrchestratorHealth:
    """Health status for the orchestrator."""

    healthy: bool
    backend: BackendHealth | dict
    schedules_enabled: int = 0
    claimed: list[str] = field(default_factory=list)
    active_contexts: int = 0
    stalled_contexts: int = 0
    last_tick: datetime | None = None
    stats: OrchestratorStats = field(default_factory=OrchestratorStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "schedules_enabled": self.schedules_enabled,
            "claimed": list(self.claimed),
            "active_contexts": self.active_contexts,
            "stalled_contexts": self.stalled_contexts,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "stats": self.stats.to_dict(),
        }


def build_execution_summary(outcomes: list[WorkerOutcome]) -> dict[str, Any]:
    """Aggregate worker outcomes into the ExecutionRecord payload."""
    processed = len(outcomes)
    successful = sum(1 for o in outcomes if o.success)
    exchanges = [ex for o in outcomes for ex in o.exchanges]
    return {
        "processed": processed,
        "successful": successful,
        "failed": processed - successful,
        "success_rate": f"{(successful / processed * 100) if processed else 0.0:.1f}%",
        "errors": [o.error for o in outcomes if o.error],
        "captured": len(exchanges),
        "extracted": [ex.extracted for ex in exchanges if ex.extracted is not None],
        "exchanges": [ex.to_dict() for ex in exchanges],
        "contexts": [o.to_dict() for o in outcomes],
    }


class Orchestrator:
    """Scheduled interception orchestrator (beat-as-poller).

    Example:
        >>> from tapline.scheduling import create_orchestrator
        >>> from tapline.sandbox import MemorySandboxPlatform
        >>>
        >>> orchestrator = create_orchestrator(conn, MemorySandboxPlatform())
        >>> orchestrator.start()          # inside a running event loop
        >>> # ... later ...
        >>> await orchestrator.stop()
    """

    def __init__(
        self,
        backend: SchedulerBackend,
        repository: CaptureStore,
        workers: WorkerContextManager,
        state: OrchestratorState,
        settings: TaplineSettings | None = None,
        clock_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            backend: Timing backend
            repository: Capture store
            workers: Worker context manager bound to a sandbox platform
            state: Shared claim/context state (the same object the workers use)
            settings: Runtime configuration (default: ``get_settings()``)
            clock_fn: Source of "now" (default: UTC wall clock)
        """
        self.backend = backend
        self.repository = repository
        self.workers = workers
        self.state = state
        self.settings = settings or get_settings()
        self.now = clock_fn or _utcnow

        limit = self.settings.max_global_contexts
        self._global_slots = asyncio.Semaphore(limit) if limit else None
        self._firings: set[asyncio.Task] = set()
        self._stats = OrchestratorStats()
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        """Reconcile abandoned records, then start ticking.

        Must be called from inside a running event loop.
        """
        if self._running:
            logger.warning("orchestrator.already_running")
            return

        reconciled = self.reconcile()
        logger.info(
            "orchestrator.start",
            backend=self.backend.name,
            interval=self.settings.tick_interval_seconds,
            reconciled=reconciled,
        )
        self.backend.start(self.tick, self.settings.tick_interval_seconds)
        self._running = True

    async def stop(self) -> None:
        """Stop ticking and wait for in-flight firings to finish."""
        if not self._running:
            return

        logger.info("orchestrator.stopping", in_flight=len(self._firings))
        await self.backend.stop()
        if self._firings:
            await asyncio.gather(*list(self._firings), return_exceptions=True)
        self._running = False
        logger.info("orchestrator.stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def reconcile(self) -> int:
        """Finalize every unfinished ExecutionRecord as failed.

        Claims do not survive a restart, so a record without an end time
        belongs to a firing that will never finish.
        """
        count = 0
        for record in self.repository.list_unfinished_executions():
            self.repository.update_execution_record(
                record.id,
                ExecutionRecordUpdate(
                    end_time=self.now(),
                    success=False,
                    error_message=ABANDONED_MESSAGE,
                    logs=[*record.logs, ABANDONED_MESSAGE],
                ),
            )
            logger.warning(
                "execution.abandoned",
                execution_id=record.id,
                schedule_id=record.schedule_id,
            )
            count += 1
        self._stats.records_reconciled += count
        return count

    # === Tick Processing ===

    async def tick(self) -> list[asyncio.Task]:
        """One orchestrator tick: spawn a firing for each due, unclaimed schedule.

        Returns:
            The firing tasks started by this tick
        """
        self._stats.tick_count += 1
        now = self.now()
        self._stats.last_tick = now

        try:
            schedules = self.repository.list_enabled_schedules()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("tick.load_failed", error=str(e))
            return []

        tasks: list[asyncio.Task] = []
        for schedule in schedules:
            try:
                if schedule.next_run is None:
                    schedule.next_run = clock.compute_next_run(schedule, now)
                    self.repository.update_schedule_next_run(schedule.id, schedule.next_run)

                if not clock.is_due(schedule, now):
                    continue

                if not self.state.try_claim(schedule.id):
                    self._stats.schedules_skipped += 1
                    logger.debug("schedule.already_claimed", schedule_id=schedule.id)
                    continue

                tasks.append(self._spawn(schedule))
            except ScheduleConfigError as e:
                self._stats.schedules_skipped += 1
                logger.warning("schedule.invalid", schedule_id=schedule.id, error=e.message)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.exception("schedule.tick_failed", schedule_id=schedule.id, error=str(e))

        logger.info(
            "orchestrator.heartbeat",
            enabled=len(schedules),
            spawned=len(tasks),
            claimed=len(self.state.claimed_ids()),
            contexts=len(self.state.active_contexts()),
        )
        return tasks

    def _spawn(self, schedule: Schedule) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._fire_claimed(schedule), name=f"tapline-fire-{schedule.id}"
        )
        self._firings.add(task)
        task.add_done_callback(self._firings.discard)
        return task

    # === Firing ===

    async def fire(self, schedule: Schedule) -> ExecutionRecord | None:
        """Claim and fire ``schedule`` now.

        Returns:
            The finalized ExecutionRecord, or None if the schedule is
            already claimed (or the firing could not be recorded)
        """
        if not self.state.try_claim(schedule.id):
            self._stats.schedules_skipped += 1
            logger.info("firing.skipped_claimed", schedule_id=schedule.id)
            return None
        return await self._fire_claimed(schedule)

    async def _fire_claimed(self, schedule: Schedule) -> ExecutionRecord | None:
        try:
            return await self._execute(schedule)
        except Exception as e:
            self._stats.schedules_failed += 1
            self._stats.last_error = str(e)
            logger.exception("firing.crashed", schedule_id=schedule.id, error=str(e))
            return None
        finally:
            self.state.release(schedule.id)

    async def _execute(self, schedule: Schedule) -> ExecutionRecord:
        record = ExecutionRecord(
            id=str(uuid4()),
            target_id=schedule.target_id,
            schedule_id=schedule.id,
            start_time=self.now(),
        )
        self.repository.create_execution_record(record)
        self.state.mark_firing(schedule.id)
        self._stats.schedules_fired += 1

        async with LogContext(schedule_id=schedule.id, execution_id=record.id):
            logger.info("firing.start", quantity=schedule.quantity, kind=schedule.kind.value)
            try:
                target = self.repository.get_target(schedule.target_id)
                if target is None:
                    raise TargetNotFoundError(schedule.target_id)
                outcomes = await self._run_contexts(target, schedule)
                self._finalize(record, outcomes)
            except Exception as e:
                logger.exception("firing.failed", error=str(e))
                self._finalize_failed(record, e)

            if not record.success:
                self._stats.schedules_failed += 1
            logger.info(
                "firing.complete",
                success=record.success,
                captured=(record.execution_data or {}).get("captured", 0),
            )
            self._advance(schedule)

        return record

    async def _run_contexts(self, target: Target, schedule: Schedule) -> list[WorkerOutcome]:
        quantity = max(1, schedule.quantity)
        if quantity == 1:
            return [await self._run_one(target, schedule, 0)]

        batch_size = min(quantity, self.settings.batch_size)
        batches = [
            list(range(start, min(start + batch_size, quantity)))
            for start in range(0, quantity, batch_size)
        ]

        outcomes: list[WorkerOutcome] = []
        for number, batch in enumerate(batches, start=1):
            if number > 1 and self.settings.inter_batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.inter_batch_delay_seconds)

            logger.info("firing.batch", batch=number, batches=len(batches), size=len(batch))
            results = await asyncio.gather(
                *(self._run_one(target, schedule, index) for index in batch),
                return_exceptions=True,
            )
            for index, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("context.crashed", index=index, error=repr(result))
                    outcomes.append(
                        WorkerOutcome(
                            index=index,
                            sandbox_id=None,
                            status=ContextStatus.ERROR,
                            error=f"{type(result).__name__}: {result}",
                        )
                    )
                else:
                    outcomes.append(result)
        return outcomes

    async def _run_one(self, target: Target, schedule: Schedule, index: int) -> WorkerOutcome:
        self._stats.contexts_run += 1
        if self._global_slots is None:
            return await self.workers.run_context(target, schedule, index)
        async with self._global_slots:
            return await self.workers.run_context(target, schedule, index)

    def _finalize(self, record: ExecutionRecord, outcomes: list[WorkerOutcome]) -> None:
        summary = build_execution_summary(outcomes)
        self._stats.exchanges_captured += summary["captured"]

        record.end_time = self.now()
        record.success = summary["successful"] > 0 or summary["captured"] > 0
        record.execution_data = summary
        record.logs = [
            f"Context {o.index + 1} ({o.sandbox_id or 'not created'}): "
            f"{o.status.value}, {len(o.exchanges)} exchange(s)" + (f", error: {o.error}" if o.error else "")
            for o in outcomes
        ]
        record.logs.append(
            f"Processed {summary['processed']} context(s): {summary['successful']} succeeded, "
            f"{summary['failed']} failed ({summary['success_rate']}); {summary['captured']} captured"
        )
        if not record.success:
            record.error_message = "; ".join(summary["errors"]) or "No context succeeded"

        self.repository.update_execution_record(
            record.id,
            ExecutionRecordUpdate(
                end_time=record.end_time,
                success=record.success,
                error_message=record.error_message,
                logs=record.logs,
                execution_data=record.execution_data,
            ),
        )

    def _finalize_failed(self, record: ExecutionRecord, error: Exception) -> None:
        record.end_time = self.now()
        record.success = False
        record.error_message = str(error)
        record.logs = [*record.logs, f"Firing failed: {error}"]
        self.repository.update_execution_record(
            record.id,
            ExecutionRecordUpdate(
                end_time=record.end_time,
                success=False,
                error_message=record.error_message,
                logs=record.logs,
            ),
        )

    def _advance(self, schedule: Schedule) -> None:
        """Move the schedule past this firing, successful or not."""
        now = self.now()
        try:
            if schedule.kind == ScheduleKind.ONCE:
                self.repository.update_schedule_next_run(schedule.id, None, last_run=now)
                self.repository.disable_schedule(schedule.id)
                logger.info("schedule.disabled_once")
                return

            next_run = clock.compute_next_run(schedule, now)
            self.repository.update_schedule_next_run(schedule.id, next_run, last_run=now)
            logger.info("schedule.next_run", next_run=next_run.isoformat())
        except ScheduleConfigError as e:
            self.repository.disable_schedule(schedule.id)
            logger.warning("schedule.disabled_invalid", error=e.message)

    # === Manual Operations ===

    def _require_schedule(self, schedule_id: str) -> Schedule:
        schedule = self.repository.get_schedule(schedule_id)
        if schedule is None:
            raise KeyError(f"Schedule not found: {schedule_id}")
        return schedule

    async def trigger(self, schedule_id: str) -> ExecutionRecord | None:
        """Fire a schedule now regardless of its due time.

        Raises:
            KeyError: If schedule not found
        """
        schedule = self._require_schedule(schedule_id)
        logger.info("schedule.triggered", schedule_id=schedule_id)
        return await self.fire(schedule)

    async def check_schedule_now(self, schedule_id: str) -> ExecutionRecord | None:
        """Fire the schedule only if it is due right now.

        Raises:
            KeyError: If schedule not found
            ScheduleConfigError: If its next run cannot be computed
        """
        schedule = self._require_schedule(schedule_id)
        now = self.now()
        if schedule.next_run is None and schedule.enabled:
            schedule.next_run = clock.compute_next_run(schedule, now)
            self.repository.update_schedule_next_run(schedule.id, schedule.next_run)
        if not clock.is_due(schedule, now):
            return None
        return await self.fire(schedule)

    async def close_schedule_contexts(self, schedule_id: str) -> int:
        """Force-teardown every live worker context of a schedule."""
        return await self.workers.close_schedule_contexts(schedule_id)

    def upcoming(self, count: int = 10) -> list[Schedule]:
        return clock.upcoming(self.repository.list_enabled_schedules(), count)

    # === Health & Stats ===

    def health(self) -> OrchestratorHealth:
        backend_health = self.backend.health()
        snapshot = self.workers.snapshot()
        return OrchestratorHealth(
            healthy=self._running and bool(backend_health.get("healthy", False)),
            backend=backend_health,
            schedules_enabled=len(self.repository.list_enabled_schedules()),
            claimed=sorted(self.state.claimed_ids()),
            active_contexts=len(snapshot),
            stalled_contexts=sum(1 for c in snapshot if c["stalled"]),
            last_tick=self._stats.last_tick,
            stats=self._stats,
        )

    def get_stats(self) -> OrchestratorStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = OrchestratorStats()
