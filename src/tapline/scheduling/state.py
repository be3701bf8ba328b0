"""Owned orchestrator state: schedule claims and the worker-context registry.

Per schedule id the claim walks ``IDLE → CLAIMED → FIRING → IDLE``; a
schedule cannot be claimed again until it is released. The registry maps
sandbox id to the live ``WorkerContext``. Both live behind one lock so the
state stays consistent even if a platform callback arrives off-loop.

The claims are process-local. A crash mid-firing loses them, and startup
reconciliation finalizes the stranded ExecutionRecord instead.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tapline.sandbox.worker import WorkerContext


class ClaimState(str, Enum):
    CLAIMED = "claimed"
    FIRING = "firing"


class OrchestratorState:
    """Claimed-schedule set plus worker-context registry, guarded by one mutex.

    Example:
        >>> state = OrchestratorState()
        >>> state.try_claim("s1")
        True
        >>> state.try_claim("s1")
        False
        >>> state.mark_firing("s1")
        >>> state.release("s1")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claims: dict[str, ClaimState] = {}
        self._contexts: dict[str, WorkerContext] = {}

    # === Claims ===

    def try_claim(self, schedule_id: str) -> bool:
        """Claim ``schedule_id`` unless it is already claimed or firing."""
        with self._lock:
            if schedule_id in self._claims:
                return False
            self._claims[schedule_id] = ClaimState.CLAIMED
            return True

    def mark_firing(self, schedule_id: str) -> None:
        with self._lock:
            if self._claims.get(schedule_id) != ClaimState.CLAIMED:
                raise RuntimeError(f"Schedule {schedule_id} is not claimed")
            self._claims[schedule_id] = ClaimState.FIRING

    def release(self, schedule_id: str) -> None:
        with self._lock:
            self._claims.pop(schedule_id, None)

    def claim_state(self, schedule_id: str) -> ClaimState | None:
        """Current claim, or None when idle."""
        with self._lock:
            return self._claims.get(schedule_id)

    def is_claimed(self, schedule_id: str) -> bool:
        with self._lock:
            return schedule_id in self._claims

    def claimed_ids(self) -> set[str]:
        with self._lock:
            return set(self._claims)

    # === Worker contexts ===

    def register_context(self, ctx: WorkerContext) -> None:
        with self._lock:
            self._contexts[ctx.sandbox_id] = ctx

    def unregister_context(self, sandbox_id: str) -> WorkerContext | None:
        with self._lock:
            return self._contexts.pop(sandbox_id, None)

    def get_context(self, sandbox_id: str) -> WorkerContext | None:
        with self._lock:
            return self._contexts.get(sandbox_id)

    def contexts_for_schedule(self, schedule_id: str) -> list[WorkerContext]:
        with self._lock:
            return [c for c in self._contexts.values() if c.schedule_id == schedule_id]

    def active_contexts(self) -> list[WorkerContext]:
        with self._lock:
            return list(self._contexts.values())
