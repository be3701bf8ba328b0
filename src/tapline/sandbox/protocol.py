"""Sandbox platform contract.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SANDBOX PLATFORM PROTOCOL                                                    │
│                                                                               │
│   WorkerContextManager ──► create_sandbox(url)        → SandboxHandle         │
│                        ──► inject_code(h, code, lvl)  NETWORK | PAGE          │
│                        ──► close_sandbox(h)           SandboxClosedError      │
│                                                       if already gone         │
│                                                                               │
│   platform ──► listener.on_load_state_changed(sandbox_id, LoadState)          │
│            ──► listener.on_removed(sandbox_id)        closed from outside     │
│            ──► listener.on_message(sandbox_id, msg)   channel message         │
│                                                                               │
│  Every platform realises two observation capabilities:                        │
│    observe_network_layer()  platform-boundary request/response events         │
│    observe_page_layer()     page-script hook relaying through a binding       │
│  and turns what they see into channel messages, so the bridge never           │
│  handles platform objects.                                                    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class VisibilityLevel(str, Enum):
    """Where injected code runs."""

    NETWORK = "network"
    PAGE = "page"


class LoadState(str, Enum):
    LOADING = "loading"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SandboxHandle:
    """Opaque reference to one isolated sandbox."""

    id: str
    url: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC), compare=False)


@runtime_checkable
class SandboxListener(Protocol):
    """Receives lifecycle and channel events from a platform."""

    def on_load_state_changed(self, sandbox_id: str, state: LoadState) -> None: ...

    def on_removed(self, sandbox_id: str) -> None: ...

    def on_message(self, sandbox_id: str, message: dict[str, Any]) -> None: ...


@runtime_checkable
class SandboxPlatform(Protocol):
    """Host that can create, instrument and close sandboxes.

    Implementations:
        - MemorySandboxPlatform: scriptable, in-process (tests, dry runs)
        - PlaywrightSandboxPlatform: one headless browser, one context per sandbox
    """

    name: str

    def bind(self, listener: SandboxListener) -> None:
        """Register the single listener for lifecycle and channel events."""
        ...

    async def create_sandbox(self, url: str) -> SandboxHandle:
        """Open a sandbox and start loading ``url`` without waiting for it.

        Raises:
            SandboxCreateError: The platform could not open a sandbox
        """
        ...

    async def inject_code(self, handle: SandboxHandle, code: str, visibility: VisibilityLevel) -> None:
        """Inject code at the given visibility level.

        Raises:
            InjectionError: Content was not ready (retryable)
            SandboxClosedError: The sandbox is gone
        """
        ...

    async def close_sandbox(self, handle: SandboxHandle) -> None:
        """Close the sandbox.

        Raises:
            SandboxClosedError: Already closed
        """
        ...
