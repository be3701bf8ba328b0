"""tapline.sandbox -- sandbox platforms and the worker context manager.

Architecture::

    protocol.py             SandboxPlatform / SandboxListener contract
    worker.py               status machine + WorkerContextManager
    memory.py               MemorySandboxPlatform (tests, dry runs)
    playwright_platform.py  PlaywrightSandboxPlatform (headless browser)

The Playwright platform is not imported here so that tests and dry runs
do not load the browser driver.
"""

from .memory import MemorySandboxPlatform
from .protocol import LoadState, SandboxHandle, SandboxListener, SandboxPlatform, VisibilityLevel
from .worker import (
    ContextEvent,
    ContextStatus,
    WorkerContext,
    WorkerContextManager,
    WorkerOutcome,
    transition,
)

__all__ = [
    "ContextEvent",
    "ContextStatus",
    "LoadState",
    "MemorySandboxPlatform",
    "SandboxHandle",
    "SandboxListener",
    "SandboxPlatform",
    "VisibilityLevel",
    "WorkerContext",
    "WorkerContextManager",
    "WorkerOutcome",
    "transition",
]
