"""tapline.core -- foundation primitives.

Architecture::

    errors.py       Structured error hierarchy (TaplineError, TransientError)
    logging.py      structlog configuration + scoped LogContext
    settings.py     TaplineSettings (pydantic-settings, TAPLINE_ env prefix)
    retry.py        StepBackoff + RetryContext for injection attempts
    protocols.py    Connection protocol
    models.py       Target / Schedule / ExecutionRecord / CapturedExchange
    schema.py       Capture table DDL + create_tables()
    database.py     SQLite connection helper
    repository.py   CaptureStore contract + SqliteCaptureStore
"""

from .errors import (
    ErrorCategory,
    ErrorContext,
    InjectionError,
    OrchestrationError,
    SandboxClosedError,
    SandboxCreateError,
    SandboxError,
    ScheduleConfigError,
    StorageError,
    TaplineError,
    TargetNotFoundError,
    TransientError,
)
from .models import CapturedExchange, ExecutionRecord, Schedule, ScheduleKind, Target
from .repository import (
    CaptureStore,
    ExecutionRecordUpdate,
    ScheduleCreate,
    SqliteCaptureStore,
    TargetCreate,
)
from .schema import create_tables

__all__ = [
    # errors
    "ErrorCategory",
    "ErrorContext",
    "InjectionError",
    "OrchestrationError",
    "SandboxClosedError",
    "SandboxCreateError",
    "SandboxError",
    "ScheduleConfigError",
    "StorageError",
    "TaplineError",
    "TargetNotFoundError",
    "TransientError",
    # models
    "CapturedExchange",
    "ExecutionRecord",
    "Schedule",
    "ScheduleKind",
    "Target",
    # store
    "CaptureStore",
    "ExecutionRecordUpdate",
    "ScheduleCreate",
    "SqliteCaptureStore",
    "TargetCreate",
    "create_tables",
]
