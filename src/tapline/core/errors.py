"""
Structured error types for tapline.

Every failure the orchestrator can observe maps onto one typed error so the
dispatcher can decide, per error, whether to retry, record, or skip. Errors
carry a category, a retryable flag, and a context with the schedule, target
and sandbox ids involved, so a log line or an ExecutionRecord entry is
self-describing.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode the orchestrator reacts to
    - **Explicit Retry Semantics:** Injection races are retryable, configuration is not
    - **Rich Context:** Errors carry schedule/target/sandbox ids for logging
    - **Error Chaining:** Platform exceptions are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        TaplineError                              │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError     ConfigError          SandboxError            │
        │  (retryable=True)   (CONFIG)             (SANDBOX)               │
        │       │                  │                    │                  │
        │  InjectionError     ScheduleConfigError  SandboxCreateError      │
        │                                          SandboxClosedError      │
        │                                                                  │
        │  OrchestrationError                      StorageError            │
        │  (ORCHESTRATION)                         (STORAGE)               │
        │       │                                                          │
        │  TargetNotFoundError                                             │
        └─────────────────────────────────────────────────────────────────┘

    Failure taxonomy of a firing and where each lands:

        injection race           → InjectionError (retried, never surfaced)
        extraction miss          → not an error, payload stays None
        sandbox creation failure → SandboxCreateError → failed worker outcome
        hard timeout             → ContextStatus.TIMED_OUT (not raised)
        external teardown        → ContextEvent.REMOVED (not raised)
        invalid schedule config  → ScheduleConfigError from the clock

Examples:
    >>> error = InjectionError("content not ready")
    >>> error.retryable
    True
    >>> error.with_context(sandbox_id="sbx_1").context.sandbox_id
    'sbx_1'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, tapline

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"

    # Source/data
    SOURCE = "SOURCE"
    PARSE = "PARSE"

    # Configuration (never retryable)
    CONFIG = "CONFIG"

    # Application
    SANDBOX = "SANDBOX"
    ORCHESTRATION = "ORCHESTRATION"

    # Internal
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        schedule_id: Schedule being fired when the error occurred
        target_id: Target the schedule points at
        sandbox_id: Worker sandbox involved, if any
        execution_id: ExecutionRecord of the firing
        url: URL being loaded or intercepted
        metadata: Anything else worth logging
    """

    schedule_id: str | None = None
    target_id: str | None = None
    sandbox_id: str | None = None
    execution_id: str | None = None
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["schedule_id", "target_id", "sandbox_id", "execution_id", "url"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class TaplineError(Exception):
    """
    Base exception for all tapline errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass a message in the common case.

    Example:
        >>> try:
        ...     raise OSError("pipe closed")
        ... except OSError as e:
        ...     err = SandboxError("close failed", cause=e)
        >>> err.to_dict()["cause"]
        'pipe closed'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TaplineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SandboxCreateError("launch failed").with_context(
                schedule_id=schedule.id,
                url=target.url,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(TaplineError):
    """Temporary failure expected to clear on its own."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class InjectionError(TransientError):
    """Injected code could not run because the sandbox content was not ready.

    Injection races against page load are expected; the worker manager
    retries these on a fixed schedule and never surfaces them directly.
    """

    default_category = ErrorCategory.SANDBOX


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(TaplineError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class ScheduleConfigError(ConfigError):
    """A schedule's kind-specific parameter is missing or malformed."""

    def __init__(self, message: str, schedule_id: str | None = None):
        self.schedule_id = schedule_id
        super().__init__(message, context=ErrorContext(schedule_id=schedule_id))


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(TaplineError):
    """Dispatcher-level failure while firing a schedule."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class TargetNotFoundError(OrchestrationError):
    """Schedule references a target that no longer exists."""

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(
            f"Target not found: {target_id}",
            context=ErrorContext(target_id=target_id),
        )


# =============================================================================
# SANDBOX ERRORS
# =============================================================================


class SandboxError(TaplineError):
    """Sandbox platform failure."""

    default_category = ErrorCategory.SANDBOX
    default_retryable = False


class SandboxCreateError(SandboxError):
    """The platform could not open a sandbox for the target."""


class SandboxClosedError(SandboxError):
    """The sandbox is already gone (closed by us or externally)."""

    def __init__(self, sandbox_id: str, message: str | None = None):
        self.sandbox_id = sandbox_id
        super().__init__(
            message or f"Sandbox already closed: {sandbox_id}",
            context=ErrorContext(sandbox_id=sandbox_id),
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(TaplineError):
    """Repository read/write failure."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, TaplineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, TaplineError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.PARSE
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIG
    return ErrorCategory.UNKNOWN
