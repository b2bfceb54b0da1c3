"""
Structured error types for release-spine.

Every failure a release task can hit is one of a small, typed set of errors.
Each carries the stage it belongs to, the store and migration version where
relevant, the underlying cause, and the process exit code the lifecycle
controller uses when the run aborts.

Manifesto:
    A release task runs once per deployment, before traffic is accepted.
    Masking or retrying a failure risks starting the new release against a
    half-migrated store, so every error here is fatal to the run:

    - **Typed hierarchy:** One error type per stage
    - **No retry semantics:** Nothing is retryable, ``retryable`` is absent
    - **Rich context:** Store, version and subsystem ride along for logging
    - **Error chaining:** The driver/engine exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        ReleaseError                           │
        │            (category, context, cause, exit_code)              │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigError            (CONFIG,     exit 2)                  │
        │  DependencyStartError   (DEPENDENCY, exit 3)  {subsystem}     │
        │  StoreConnectionError   (CONNECTION, exit 4)  {store}         │
        │  MigrationError         (MIGRATION,  exit 5)  {store,version} │
        │  SeedError              (SEED,       exit 6)  {store}         │
        │  InvalidTransitionError (INTERNAL,   exit 1)                  │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = MigrationError("constraint failed", store="accounts", version=2)
    >>> int(error.exit_code)
    5
    >>> error.to_dict()["context"]
    {'store': 'accounts', 'version': 2}

Guardrails:
    ❌ DON'T: Catch and retry these inside a stage
    ✅ DO: Let them propagate to the lifecycle controller

    ❌ DON'T: Swallow the driver exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, exit-codes, release-spine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Stage an error belongs to, used for routing and the failure summary."""

    CONFIG = "CONFIG"
    DEPENDENCY = "DEPENDENCY"
    CONNECTION = "CONNECTION"
    MIGRATION = "MIGRATION"
    SEED = "SEED"
    INTERNAL = "INTERNAL"


class ExitCode(int, Enum):
    """Process exit status for each outcome of a task run."""

    SUCCESS = 0
    INTERNAL = 1
    CONFIG = 2
    DEPENDENCY = 3
    CONNECTION = 4
    MIGRATION = 5
    SEED = 6


@dataclass
class ErrorContext:
    """
    Structured metadata attached to a release error.

    Only the fields that are set show up in ``to_dict()``; anything that is
    not a named field lands in ``metadata``.

    Attributes:
        operation: Task-run operation (``migrate`` / ``migrate-and-seed``)
        stage: Lifecycle stage that was being attempted
        store: Store name the failure belongs to
        version: Migration version that failed
        subsystem: Runtime subsystem that failed to start
        path: Asset path involved in the failure
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    stage: str | None = None
    store: str | None = None
    version: int | None = None
    subsystem: str | None = None
    path: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "stage", "store", "version", "subsystem", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ReleaseError(Exception):
    """
    Base exception for all release-spine errors.

    Subclasses set ``default_category`` and ``exit_code`` so the lifecycle
    controller can turn any of them into a process exit status without a
    lookup table.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    exit_code: ExitCode = ExitCode.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ReleaseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConfigError("bad store").with_context(path="release.toml")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "exit_code": int(self.exit_code),
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ConfigError(ReleaseError):
    """Missing or invalid release configuration."""

    default_category = ErrorCategory.CONFIG
    exit_code = ExitCode.CONFIG


class DependencyStartError(ReleaseError):
    """A runtime subsystem could not be initialised.

    Never retried: a subsystem that will not start points at a misconfigured
    host, not a transient condition.
    """

    default_category = ErrorCategory.DEPENDENCY
    exit_code = ExitCode.DEPENDENCY

    def __init__(self, message: str, *, subsystem: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.subsystem = subsystem
        self.context.subsystem = subsystem


class StoreConnectionError(ReleaseError):
    """A store's connection pool could not be opened.

    Named ``StoreConnectionError`` so it does not shadow the builtin
    ``ConnectionError``.
    """

    default_category = ErrorCategory.CONNECTION
    exit_code = ExitCode.CONNECTION

    def __init__(self, message: str, *, store: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.store = store
        self.context.store = store


class MigrationError(ReleaseError):
    """The migration engine reported an error for a store.

    ``version`` is ``None`` when the failure is not tied to a single
    migration (for example an unreadable migrations directory).
    ``applied`` lists the versions committed for the store before the
    failure.
    """

    default_category = ErrorCategory.MIGRATION
    exit_code = ExitCode.MIGRATION

    def __init__(
        self,
        message: str,
        *,
        store: str,
        version: int | None = None,
        applied: list[int] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.store = store
        self.version = version
        self.applied = list(applied or [])
        self.context.store = store
        self.context.version = version


class SeedError(ReleaseError):
    """A store's seed asset failed."""

    default_category = ErrorCategory.SEED
    exit_code = ExitCode.SEED

    def __init__(self, message: str, *, store: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.store = store
        self.context.store = store


class InvalidTransitionError(ReleaseError):
    """Raised when the lifecycle controller attempts an illegal stage change.

    This is a programming error guard, never an operational failure.
    """

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid stage transition: {current} → {target}")


def exit_code_for(error: BaseException) -> ExitCode:
    """Map any exception to the process exit code for a failed run."""
    if isinstance(error, ReleaseError):
        return error.exit_code
    return ExitCode.INTERNAL


__all__ = [
    "ErrorCategory",
    "ExitCode",
    "ErrorContext",
    "ReleaseError",
    "ConfigError",
    "DependencyStartError",
    "StoreConnectionError",
    "MigrationError",
    "SeedError",
    "InvalidTransitionError",
    "exit_code_for",
]
