"""
Structured error hierarchy for dbplane.

Every failure the control plane raises carries a category, a retry flag and a
context bag so that the runner, the CLI and the pager can all treat it the
same way.

Manifesto:
    Orchestration code fails in a handful of recognisable ways:

    - **Validation:** bad input rejected before any process exists
    - **Remote:** a command or daemonizer task on a VM failed
    - **Cloud:** an infrastructure collaborator refused a call
    - **Engine:** a program or its stack is malformed

    A typed hierarchy lets each call site decide whether to re-submit, page a
    human, or let the process halt in place for inspection.

Architecture:
    ::

        DbplaneError (base)
        ├── ValidationError       field -> message map, never retryable
        ├── NotFoundError
        ├── ConfigError
        ├── RemoteCommandError    non-zero exit on a VM (retryable)
        │   └── RemoteTaskFailed  daemonizer task ended Failed
        ├── CloudError            compute / identity collaborator
        ├── DnsError
        ├── EngineError           unknown program / step, bad stack
        └── LeaseError

Examples:
    >>> err = ValidationError("Validation failed", details={"name": "too long"})
    >>> err.to_dict()["details"]
    {'name': 'too long'}

    >>> try:
    ...     raise OSError("connection reset")
    ... except OSError as e:
    ...     raise RemoteCommandError("psql failed", cause=e)
    Traceback (most recent call last):
    ...
    RemoteCommandError: psql failed

Tags:
    error-handling, exception-hierarchy, retry-logic, dbplane
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error classification used for routing and retry decisions."""

    # Infrastructure
    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"
    CLOUD = "CLOUD"

    # Input
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFIG = "CONFIG"

    # Execution
    REMOTE = "REMOTE"
    ORCHESTRATION = "ORCHESTRATION"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialised; anything that does not fit a named
    field goes in ``metadata``.
    """

    process_id: str | None = None
    program: str | None = None
    step: str | None = None
    vm_name: str | None = None
    task_name: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {}
        for key in ["process_id", "program", "step", "vm_name", "task_name"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DbplaneError(Exception):
    """
    Base exception for dbplane.

    Subclasses pick ``default_category`` and ``default_retryable``; callers
    may override either per instance.

    Args:
        message: Human-readable description
        category: Error category (defaults to the class default)
        retryable: Whether re-running the same step could succeed
        retry_after: Suggested seconds to wait before retrying
        context: Structured metadata
        cause: Underlying exception, chained as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DbplaneError:
        """Attach context fields, unknown keys land in ``metadata``."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# INPUT ERRORS
# =============================================================================


class ValidationError(DbplaneError):
    """
    Malformed input, reported with a field -> message map.

    Raised by assembly code before any process or entity is created, so a
    failed validation never leaves partial state behind.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        details: dict[str, str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        if not self.details:
            return self.message
        parts = ", ".join(f"{k}: {v}" for k, v in self.details.items())
        return f"{self.message} ({parts})"


class NotFoundError(DbplaneError):
    """Referenced entity does not exist."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False


class ConfigError(DbplaneError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# REMOTE AND INFRASTRUCTURE ERRORS
# =============================================================================


class RemoteCommandError(DbplaneError):
    """A command executed on a VM exited non-zero or could not be delivered."""

    default_category = ErrorCategory.REMOTE
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.stdout = stdout
        self.stderr = stderr


class RemoteTaskFailed(RemoteCommandError):
    """A daemonizer task finished in the ``Failed`` state."""

    default_retryable = False


class CloudError(DbplaneError):
    default_category = ErrorCategory.CLOUD
    default_retryable = True


class DnsError(DbplaneError):
    default_category = ErrorCategory.NETWORK
    default_retryable = True


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class EngineError(DbplaneError):
    """The process engine cannot dispatch: unknown program, unknown step or a broken stack."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class LeaseError(DbplaneError):
    default_category = ErrorCategory.DATABASE
    default_retryable = True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DbplaneError",
    "ValidationError",
    "NotFoundError",
    "ConfigError",
    "RemoteCommandError",
    "RemoteTaskFailed",
    "CloudError",
    "DnsError",
    "EngineError",
    "LeaseError",
]
