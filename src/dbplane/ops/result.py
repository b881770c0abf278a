"""
What an operation hands back to the CLI.

Operations never raise: a rejected cluster request, a missing node or an
unreachable VM all come back as a failed :class:`OperationResult` whose
``error.code`` tells the caller which of those it was.  Listings return a
:class:`PagedResult` window.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from dbplane.core.errors import (
    CloudError,
    ConfigError,
    DbplaneError,
    DnsError,
    LeaseError,
    NotFoundError,
    RemoteCommandError,
    ValidationError,
)

T = TypeVar("T")

# First match wins, so subclasses come before their bases.
ERROR_CODES: tuple[tuple[type[DbplaneError], str], ...] = (
    (ValidationError, "VALIDATION_FAILED"),
    (NotFoundError, "NOT_FOUND"),
    (RemoteCommandError, "REMOTE_COMMAND_FAILED"),
    (CloudError, "CLOUD_UNAVAILABLE"),
    (DnsError, "DNS_UNAVAILABLE"),
    (LeaseError, "PROCESS_BUSY"),
    (ConfigError, "MISCONFIGURED"),
)


def error_code(exc: DbplaneError) -> str:
    for cls, code in ERROR_CODES:
        if isinstance(exc, cls):
            return code
    return exc.category.value


@dataclass(frozen=True, slots=True)
class OperationError:
    """Why an operation failed.

    ``details`` is the field → message map for a rejected request, or the
    process/VM context of a remote failure.
    """

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass
class OperationResult(Generic[T]):
    success: bool
    data: T | None = None
    error: OperationError | None = None
    elapsed_ms: float = 0.0

    @classmethod
    def ok(cls, data: T, *, elapsed_ms: float = 0.0) -> OperationResult[T]:
        return cls(success=True, data=data, elapsed_ms=elapsed_ms)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        error = OperationError(code=code, message=message, details=details or {}, retryable=retryable)
        return cls(success=False, error=error, elapsed_ms=elapsed_ms)

    @classmethod
    def from_error(cls, exc: DbplaneError, *, elapsed_ms: float = 0.0) -> OperationResult[T]:
        details = dict(exc.details) if isinstance(exc, ValidationError) else exc.context.to_dict()
        return cls.fail(error_code(exc), str(exc), details=details, retryable=exc.retryable, elapsed_ms=elapsed_ms)


@dataclass
class PagedResult(OperationResult[list[T]]):
    """One ``limit``-sized window of a listing, starting at ``offset``."""

    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    @classmethod
    def from_items(
        cls, items: list[T], total: int, *, limit: int = 50, offset: int = 0, elapsed_ms: float = 0.0
    ) -> PagedResult[T]:
        return cls(success=True, data=items, total=total, limit=limit, offset=offset, elapsed_ms=elapsed_ms)


@dataclass
class Stopwatch:
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


def start_timer() -> Stopwatch:
    return Stopwatch()
