"""
Request-scoped context for operations.

Every operation function receives an :class:`OperationContext` as its first
argument.  The context carries the control-plane session, the collaborator
services, caller identity and the dry-run flag.  Operations commit through
:meth:`OperationContext.commit` (which rolls back instead under dry-run) and
route every exception through :func:`operation_failed`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from dbplane.core.errors import DbplaneError
from dbplane.core.logging import get_logger
from dbplane.execution.signals import SignalStore
from dbplane.ops.result import OperationResult
from dbplane.remote.services import Services

logger = get_logger(__name__)


@dataclass
class OperationContext:
    """Context passed to every operation function.

    Attributes:
        session: Control-plane database session.
        services: Settings, clock and collaborator clients.
        request_id: Unique ID for this invocation (auto-generated).
        caller: Origin of the request, ``"cli"`` or ``"sdk"``.
        dry_run: When ``True``, operations run their checks and then discard every write.
        metadata: Arbitrary key/value pairs forwarded to logging.
    """

    session: Session
    services: Services
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller: str = "sdk"
    dry_run: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def now(self) -> datetime:
        return self.services.clock.now()

    def signal(self, process_id: str, name: str) -> int:
        """Raise ``name`` on a process and wake it; returns the pending count."""
        return SignalStore(self.session).incr_and_wake(process_id, name, self.now)

    def commit(self) -> None:
        if self.dry_run:
            self.session.rollback()
        else:
            self.session.commit()


def operation_failed(ctx: OperationContext, exc: Exception, op: str, elapsed_ms: float) -> OperationResult:
    """Roll back and turn ``exc`` into a failed result.

    Domain errors are expected rejections; anything else is logged with its
    traceback as ``INTERNAL``.
    """
    ctx.session.rollback()
    if isinstance(exc, DbplaneError):
        logger.warning("op_rejected", op=op, request_id=ctx.request_id, error=str(exc))
        return OperationResult.from_error(exc, elapsed_ms=elapsed_ms)
    logger.exception("op_failed", op=op, request_id=ctx.request_id, error=str(exc))
    return OperationResult.fail("INTERNAL", f"{op} failed: {exc}", elapsed_ms=elapsed_ms)
