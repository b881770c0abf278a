"""Runner: executes one invocation of a process at a time.

Manifesto:
    A control plane operation (provision a node, fail over a cluster) runs
    for minutes to hours and must survive worker restarts.  The runner keeps
    each invocation small and atomic: load the process, run the pre-step
    hook and one step body, persist the transition together with every row
    the step touched, release the lease.  If the worker dies mid-step,
    nothing of that invocation is visible and the step simply runs again.

ARCHITECTURE
────────────
::

    run_due(limit)
      └── due_process_ids()           ─ due_at <= now, not exited, not leased
            └── run_once(process_id)
                  ├── LeaseManager.acquire
                  ├── session: expired deadline → page, commit
                  ├── session: pre_step_hook → step body
                  │            → apply transition → commit
                  ├── on error: rollback, record last_error, stay put
                  ├── YieldToChildren: run_once(child) for each live child
                  └── LeaseManager.release

Failure semantics:
    An exception that is not a transition rolls back everything the step
    wrote.  An expired deadline is surfaced in its own transaction first,
    so a step that keeps failing still pages once and stays marked failed.  The process keeps its step, stack and due time, so the next
    ``run_due`` pass retries it with the same pre-step state.  There is no
    backoff beyond what steps encode with ``sleep_and_retry``.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from dbplane.core.errors import EngineError
from dbplane.core.logging import LogContext, get_logger
from dbplane.core.orm.tables import ProcessTable
from dbplane.execution.leases import LeaseManager
from dbplane.execution.program import Program, as_retval
from dbplane.execution.registry import ProgramRegistry, get_default_registry
from dbplane.execution.transitions import Advance, Call, Return, Sleep, Transition, YieldToChildren
from dbplane.remote.services import Services

logger = get_logger(__name__)


@dataclass
class RunOutcome:
    """What one invocation did."""

    process_id: str
    program: str
    step: str
    transition: str
    next_step: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class Runner:
    """Cooperative scheduler over the process table.

    Args:
        session_factory: Session factory for the control-plane database
        services: Collaborators handed to every program
        registry: Program registry (defaults to the global one)
        owner_id: Lease owner identity
        lease_ttl: Seconds a lease stays valid
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        services: Services,
        registry: ProgramRegistry | None = None,
        owner_id: str | None = None,
        lease_ttl: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.services = services
        self.registry = registry or get_default_registry()
        self.leases = LeaseManager(
            session_factory,
            owner_id=owner_id,
            ttl_seconds=lease_ttl or services.settings.lease_ttl_seconds,
            clock=services.clock,
        )

    # ── Scheduling ───────────────────────────────────────────────

    def due_process_ids(self, limit: int = 20) -> list[str]:
        now = self.services.clock.now()
        with self.session_factory() as session:
            stmt = (
                select(ProcessTable.id)
                .where(
                    ProcessTable.exited_at.is_(None),
                    ProcessTable.due_at.is_not(None),
                    ProcessTable.due_at <= now,
                    or_(ProcessTable.lease_expires_at.is_(None), ProcessTable.lease_expires_at < now),
                )
                .order_by(ProcessTable.due_at, ProcessTable.id)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def run_due(self, limit: int = 20) -> list[RunOutcome]:
        """Run every currently due process once."""
        outcomes = []
        for process_id in self.due_process_ids(limit):
            outcome = self.run_once(process_id)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def drain(self, max_rounds: int = 50, limit: int = 100) -> int:
        """Run due processes until none are due or ``max_rounds`` passes elapse."""
        total = 0
        for _ in range(max_rounds):
            outcomes = self.run_due(limit)
            if not outcomes:
                break
            total += len(outcomes)
        return total

    # ── Invocation ───────────────────────────────────────────────

    def run_once(self, process_id: str) -> RunOutcome | None:
        """Lease and run a single invocation; None if the process is busy or gone."""
        if not self.leases.acquire(process_id):
            return None
        try:
            outcome = self._run_leased(process_id)
            if outcome is not None and outcome.transition == "yield":
                for child_id in self._live_children(process_id):
                    self.run_once(child_id)
            return outcome
        finally:
            self.leases.release(process_id)

    def _run_leased(self, process_id: str) -> RunOutcome | None:
        program_label = step = "?"
        try:
            self._surface_deadline(process_id)
            with self.session_factory() as session:
                process = session.get(ProcessTable, process_id)
                if process is None or process.is_terminal:
                    return None
                program_label, step = process.program, process.step
                with LogContext(process_id=process_id, program=program_label, step=step):
                    outcome = self._invoke(session, process)
                    session.commit()
                return outcome
        except Exception as exc:
            logger.exception("step_failed", process_id=process_id, program=program_label, step=step)
            self._record_failure(process_id, exc)
            return RunOutcome(process_id, program_label, step, "error", error=f"{type(exc).__name__}: {exc}")

    def _invoke(self, session: Session, process: ProcessTable) -> RunOutcome:
        program = self.registry.get(process.program)(process, session, self.services)

        try:
            program.pre_step_hook()
            program.dispatch(process.step)
        except Transition as transition:
            outcome = self._apply(program, transition)
        else:
            raise EngineError(f"{program.name}.{process.step} finished without a transition")

        self._maybe_clear_deadline(program)
        process.last_error = None
        logger.debug("step_done", transition=outcome.transition, next_step=outcome.next_step)
        return outcome

    def _apply(self, program: Program, transition: Transition) -> RunOutcome:
        process = program.process
        now = self.services.clock.now()
        started_step = process.step
        stack: list[dict[str, Any]] = list(process.stack)
        if stack:
            stack[0] = dict(program.frame)
        process.retval = None
        process.due_at = now

        if isinstance(transition, Advance):
            process.step = transition.step
            kind = "advance"
        elif isinstance(transition, Sleep):
            process.due_at = now + timedelta(seconds=transition.seconds)
            kind = "sleep"
        elif isinstance(transition, YieldToChildren):
            kind = "yield"
        elif isinstance(transition, Call):
            self.registry.get(transition.program)
            frame = {"subject_id": program.subject_id, **transition.frame}
            frame["link"] = [process.program, transition.return_to]
            stack.insert(0, frame)
            process.program = transition.program
            process.step = transition.entry_step
            kind = "call"
        elif isinstance(transition, Return):
            popped = stack.pop(0) if stack else {}
            value = as_retval(transition.value)
            if not stack:
                process.exited_at = now
                process.exit_value = value
                process.due_at = None
                kind = "exit"
            else:
                link = popped.get("link")
                if not link:
                    raise EngineError(f"frame of {process.program} has no continuation to return to")
                process.program, process.step = link[0], link[1]
                process.retval = value
                kind = "return"
        else:
            raise EngineError(f"unsupported transition {type(transition).__name__}")

        process.stack = stack
        return RunOutcome(process.id, program.name, started_step, kind, next_step=process.step)

    # ── Deadlines ────────────────────────────────────────────────

    def _surface_deadline(self, process_id: str) -> None:
        """Page an expired deadline and commit before the step body runs."""
        with self.session_factory() as session:
            process = session.get(ProcessTable, process_id)
            if process is None or process.is_terminal:
                return
            if process.deadline_at is None or process.deadline_paged:
                return
            if self.services.clock.now() <= process.deadline_at:
                return
            program = self.registry.get(process.program)(process, session, self.services)
            with LogContext(process_id=process_id, program=process.program, step=process.step):
                logger.warning("deadline_expired", target=process.deadline_target)
                program.on_deadline_expired(process.deadline_target)
            process.deadline_paged = True
            session.commit()

    def _maybe_clear_deadline(self, program: Program) -> None:
        process = program.process
        if process.deadline_at is None:
            return
        target = process.deadline_target
        reached = process.is_terminal if target is None else process.step == target
        if not reached:
            return
        if process.deadline_paged:
            program.on_deadline_cleared(target)
        process.deadline_target = None
        process.deadline_at = None
        process.deadline_paged = False

    # ── Helpers ──────────────────────────────────────────────────

    def _live_children(self, process_id: str) -> list[str]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(ProcessTable.id)
                    .where(ProcessTable.parent_id == process_id, ProcessTable.exited_at.is_(None))
                    .order_by(ProcessTable.created_at)
                )
            )

    def _record_failure(self, process_id: str, exc: Exception) -> None:
        with self.session_factory() as session:
            process = session.get(ProcessTable, process_id)
            if process is None:
                return
            process.last_error = "".join(traceback.format_exception_only(type(exc), exc)).strip()
            process.error_count = (process.error_count or 0) + 1
            session.commit()


def purge_exited(session: Session, older_than: timedelta, now: datetime) -> int:
    """Delete terminal processes that exited more than ``older_than`` ago."""
    rows = list(
        session.scalars(
            select(ProcessTable).where(
                ProcessTable.exited_at.is_not(None), ProcessTable.exited_at < now - older_than
            )
        )
    )
    for row in rows:
        session.delete(row)
    session.flush()
    return len(rows)
