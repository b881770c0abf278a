"""Program: the base class every state machine derives from.

A program is a set of named steps.  A step reads and writes domain rows
through ``self.session`` and then ends the invocation with exactly one
primitive: :meth:`Program.advance`, :meth:`Program.sleep_and_retry`,
:meth:`Program.call`, :meth:`Program.return_` or
:meth:`Program.yield_to_children`.  Everything the step wrote commits with
the transition, or nothing does.

ARCHITECTURE
────────────
::

    Program
      ├── steps            ─ step name → function table (built from @step)
      ├── frame            ─ active frame (locals of this call level)
      ├── retval           ─ value handed back by the last return_, one invocation only
      ├── pre_step_hook()  ─ runs before every step (destroy interrupt)
      ├── transitions      ─ advance / sleep_and_retry / call / return_ / yield_to_children
      ├── children         ─ spawn_child / harvest_children / is_leaf
      ├── deadline         ─ set_deadline, on_deadline_expired / on_deadline_cleared
      └── signals          ─ is_signaled / incr / decr / clear_signal / signal

Example:
    >>> @register_program
    ... class Greeter(Program):
    ...     @step
    ...     def start(self):
    ...         self.update_frame(greeted=True)
    ...         self.advance("done")
    ...
    ...     @step
    ...     def done(self):
    ...         self.return_({"msg": "hello"})
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dbplane.core.errors import EngineError
from dbplane.core.orm.tables import ProcessTable
from dbplane.core.timestamps import generate_ulid
from dbplane.execution.signals import SignalStore
from dbplane.execution.transitions import Advance, Call, Return, Sleep, YieldToChildren
from dbplane.paging import PageService

if TYPE_CHECKING:
    from dbplane.core.settings import DbplaneSettings
    from dbplane.remote.services import Services

StepFn = Callable[["Program"], None]

CANCELLED_BY_DESTROY = "operation is cancelled due to destruction"


def step(fn: StepFn) -> StepFn:
    """Mark a method as a step of its program."""
    fn.__dbplane_step__ = True  # type: ignore[attr-defined]
    return fn


def program_name(program: type[Program] | str) -> str:
    return program if isinstance(program, str) else program.name


def as_retval(value: Any) -> dict[str, Any] | None:
    """Normalise a return value for the JSON column: bare values become ``{"msg": value}``."""
    if value is None or isinstance(value, dict):
        return value
    return {"msg": value}


@dataclass
class ChildResult:
    """A harvested child and the value it exited with."""

    process_id: str
    program: str
    value: dict[str, Any] | None


class Program:
    """Base state machine.  Subclasses declare steps with ``@step``."""

    name: ClassVar[str] = "Program"
    steps: ClassVar[dict[str, StepFn]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "name" not in cls.__dict__:
            cls.name = cls.__name__
        table: dict[str, StepFn] = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                if getattr(value, "__dbplane_step__", False):
                    table[attr] = value
        cls.steps = table

    def __init__(self, process: ProcessTable, session: Session, services: Services) -> None:
        self.process = process
        self.session = session
        self.services = services
        self.frame: dict[str, Any] = dict(process.stack[0]) if process.stack else {}
        self.retval: dict[str, Any] | None = process.retval
        self.signals = SignalStore(session)

    # ── Context ──────────────────────────────────────────────────

    @property
    def now(self) -> datetime:
        return self.services.clock.now()

    @property
    def settings(self) -> DbplaneSettings:
        return self.services.settings

    @property
    def subject_id(self) -> str:
        """Id of the domain entity the active frame works on."""
        return self.frame.get("subject_id", self.process.id)

    @property
    def step_name(self) -> str:
        return self.process.step

    def update_frame(self, **values: Any) -> None:
        """Store locals in the active frame; persisted with the transition."""
        self.frame.update(values)

    def dispatch(self, step_name: str) -> None:
        fn = self.steps.get(step_name)
        if fn is None:
            raise EngineError(f"{self.name} has no step {step_name!r}")
        fn(self)

    # ── Signals ──────────────────────────────────────────────────

    def is_signaled(self, name: str) -> bool:
        return self.signals.is_set(self.process.id, name)

    def incr(self, name: str) -> int:
        return self.signals.incr(self.process.id, name)

    def decr(self, name: str) -> int:
        return self.signals.decr(self.process.id, name)

    def clear_signal(self, name: str) -> None:
        self.signals.clear(self.process.id, name)

    def signal(self, process_id: str, name: str) -> int:
        """Set a flag on another process and wake it."""
        return self.signals.incr_and_wake(process_id, name, self.now)

    # ── Transitions ──────────────────────────────────────────────

    def advance(self, step_name: str) -> None:
        if step_name not in self.steps:
            raise EngineError(f"{self.name} cannot advance to unknown step {step_name!r}")
        raise Advance(step_name)

    def sleep_and_retry(self, seconds: float) -> None:
        raise Sleep(seconds)

    def call(
        self,
        program: type[Program] | str,
        frame: dict[str, Any] | None = None,
        entry_step: str = "start",
        return_to: str | None = None,
    ) -> None:
        """Run ``program`` in a new frame of this process; resume at ``return_to`` (default: this step)."""
        raise Call(program_name(program), dict(frame or {}), entry_step, return_to or self.process.step)

    def return_(self, value: Any = None) -> None:
        raise Return(value)

    def yield_to_children(self) -> None:
        raise YieldToChildren()

    # ── Children ─────────────────────────────────────────────────

    def spawn_child(
        self,
        program: type[Program] | str,
        frame: dict[str, Any] | None = None,
        entry_step: str = "start",
    ) -> str:
        child = ProcessTable(
            id=generate_ulid(),
            program=program_name(program),
            step=entry_step,
            stack=[{"subject_id": self.subject_id, **(frame or {})}],
            due_at=self.now,
            parent_id=self.process.id,
        )
        self.session.add(child)
        self.session.flush()
        return child.id

    def children(self, *, live_only: bool = False) -> list[ProcessTable]:
        stmt = select(ProcessTable).where(ProcessTable.parent_id == self.process.id)
        if live_only:
            stmt = stmt.where(ProcessTable.exited_at.is_(None))
        return list(self.session.scalars(stmt.order_by(ProcessTable.created_at)))

    def harvest_children(self) -> list[ChildResult]:
        """Detach terminal children and return their exit values."""
        results = []
        for child in self.children():
            if child.exited_at is None:
                continue
            results.append(ChildResult(child.id, child.program, child.exit_value))
            child.parent_id = None
        self.session.flush()
        return results

    def cancel_children(self, reason: str) -> int:
        """Exit every live child with ``{"msg": reason}``; returns how many were cancelled."""
        live = self.children(live_only=True)
        for child in live:
            child.stack = []
            child.exited_at = self.now
            child.exit_value = {"msg": reason}
            child.due_at = None
        self.session.flush()
        return len(live)

    def is_leaf(self) -> bool:
        live = self.session.scalar(
            select(func.count())
            .select_from(ProcessTable)
            .where(ProcessTable.parent_id == self.process.id, ProcessTable.exited_at.is_(None))
        )
        return not live

    # ── Deadlines ────────────────────────────────────────────────

    def set_deadline(self, target_step: str | None, seconds: float) -> None:
        """Expect ``target_step`` (or exit, when None) within ``seconds``."""
        self.process.deadline_target = target_step
        self.process.deadline_at = self.now + timedelta(seconds=seconds)
        self.process.deadline_paged = False

    def deadline_tag(self, target_step: str | None) -> tuple[str, ...]:
        return ("Deadline", self.process.id, self.name, target_step or "exit")

    def on_deadline_expired(self, target_step: str | None) -> None:
        """React to a missed deadline.  Subclasses mark their entity failed and call super()."""
        PageService(self.session, self.services).open(
            f"{self.name} {self.subject_id} has an expired deadline",
            self.deadline_tag(target_step),
            details={"process_id": self.process.id, "step": self.process.step, "target": target_step},
        )

    def on_deadline_cleared(self, target_step: str | None) -> None:
        PageService(self.session, self.services).resolve(self.deadline_tag(target_step))

    # ── Hooks ────────────────────────────────────────────────────

    def pre_step_hook(self) -> None:
        """Destroy interrupt: a set ``destroy`` flag preempts any other step."""
        if "destroy" not in self.steps or not self.is_signaled("destroy"):
            return
        if self.process.step == "destroy":
            return
        if len(self.process.stack) > 1:
            self.return_(CANCELLED_BY_DESTROY)
        self.advance("destroy")
