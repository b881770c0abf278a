"""Durable process engine.

Programs (state machines) are made of steps; the runner executes one step
invocation at a time under a lease and persists the resulting transition
atomically with the step's domain writes.

Modules
-------
program      Program base class, @step, primitives
transitions  Advance / Sleep / Call / Return / YieldToChildren
signals      SignalStore (per-process request counters)
registry     ProgramRegistry, register_program, load_builtin_programs
leases       LeaseManager
runner       Runner, RunOutcome, purge_exited
worker       WorkerLoop
"""

from dbplane.execution.program import ChildResult, Program, step
from dbplane.execution.registry import (
    ProgramRegistry,
    get_default_registry,
    load_builtin_programs,
    register_program,
)
from dbplane.execution.runner import RunOutcome, Runner, purge_exited
from dbplane.execution.signals import SignalStore

__all__ = [
    "ChildResult",
    "Program",
    "ProgramRegistry",
    "RunOutcome",
    "Runner",
    "SignalStore",
    "get_default_registry",
    "load_builtin_programs",
    "purge_exited",
    "register_program",
    "step",
]
