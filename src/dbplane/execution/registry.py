"""Program registry: program name → Program class.

Process rows store the program by name; the registry is the single table
the runner dispatches through.  Machines register themselves with the
``register_program`` decorator at import time; tests can build an isolated
:class:`ProgramRegistry`.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

from dbplane.core.errors import EngineError

if TYPE_CHECKING:
    from dbplane.execution.program import Program

# Modules whose import registers the built-in machines.
BUILTIN_PROGRAM_MODULES = (
    "dbplane.cluster.vm",
    "dbplane.cluster.agent",
    "dbplane.cluster.node",
    "dbplane.cluster.resource",
    "dbplane.cluster.timeline",
    "dbplane.cluster.monitor",
    "dbplane.doctor.machine",
)


class ProgramRegistry:
    """Injectable program registry."""

    def __init__(self) -> None:
        self._programs: dict[str, type[Program]] = {}

    def register(self, program: type[Program]) -> type[Program]:
        existing = self._programs.get(program.name)
        if existing is not None and existing is not program:
            raise EngineError(f"Program name already registered: {program.name}")
        self._programs[program.name] = program
        return program

    def get(self, name: str) -> type[Program]:
        try:
            return self._programs[name]
        except KeyError:
            raise EngineError(f"Unknown program: {name}") from None

    def has(self, name: str) -> bool:
        return name in self._programs

    def names(self) -> list[str]:
        return sorted(self._programs)


_default_registry = ProgramRegistry()


def get_default_registry() -> ProgramRegistry:
    return _default_registry


def register_program(program: type[Program]) -> type[Program]:
    """Class decorator registering ``program`` in the default registry."""
    return _default_registry.register(program)


def load_builtin_programs() -> ProgramRegistry:
    """Import every built-in machine so its programs are registered."""
    for module in BUILTIN_PROGRAM_MODULES:
        importlib.import_module(module)
    return _default_registry
