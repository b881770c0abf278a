"""Transitions: the ways a step body ends an invocation.

Step bodies never return normally; they end by raising one of these from a
primitive on :class:`~dbplane.execution.program.Program`.  The runner catches
the transition and persists it together with everything else the step wrote.
"""

from __future__ import annotations

from typing import Any


class Transition(Exception):
    """Base class; ends the current invocation."""


class Advance(Transition):
    def __init__(self, step: str):
        super().__init__(step)
        self.step = step


class Sleep(Transition):
    def __init__(self, seconds: float):
        super().__init__(seconds)
        self.seconds = seconds


class Call(Transition):
    """Push a frame bound to ``program`` and continue at ``entry_step``."""

    def __init__(self, program: str, frame: dict[str, Any], entry_step: str, return_to: str):
        super().__init__(program, entry_step)
        self.program = program
        self.frame = frame
        self.entry_step = entry_step
        self.return_to = return_to


class Return(Transition):
    def __init__(self, value: Any):
        super().__init__(value)
        self.value = value


class YieldToChildren(Transition):
    """Re-poll immediately after every live child has had one invocation."""
