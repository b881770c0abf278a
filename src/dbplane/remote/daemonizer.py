"""Remote agent task protocol.

Long operations on a VM (configure the database stack, upgrade an extension,
take a backup) are never awaited.  They are submitted to the agent's
daemonizer under a stable task name and polled on later invocations:

    run <cmd> as <name>  →  check <name>  →  logs <name>  →  clean <name>

``check`` answers NotStarted, InProgress, Succeeded or Failed.  Submitting a
name that is already in flight is a no-op on the agent side, so a step that
re-runs after a crash can resubmit safely.
"""

from __future__ import annotations

import json
import shlex
from dataclasses import dataclass
from enum import Enum

from dbplane.core.errors import RemoteCommandError
from dbplane.remote.protocols import Shell

DAEMONIZER = "common/bin/daemonizer"


class TaskStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


@dataclass
class TaskLogs:
    stdout: str = ""
    stderr: str = ""


class RemoteTask:
    """One named daemonizer task on one VM."""

    def __init__(self, shell: Shell, name: str) -> None:
        self.shell = shell
        self.name = name

    def run(self, cmd: str, stdin: str | None = None) -> None:
        self.shell.run(f"{DAEMONIZER} {shlex.quote(cmd)} {shlex.quote(self.name)}", stdin=stdin)

    def check(self) -> TaskStatus:
        raw = self.shell.run(f"{DAEMONIZER} --check {shlex.quote(self.name)}").strip()
        try:
            return TaskStatus(raw)
        except ValueError:
            raise RemoteCommandError(f"unexpected daemonizer status {raw!r} for {self.name}") from None

    def logs(self) -> TaskLogs:
        raw = self.shell.run(f"{DAEMONIZER} --logs {shlex.quote(self.name)}")
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return TaskLogs(stdout=raw)
        return TaskLogs(stdout=data.get("stdout", ""), stderr=data.get("stderr", ""))

    def clean(self) -> None:
        self.shell.run(f"{DAEMONIZER} --clean {shlex.quote(self.name)}")

