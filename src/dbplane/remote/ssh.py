"""Shell over the system ``ssh`` client.

Runs commands through the ``ssh`` CLI (subprocess) rather than an SSH
library, the same way container lifecycle tooling drives ``docker``.
Keys and known hosts come from the invoking user's ssh configuration.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Any

from dbplane.core.errors import ConfigError, RemoteCommandError
from dbplane.core.logging import get_logger

logger = get_logger(__name__)


class SshShell:
    """``Shell`` implementation bound to one VM host."""

    def __init__(self, host: str, user: str = "lantern", *, timeout: float = 60.0, ssh_binary: str = "ssh") -> None:
        self.host = host
        self.user = user
        self.timeout = timeout
        self.ssh_binary = ssh_binary

    def _argv(self, cmd: str) -> list[str]:
        return [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={int(self.timeout)}",
            f"{self.user}@{self.host}",
            cmd,
        ]

    def run(self, cmd: str, stdin: str | None = None) -> str:
        if shutil.which(self.ssh_binary) is None:
            raise ConfigError(f"{self.ssh_binary} not found on PATH")
        try:
            proc = subprocess.run(
                self._argv(cmd),
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteCommandError(f"command timed out on {self.host}", cause=exc) from exc
        if proc.returncode != 0:
            logger.debug("remote_command_failed", host=self.host, returncode=proc.returncode)
            raise RemoteCommandError(
                f"command failed on {self.host} with exit code {proc.returncode}",
                stdout=proc.stdout,
                stderr=proc.stderr,
            ).with_context(vm_name=self.host)
        return proc.stdout


def ssh_shell_factory(vm: Any) -> SshShell:
    """Default ``Services.shell_factory``: ssh to the VM's public host."""
    if not vm.host:
        raise RemoteCommandError(f"vm {vm.name} has no address yet")
    return SshShell(vm.host, vm.unix_user)
