"""Agent install program.

Runs as a child process of a node: pushes the host agent (daemonizer and
the ``lantern/bin`` helpers) onto the node's VM and exits.  Re-running is
harmless; the install script replaces files in place.
"""

from __future__ import annotations

import json

from dbplane.core.errors import RemoteCommandError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import VmTable
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program

logger = get_logger(__name__)

INSTALL_CMD = "sudo common/bin/install_agent"
AGENT_COMPONENTS = ("common", "lantern")


@register_program
class InstallAgent(Program):
    name = "InstallAgent"

    @step
    def start(self):
        vm = self.session.get(VmTable, self.frame["vm_id"])
        payload = {"components": list(AGENT_COMPONENTS), "user": vm.unix_user}
        try:
            self.services.shell_for(vm).run(INSTALL_CMD, stdin=json.dumps(payload))
        except RemoteCommandError as exc:
            self.update_frame(attempts=self.frame.get("attempts", 0) + 1)
            logger.warning("agent_install_retry", vm=vm.name, attempts=self.frame["attempts"], error=str(exc))
            self.sleep_and_retry(5)
        self.return_({"msg": "agent installed", "vm_id": vm.id})
