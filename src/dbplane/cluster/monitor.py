"""Pulse monitor: samples node availability and raises ``checkup``.

A single long-lived process (id ``pulse-monitor``) checks every node in
steady state.  A node that reads down ``pulse_down_threshold`` times in a row,
and has been down for longer than ``pulse_down_timeout_seconds``, gets a
``checkup`` flag; its own machine then decides whether it is unavailable.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from dbplane.cluster.models import NodeModel, process_step
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import NodeTable, ProcessTable
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program
from dbplane.remote.services import Services

logger = get_logger(__name__)

MONITOR_PROCESS_ID = "pulse-monitor"
PULSE_INTERVAL_SECONDS = 10


def ensure_monitor(session: Session, services: Services) -> ProcessTable:
    """Create the monitor process unless it already runs."""
    process = session.get(ProcessTable, MONITOR_PROCESS_ID)
    if process is None or process.is_terminal:
        if process is not None:
            session.delete(process)
            session.flush()
        process = ProcessTable(
            id=MONITOR_PROCESS_ID, program=PulseMonitor.name, step="wait", stack=[{}], due_at=services.clock.now()
        )
        session.add(process)
        session.flush()
    return process


@register_program
class PulseMonitor(Program):
    name = "PulseMonitor"

    @step
    def wait(self):
        settings = self.settings
        for node in self.session.scalars(select(NodeTable).order_by(NodeTable.created_at)).all():
            if process_step(self.session, node.id) != "wait":
                continue
            model = NodeModel(self.session, self.services, node)
            reading = "up" if model.is_available() else "down"
            escalate = model.record_pulse(
                reading,
                threshold=settings.pulse_down_threshold,
                timeout_seconds=settings.pulse_down_timeout_seconds,
            )
            if escalate and not self.signals.is_set(node.id, "checkup"):
                self.signal(node.id, "checkup")
                logger.warning("node_pulse_down", node_id=node.id, repeat=node.pulse_repeat)
        self.sleep_and_retry(PULSE_INTERVAL_SECONDS)
