"""
Drive the engine deterministically against the in-memory fakes.

``Harness.run`` runs every due process once per pass.  When a pass finds
nothing due it jumps the frozen clock straight to the earliest ``due_at``,
so sleeps of minutes cost one pass instead of wall time.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy import func, select

from dbplane.cluster.resource import assemble_resource
from dbplane.core.orm.tables import NodeTable, ProcessTable, ResourceTable
from dbplane.execution.signals import SignalStore


class Harness:
    def __init__(self, session_factory, services, runner, fleet, cloud, dns, blob, notifier) -> None:
        self.session_factory = session_factory
        self.services = services
        self.runner = runner
        self.fleet = fleet
        self.cloud = cloud
        self.dns = dns
        self.blob = blob
        self.notifier = notifier

    @property
    def clock(self):
        return self.services.clock

    # --- running ---

    def next_due(self, after=None):
        stmt = select(func.min(ProcessTable.due_at)).where(
            ProcessTable.exited_at.is_(None), ProcessTable.due_at.is_not(None)
        )
        if after is not None:
            stmt = stmt.where(ProcessTable.due_at > after)
        with self.session_factory() as session:
            return session.scalar(stmt)

    def run(self, until: Callable[[], bool] | None = None, max_rounds: int = 300) -> bool:
        """Run passes until ``until()`` holds (or rounds run out); returns whether it held."""
        for _ in range(max_rounds):
            if until is not None and until():
                return True
            outcomes = self.runner.run_due(limit=500)
            if all(outcome.failed for outcome in outcomes):
                # Nothing progressed; failing steps retry once time moves on.
                due = self.next_due(after=self.clock.now())
                if due is None:
                    break
                self.clock.set(due)
        return until is None or until()

    def run_until_step(self, process_id: str, step: str, max_rounds: int = 300) -> bool:
        return self.run(lambda: self.step_of(process_id) == step, max_rounds=max_rounds)

    def run_until_exited(self, process_id: str, max_rounds: int = 300) -> bool:
        return self.run(lambda: self.process(process_id) is None or self.process(process_id).is_terminal, max_rounds)

    # --- reading ---

    def process(self, process_id: str) -> ProcessTable | None:
        with self.session_factory() as session:
            return session.get(ProcessTable, process_id)

    def step_of(self, process_id: str) -> str | None:
        process = self.process(process_id)
        return process.step if process is not None else None

    def get(self, table: type, ident: str) -> Any:
        with self.session_factory() as session:
            return session.get(table, ident)

    def nodes(self, resource_id: str) -> list[NodeTable]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(NodeTable).where(NodeTable.resource_id == resource_id).order_by(NodeTable.created_at)
                )
            )

    def representative(self, resource_id: str) -> NodeTable | None:
        return next((n for n in self.nodes(resource_id) if n.representative_at is not None), None)

    def standbys(self, resource_id: str) -> list[NodeTable]:
        return [n for n in self.nodes(resource_id) if n.representative_at is None]

    def vm_name(self, node: NodeTable) -> str:
        with self.session_factory() as session:
            return session.get(NodeTable, node.id).vm.name

    def signal(self, process_id: str, name: str) -> int:
        with self.session_factory() as session:
            count = SignalStore(session).incr_and_wake(process_id, name, self.clock.now())
            session.commit()
        return count

    def is_signaled(self, process_id: str, name: str) -> bool:
        with self.session_factory() as session:
            return SignalStore(session).is_set(process_id, name)

    # --- fixtures ---

    def provision(self, **kwargs: Any) -> ResourceTable:
        kwargs.setdefault("name", "orders")
        with self.session_factory() as session:
            resource = assemble_resource(session, self.services, **kwargs)
            session.commit()
        return resource

    def provision_steady(self, **kwargs: Any) -> ResourceTable:
        """Provision a cluster and run until its topology machine reaches ``wait``."""
        resource = self.provision(**kwargs)
        assert self.run_until_step(resource.id, "wait"), f"resource stuck in {self.step_of(resource.id)}"
        return resource

    def settle(self, process_id: str, max_rounds: int = 300) -> bool:
        """Run until ``process_id`` is back in ``wait`` with nothing pending on it."""
        return self.run(
            lambda: self.step_of(process_id) == "wait" and self.process(process_id).due_at > self.clock.now(),
            max_rounds=max_rounds,
        )
