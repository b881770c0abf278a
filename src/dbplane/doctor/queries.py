"""Health-check queries: field fallback, scheduling, targeting and execution.

A per-resource copy of a system template leaves its own columns NULL and
reads them from the template; a user query carries its own values.  Each
run fans out over (target node × database) and reports every combination
to the incident layer.

Check kinds:
    sql      the query's SQL is run on the node as the query user
    fn_label a named check from :data:`CHECKS`; some run as remote tasks
             named ``healthcheck_<query id>`` and gate ``should_run``
             while in flight
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from croniter import croniter
from sqlalchemy.orm import Session

from dbplane.cluster.models import NodeModel, ResourceModel, process_step
from dbplane.core.errors import DbplaneError, RemoteCommandError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import DoctorTable, NodeTable, QueryTable, ResourceTable
from dbplane.doctor.incidents import IncidentService
from dbplane.execution.signals import SignalStore
from dbplane.remote.daemonizer import TaskStatus

if TYPE_CHECKING:
    from dbplane.remote.services import Services

logger = get_logger(__name__)

INHERITED_FIELDS = ("name", "sql", "fn_label", "db_name", "schedule", "severity", "response_type", "server_type")

DISK_USAGE_CMD = "df --output=pcent /dev/sdb | tail -n 1"
DISK_USAGE_THRESHOLD = 90
PRUNE_IMAGES_CMD = "sudo docker image prune --all --force"


def is_due(schedule: str, last_checked: datetime | None, now: datetime) -> bool:
    """True once ``now`` reached the first cron occurrence after ``last_checked``."""
    if last_checked is None:
        return True
    return croniter(schedule, last_checked).get_next(datetime) <= now


def is_failure(response_type: str | None, result: str) -> bool:
    """``rows`` fails on any output; ``bool`` fails on anything but ``f``."""
    if response_type == "rows":
        return bool(result.strip())
    return result.strip() != "f"


# ── Named checks ─────────────────────────────────────────────────


@dataclass
class CheckContext:
    query: DoctorQuery
    node: NodeModel
    db: str
    user: str


@dataclass(frozen=True)
class CheckSpec:
    fn: Callable[[CheckContext], str]
    remote_task: bool = False


CHECKS: dict[str, CheckSpec] = {}


def health_check(label: str, *, remote_task: bool = False):
    """Register ``fn`` as the named check ``label``."""

    def decorator(fn: Callable[[CheckContext], str]) -> Callable[[CheckContext], str]:
        CHECKS[label] = CheckSpec(fn, remote_task)
        return fn

    return decorator


@health_check("check_disk_space_usage")
def check_disk_space_usage(ctx: CheckContext) -> str:
    raw = ctx.node.shell.run(DISK_USAGE_CMD).strip().rstrip("%").strip()
    if not raw.isdigit():
        raise DbplaneError(f"unexpected disk usage output: {raw!r}")
    usage = int(raw)
    if usage <= DISK_USAGE_THRESHOLD:
        return ""
    node = ctx.node.row
    role = "primary" if ctx.node.is_representative else "standby"
    resizable = process_step(ctx.node.session, node.id) == "wait" and not SignalStore(ctx.node.session).is_set(
        node.id, "resize_storage"
    )
    if resizable:
        ctx.node.autoresize_disk()
    return f"{role} server - usage {usage}%"


@health_check("remove_dangling_images", remote_task=True)
def remove_dangling_images(ctx: CheckContext) -> str:
    task = ctx.node.task(ctx.query.task_name)
    status = task.check()
    result = ""
    if status.is_terminal:
        logs = task.logs()
        task.clean()
        if status is TaskStatus.FAILED:
            result = logs.stderr.strip() or "image cleanup failed"
    if status is not TaskStatus.IN_PROGRESS:
        task.run(PRUNE_IMAGES_CMD)
    return result


# ── Query ────────────────────────────────────────────────────────


class DoctorQuery:
    """A query row with template fallback resolved."""

    def __init__(self, session: Session, services: Services, row: QueryTable) -> None:
        self.session = session
        self.services = services
        self.row = row
        self.template = session.get(QueryTable, row.parent_id) if row.parent_id else None

    def field(self, name: str) -> Any:
        if self.template is not None:
            inherited = getattr(self.template, name)
            if inherited is not None:
                return inherited
        return getattr(self.row, name)

    def __getattr__(self, name: str) -> Any:
        if name in INHERITED_FIELDS:
            return self.field(name)
        raise AttributeError(name)

    @property
    def is_system(self) -> bool:
        return self.row.parent_id is not None

    @property
    def task_name(self) -> str:
        return f"healthcheck_{self.row.id}"

    @property
    def doctor(self) -> DoctorTable:
        return self.session.get(DoctorTable, self.row.doctor_id)

    @property
    def resource_model(self) -> ResourceModel | None:
        doctor = self.doctor
        if doctor is None or doctor.resource_id is None:
            return None
        resource = self.session.get(ResourceTable, doctor.resource_id)
        return ResourceModel(self.session, self.services, resource) if resource is not None else None

    def user(self) -> str:
        if self.is_system:
            return "postgres"
        return self.resource_model.row.db_user

    # --- targeting ---

    def target_nodes(self) -> list[NodeTable]:
        model = self.resource_model
        if model is None:
            return []
        server_type = self.server_type or "*"
        if server_type == "primary":
            nodes = [n for n in model.nodes if n.representative_at is not None]
        elif server_type == "standby":
            nodes = model.standbys()
        else:
            nodes = model.nodes
        return [n for n in nodes if process_step(self.session, n.id) == "wait"]

    def in_flight(self, nodes: list[NodeTable]) -> bool:
        check = CHECKS.get(self.fn_label or "")
        if check is None or not check.remote_task:
            return False
        return any(self._task_status(n) is TaskStatus.IN_PROGRESS for n in nodes)

    def _task_status(self, node: NodeTable) -> TaskStatus | None:
        try:
            return self.services.task(node.vm, self.task_name).check()
        except RemoteCommandError as exc:
            # the run itself reports the unreachable node
            logger.warning("doctor_task_check_failed", query_id=self.row.id, node_id=node.id, error=str(exc))
            return None

    def should_run(self, now: datetime, nodes: list[NodeTable] | None = None) -> bool:
        if not is_due(self.schedule, self.row.last_checked, now):
            return False
        return not self.in_flight(nodes if nodes is not None else self.target_nodes())

    # --- execution ---

    def execute(self, node: NodeModel, db: str) -> str:
        check = CHECKS.get(self.fn_label or "") if self.is_system else None
        if check is not None:
            return check.fn(CheckContext(self, node, db, self.user()))
        if self.sql:
            return node.run_query(self.sql, db=db, user=self.user())
        raise DbplaneError(f"query {self.row.id} has neither sql nor a known check")

    def run(self, now: datetime) -> bool | None:
        """Run once if due; returns whether any combination failed, or None when skipped."""
        nodes = self.target_nodes()
        if not nodes or not self.should_run(now, nodes):
            return None

        incidents = IncidentService(self.session, self.services)
        any_failed = False
        for node in nodes:
            model = NodeModel(self.session, self.services, node)
            try:
                dbs = model.list_all_databases() if self.db_name == "*" else [self.db_name or "postgres"]
            except RemoteCommandError as exc:
                logger.warning("doctor_list_databases_failed", query_id=self.row.id, node_id=node.id, error=str(exc))
                incidents.update_page_status(self, "*", node.vm.name, True, error=str(exc))
                any_failed = True
                continue
            for db in dbs:
                output, error = "", ""
                try:
                    output = self.execute(model, db)
                    failed = is_failure(self.response_type, output)
                except DbplaneError as exc:
                    failed, error = True, str(exc)
                    logger.warning("doctor_query_failed", query_id=self.row.id, name=self.name, db=db, error=error)
                incidents.update_page_status(self, db, node.vm.name, failed, output=output, error=error)
                any_failed = any_failed or failed

        self.row.last_checked = now
        return any_failed
