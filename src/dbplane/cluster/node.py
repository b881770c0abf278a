"""Node lifecycle machine: one database server of a resource.

Provisioning::

    start → bootstrap_agent → wait_bootstrap_agent → configure_database_stack
          → wait_db_available ─┬─ init_sql                                   (primary)
                               ├─ wait_catch_up → wait_synchronization        (standby)
                               └─ wait_recovery_completion                    (restored fork)
          → wait_timeline_available → wait

Steady state (``wait``) reacts to signal flags::

    rotate_password · restart_server · start_server · stop_server
    add_domain → setup_tls · update_agent → wait_update_agent
    update_engine_extension · update_extras_extension · update_image
    resize_storage · resize_vm · take_over → wait_swap_ip → promote_server
    checkup → unavailable (restart children) · destroy

Long remote work goes through the daemonizer; a failed ``configure_lantern``
is resubmitted, while failed upgrades and TLS setup open a page and leave the
node in the ``failed`` display state.
"""

from __future__ import annotations

import json

from sqlalchemy.orm import Session

from dbplane.cluster.agent import InstallAgent
from dbplane.cluster.models import NodeModel, ResourceModel, process_step
from dbplane.cluster.timeline import assemble_timeline
from dbplane.cluster.vm import assemble_vm, swap_ip
from dbplane.core.errors import DnsError, RemoteCommandError
from dbplane.core.hashing import scram_sha256_verifier
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import NodeTable, ProcessTable, ResourceTable
from dbplane.core.timestamps import generate_ulid
from dbplane.execution.program import CANCELLED_BY_DESTROY, Program, step
from dbplane.execution.registry import register_program
from dbplane.paging import PageService
from dbplane.remote.daemonizer import TaskLogs, TaskStatus
from dbplane.remote.services import Services

logger = get_logger(__name__)

MAX_CATCH_UP_LAG_BYTES = 80 * 1024 * 1024
SYNCHRONOUS_STATES = ("quorum", "sync")

CONFIGURE_CMD = "sudo lantern/bin/configure"
UPDATE_EXTENSION_CMD = "sudo lantern/bin/update_extension"
UPDATE_IMAGE_CMD = "sudo lantern/bin/update_docker_image"
SETUP_SSL_CMD = "sudo lantern/bin/setup_ssl"
RESTART_CMD = "sudo lantern/bin/restart"

INIT_SQL = "CREATE EXTENSION IF NOT EXISTS lantern; CREATE EXTENSION IF NOT EXISTS lantern_extras;"

# Steady-state flags in priority order; ``take_over`` and ``checkup`` are handled separately.
WAIT_FLAGS = (
    "rotate_password",
    "restart_server",
    "start_server",
    "stop_server",
    "add_domain",
    "setup_tls",
    "update_agent",
    "update_engine_extension",
    "update_extras_extension",
    "update_image",
    "resize_storage",
    "resize_vm",
)
UPGRADE_FLAGS = ("update_engine_extension", "update_extras_extension", "update_image")


def assemble_node(
    session: Session,
    services: Services,
    resource: ResourceTable,
    *,
    timeline_id: str,
    timeline_access: str,
    representative: bool,
    lantern_version: str,
    extras_version: str,
    minor_version: str,
    target_vm_size: str,
    target_storage_size_gib: int,
    domain: str | None = None,
) -> NodeTable:
    """Create a node, its VM and the process driving it (id == node id)."""
    settings = services.settings
    now = services.clock.now()
    node_id = generate_ulid()
    vm = assemble_vm(
        session,
        services,
        name=f"dbp-{node_id.lower()[-12:]}",
        location=resource.location,
        machine_type=target_vm_size,
        storage_size_gib=target_storage_size_gib,
    )
    node = NodeTable(
        id=node_id,
        resource_id=resource.id,
        vm_id=vm.id,
        timeline_id=timeline_id,
        timeline_access=timeline_access,
        representative_at=now if representative else None,
        synchronization_status="ready" if representative else "catching_up",
        lantern_version=lantern_version,
        extras_version=extras_version,
        minor_version=minor_version,
        target_vm_size=target_vm_size,
        target_storage_size_gib=target_storage_size_gib,
        max_storage_autoresize_gib=max(settings.max_storage_autoresize_gib, target_storage_size_gib),
        domain=domain,
        created_at=now,
    )
    session.add(node)
    session.add(ProcessTable(id=node.id, program=NodeNexus.name, step="start", stack=[{}], due_at=now))
    session.flush()
    logger.info("node_assembled", node_id=node.id, resource_id=resource.id, access=timeline_access)
    return node


@register_program
class NodeNexus(Program):
    name = "Node"

    @property
    def node(self) -> NodeTable:
        return self.session.get(NodeTable, self.subject_id)

    @property
    def model(self) -> NodeModel:
        return NodeModel(self.session, self.services, self.node)

    @property
    def resource_model(self) -> ResourceModel:
        return ResourceModel(self.session, self.services, self.node.resource)

    def vm_ready(self) -> bool:
        return process_step(self.session, self.node.vm_id) == "wait"

    def on_deadline_expired(self, target_step: str | None) -> None:
        self.node.display_state = "failed"
        super().on_deadline_expired(target_step)

    def on_deadline_cleared(self, target_step: str | None) -> None:
        node = self.node
        if node is not None and node.display_state == "failed":
            node.display_state = None
        super().on_deadline_cleared(target_step)

    # ── Remote tasks ─────────────────────────────────────────────

    def drive_task(self, name: str, cmd: str, payload: dict | None = None, *, retry_failed: bool) -> TaskStatus:
        """Poll task ``name``; submit when idle.

        Returns SUCCEEDED (already cleaned), FAILED (terminal, paged and
        cleaned) or IN_PROGRESS.
        """
        task = self.model.task(name)
        status = task.check()
        if status is TaskStatus.SUCCEEDED:
            task.clean()
            if PageService(self.session, self.services).resolve(("RemoteTaskFailed", self.node.id, name)):
                self.node.display_state = None
            return TaskStatus.SUCCEEDED
        if status is TaskStatus.FAILED:
            logs = task.logs()
            task.clean()
            if not retry_failed:
                self.task_failed(name, logs)
                return TaskStatus.FAILED
            logger.warning("remote_task_failed_resubmitting", node_id=self.node.id, task=name, stderr=logs.stderr[-500:])
            status = TaskStatus.NOT_STARTED
        if status is TaskStatus.NOT_STARTED:
            task.run(cmd, stdin=json.dumps(payload) if payload is not None else None)
        return TaskStatus.IN_PROGRESS

    def task_failed(self, name: str, logs: TaskLogs) -> None:
        node = self.node
        node.display_state = "failed"
        PageService(self.session, self.services).open(
            f"{name} failed on node {node.id}",
            ("RemoteTaskFailed", node.id, name),
            details={"node_id": node.id, "stdout": logs.stdout[-2000:], "stderr": logs.stderr[-2000:]},
        )
        logger.error("remote_task_failed", node_id=node.id, task=name)

    # ── Provisioning ─────────────────────────────────────────────

    @step
    def start(self):
        if not self.vm_ready():
            self.sleep_and_retry(5)
        self.incr("initial_provisioning")
        self.advance("bootstrap_agent")

    @step
    def bootstrap_agent(self):
        self.set_deadline("wait", 30 * 60)
        self.spawn_child(InstallAgent, {"vm_id": self.node.vm_id})
        self.advance("wait_bootstrap_agent")

    @step
    def wait_bootstrap_agent(self):
        self.harvest_children()
        if self.is_leaf():
            self.advance("configure_database_stack")
        self.yield_to_children()

    @step
    def configure_database_stack(self):
        model = self.model
        status = self.drive_task("configure_lantern", CONFIGURE_CMD, model.configure_payload(), retry_failed=True)
        if status is TaskStatus.SUCCEEDED:
            if self.node.domain:
                self.incr("add_domain")
            self.advance("wait_db_available")
        self.sleep_and_retry(5)

    @step
    def wait_db_available(self):
        model = self.model
        if not model.is_available():
            self.sleep_and_retry(10)
        if self.is_signaled("initial_provisioning"):
            node = self.node
            if node.resource.parent_id is not None and model.is_representative and node.timeline_access == "fetch":
                self.advance("wait_recovery_completion")
            if model.is_standby:
                self.advance("wait_catch_up")
            self.advance("init_sql")
        self.advance("wait")

    @step
    def init_sql(self):
        self.model.run_query(INIT_SQL, db=self.node.resource.db_name)
        self.advance("wait_timeline_available")

    @step
    def wait_catch_up(self):
        node = self.node
        lag = self.resource_model.run_on_representative(
            f"SELECT pg_current_wal_lsn() - replay_lsn FROM pg_stat_replication WHERE application_name = '{node.id}'",
            db="postgres",
        )
        if not lag or int(float(lag)) > MAX_CATCH_UP_LAG_BYTES:
            self.sleep_and_retry(30)
        logger.info("standby_caught_up", node_id=node.id, lag_bytes=lag)
        if node.resource.ha_type == "sync":
            self.advance("wait_synchronization")
        node.synchronization_status = "ready"
        self.advance("wait_timeline_available")

    @step
    def wait_synchronization(self):
        state = self.resource_model.run_on_representative(
            f"SELECT sync_state FROM pg_stat_replication WHERE application_name = '{self.node.id}'",
            db="postgres",
        )
        if state in SYNCHRONOUS_STATES:
            self.node.synchronization_status = "ready"
            self.advance("wait_timeline_available")
        self.sleep_and_retry(30)

    @step
    def wait_recovery_completion(self):
        node = self.node
        model = self.model
        if model.run_query("SELECT pg_is_in_recovery()") == "t":
            if model.run_query("SELECT pg_get_wal_replay_pause_state()") == "paused":
                model.run_query("SELECT pg_wal_replay_resume()")
                logger.info("wal_replay_resumed", node_id=node.id)
            self.sleep_and_retry(5)

        resource = node.resource
        engine = model.installed_extension_version("lantern")
        extras = model.installed_extension_version("lantern_extras")
        if resource.version_upgrade:
            if engine and engine != node.lantern_version:
                self.incr("update_engine_extension")
            if extras and extras != node.extras_version:
                self.incr("update_extras_extension")
        else:
            node.lantern_version = engine or node.lantern_version
            node.extras_version = extras or node.extras_version

        old_timeline_id = node.timeline_id
        timeline = assemble_timeline(self.session, self.services, parent_id=old_timeline_id)
        for sibling in self.resource_model.nodes:
            if sibling.id != node.id and sibling.timeline_id == old_timeline_id:
                sibling.timeline_id = timeline.id
        node.timeline_id = timeline.id
        node.timeline_access = "push"
        self.session.flush()
        self.session.expire(node, ["timeline"])
        logger.info("recovery_completed", node_id=node.id, timeline_id=timeline.id, parent_timeline_id=old_timeline_id)
        self.advance("wait_timeline_available")

    @step
    def wait_timeline_available(self):
        node = self.node
        if node.timeline.gcp_creds_b64 is None:
            self.sleep_and_retry(10)
        self.model.update_env(self.model.walg_env())
        self.advance("wait")

    # ── Steady state ─────────────────────────────────────────────

    @step
    def wait(self):
        if not self.vm_ready():
            self.advance("wait_db_available")
        if self.is_signaled("initial_provisioning"):
            self.clear_signal("initial_provisioning")
        for flag in WAIT_FLAGS:
            if self.is_signaled(flag):
                self.advance(flag)
        if self.is_signaled("take_over"):
            self.advance("take_over")
        if self.is_signaled("checkup"):
            if not self.model.is_available():
                self.advance("unavailable")
            self.decr("checkup")
        self.sleep_and_retry(30)

    @step
    def rotate_password(self):
        self.decr("rotate_password")
        resource = self.node.resource
        if resource.db_user == "postgres" or not resource.db_user_password:
            self.advance("wait")
        verifier = scram_sha256_verifier(resource.db_user_password)
        self.model.run_query(
            "BEGIN; SET LOCAL log_statement = 'none'; "
            f"ALTER ROLE \"{resource.db_user}\" WITH PASSWORD '{verifier}'; COMMIT;"
        )
        logger.info("password_rotated", node_id=self.node.id, user=resource.db_user)
        self.advance("wait")

    @step
    def restart_server(self):
        self.decr("restart_server")
        vm_id = self.node.vm_id
        self.signal(vm_id, "stop_vm")
        self.signal(vm_id, "start_vm")
        self.advance("wait")

    @step
    def start_server(self):
        self.decr("start_server")
        self.signal(self.node.vm_id, "start_vm")
        self.advance("wait_db_available")

    @step
    def stop_server(self):
        self.decr("stop_server")
        self.signal(self.node.vm_id, "stop_vm")
        self.advance("wait")

    @step
    def add_domain(self):
        self.decr("add_domain")
        node = self.node
        if not node.domain:
            self.advance("wait")
        try:
            self.services.dns.upsert_dns_record(node.domain, node.vm.host)
        except DnsError as exc:
            logger.warning("domain_setup_failed", node_id=node.id, domain=node.domain, error=str(exc))
            node.domain = None
            self.advance("wait")
        self.advance("setup_tls")

    @step
    def setup_tls(self):
        node = self.node
        settings = self.settings
        payload = {
            "dns_token": settings.dns_token,
            "dns_zone_id": settings.dns_zone_id,
            "dns_email": settings.dns_email,
            "domain": node.domain,
            "dns_provider": "cloudflare",
        }
        status = self.drive_task("setup_ssl", SETUP_SSL_CMD, payload, retry_failed=False)
        if status is TaskStatus.IN_PROGRESS:
            self.sleep_and_retry(5)
        self.clear_signal("setup_tls")
        if status is TaskStatus.FAILED:
            self.advance("wait")
        self.advance("wait_db_available")

    @step
    def update_agent(self):
        self.decr("update_agent")
        self.spawn_child(InstallAgent, {"vm_id": self.node.vm_id})
        self.advance("wait_update_agent")

    @step
    def wait_update_agent(self):
        self.harvest_children()
        if self.is_leaf():
            for flag in UPGRADE_FLAGS:
                if self.is_signaled(flag):
                    self.advance(flag)
            self.advance("wait_db_available")
        self.yield_to_children()

    def finish_upgrade(self, flag: str, status: TaskStatus) -> None:
        if status is TaskStatus.IN_PROGRESS:
            self.sleep_and_retry(10)
        self.decr(flag)
        if status is TaskStatus.FAILED:
            self.advance("wait")
        self.advance("wait_db_available")

    @step
    def update_engine_extension(self):
        node = self.node
        status = self.drive_task(
            "update_lantern_extension",
            UPDATE_EXTENSION_CMD,
            {"extension": "lantern", "version": node.lantern_version, "db_name": node.resource.db_name},
            retry_failed=False,
        )
        self.finish_upgrade("update_engine_extension", status)

    @step
    def update_extras_extension(self):
        node = self.node
        status = self.drive_task(
            "update_extras_extension",
            UPDATE_EXTENSION_CMD,
            {"extension": "lantern_extras", "version": node.extras_version, "db_name": node.resource.db_name},
            retry_failed=False,
        )
        self.finish_upgrade("update_extras_extension", status)

    @step
    def update_image(self):
        status = self.drive_task(
            "update_docker_image",
            UPDATE_IMAGE_CMD,
            {"container_image": self.model.container_image()},
            retry_failed=False,
        )
        self.finish_upgrade("update_image", status)

    @step
    def resize_storage(self):
        self.decr("resize_storage")
        node = self.node
        node.vm.storage_size_gib = node.target_storage_size_gib
        self.signal(node.vm_id, "update_storage")
        self.advance("wait")

    @step
    def resize_vm(self):
        self.decr("resize_vm")
        node = self.node
        node.vm.machine_type = node.target_vm_size
        self.signal(node.vm_id, "update_size")
        self.advance("wait")

    # ── Failover ─────────────────────────────────────────────────

    @step
    def take_over(self):
        self.decr("take_over")
        node = self.node
        if node.representative_at is not None:
            logger.info("take_over_skipped", node_id=node.id, reason="already representative")
            self.advance("wait")
        current = self.resource_model.representative()
        if current is None:
            self.advance("wait")
        self.update_frame(previous_primary_id=current.id)
        try:
            NodeModel(self.session, self.services, current).set_read_only(True)
        except RemoteCommandError as exc:
            logger.warning("old_primary_unreachable", node_id=current.id, error=str(exc))
        swap_ip(self.services.cloud, node.vm, current.vm)
        self.advance("wait_swap_ip")

    @step
    def wait_swap_ip(self):
        try:
            self.model.run_query("SELECT 1")
        except RemoteCommandError:
            self.sleep_and_retry(5)
        self.advance("promote_server")

    @step
    def promote_server(self):
        node = self.node
        current = self.session.get(NodeTable, self.frame["previous_primary_id"])
        self.model.run_query("SELECT pg_promote(true, 120);")
        node.domain, current.domain = current.domain, node.domain
        self.model.change_replication_mode("master")

        demoted = NodeModel(self.session, self.services, current)
        demoted.change_replication_mode("slave", update_env=False)
        try:
            demoted.update_env([("POSTGRESQL_REPLICATION_MODE", "slave"), *demoted.walg_env()])
            demoted.set_read_only(False)
        except RemoteCommandError as exc:
            logger.warning("old_primary_unreachable", node_id=current.id, error=str(exc))
            self.signal(current.id, "checkup")
        logger.info("failover_completed", node_id=node.id, demoted_node_id=current.id)
        self.advance("wait")

    # ── Self-healing ─────────────────────────────────────────────

    @step
    def unavailable(self):
        node = self.node
        tag = ("NodeUnavailable", node.id)
        pages = PageService(self.session, self.services)
        self.harvest_children()
        if self.model.is_available():
            pages.resolve(tag)
            self.clear_signal("checkup")
            self.update_frame(restart_attempts=0)
            logger.info("node_recovered", node_id=node.id)
            self.advance("wait")
        pages.open(f"Node {node.id} is unavailable", tag, details={"node_id": node.id, "resource_id": node.resource_id})
        attempts = self.frame.get("restart_attempts", 0)
        if self.is_leaf() and attempts < self.settings.max_auto_restarts:
            self.spawn_child(NodeNexus, entry_step="restart")
            self.update_frame(restart_attempts=attempts + 1)
            logger.warning("node_restart_spawned", node_id=node.id, attempt=attempts + 1)
        self.sleep_and_retry(5)

    @step
    def restart(self):
        try:
            self.model.shell.run(RESTART_CMD)
        except RemoteCommandError as exc:
            self.return_({"msg": "lantern server restart failed", "error": str(exc)})
        self.return_("lantern server is restarted")

    # ── Teardown ─────────────────────────────────────────────────

    @step
    def destroy(self):
        self.decr("destroy")
        node = self.node
        self.cancel_children(CANCELLED_BY_DESTROY)
        if node.domain:
            try:
                self.services.dns.delete_dns_record(node.domain)
            except DnsError as exc:
                logger.warning("domain_delete_failed", node_id=node.id, domain=node.domain, error=str(exc))
        self.signal(node.vm_id, "destroy")
        if node.timeline_access == "push":
            self.signal(node.timeline_id, "destroy")
        PageService(self.session, self.services).resolve(("NodeUnavailable", node.id))
        self.session.delete(node)
        self.return_("lantern server was deleted")
