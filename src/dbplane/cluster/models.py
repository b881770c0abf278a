"""Domain helpers over the cluster tables.

The machines in this package keep their rows plain and put behaviour here:
``TimelineModel`` (backups, restore window, wal-g config), ``NodeModel``
(queries on the server, availability, replication role, payloads) and
``ResourceModel`` (representative, standby count, logical replication,
aggregated display state).  Each wraps one row together with the session
and the collaborator bundle of the invocation using it.
"""

from __future__ import annotations

import json
import shlex
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from dbplane.core.errors import DbplaneError, RemoteCommandError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import NodeTable, ProcessTable, ResourceTable, TimelineTable
from dbplane.core.timestamps import to_iso8601
from dbplane.execution.signals import SignalStore
from dbplane.remote.daemonizer import RemoteTask, TaskStatus
from dbplane.remote.protocols import BlobObject, Shell
from dbplane.validation import required_standby_count

if TYPE_CHECKING:
    from dbplane.remote.services import Services

logger = get_logger(__name__)

BASEBACKUP_DIR = "basebackups_005"
SENTINEL_SUFFIX = "_backup_stop_sentinel.json"

PSQL_CMD = "sudo lantern/bin/exec psql -q -t --csv -U {user} {db}"
UPDATE_ENV_CMD = "sudo lantern/bin/update_env"
LOGS_CMD = "sudo lantern/bin/logs --tail 5"
TAKE_BACKUP_CMD = "sudo lantern/bin/take_backup"

BACKUP_MAX_AGE = timedelta(hours=24)
CLEANUP_INTERVAL = timedelta(hours=24)
RESTORE_OFFSET = timedelta(minutes=5)

# failed > updating > unavailable > running
DISPLAY_STATE_RANK = {"running": 1, "unavailable": 2, "updating": 3, "failed": 4}

UPDATING_STEPS = frozenset(
    {
        "init_sql",
        "update_agent",
        "wait_update_agent",
        "update_engine_extension",
        "update_extras_extension",
        "update_image",
        "rotate_password",
        "resize_storage",
        "resize_vm",
    }
)
FAILOVER_STEPS = frozenset({"take_over", "wait_swap_ip", "promote_server"})
VM_PASSTHROUGH_STATES = frozenset({"failed", "starting", "stopping", "stopped", "updating"})


# ── Backup keys ──────────────────────────────────────────────────


def backup_label_from_key(timeline_id: str, key: str) -> str:
    """Strip ``<id>/basebackups_005/`` and the stop-sentinel suffix from a blob key."""
    prefix = f"{timeline_id}/{BASEBACKUP_DIR}/"
    return key.removeprefix(prefix).removesuffix(SENTINEL_SUFFIX)


def backup_key_for_label(timeline_id: str, label: str) -> str:
    return f"{timeline_id}/{BASEBACKUP_DIR}/{label}{SENTINEL_SUFFIX}"


def next_storage_size(current_gib: int, maximum_gib: int) -> int | None:
    """Autoresize target: ``min(current * 1.5, maximum)``, or None when that would not grow."""
    new_size = min(int(current_gib * 1.5), maximum_gib)
    return new_size if new_size > current_gib else None


def worst_display_state(states: list[str]) -> str | None:
    ranked = [s for s in states if s in DISPLAY_STATE_RANK]
    if not ranked:
        return None
    return max(ranked, key=DISPLAY_STATE_RANK.__getitem__)


def process_step(session: Session, process_id: str) -> str | None:
    process = session.get(ProcessTable, process_id)
    return process.step if process is not None else None


# ── Timeline ─────────────────────────────────────────────────────


class TimelineModel:
    """One branch of WAL history and its backups."""

    def __init__(self, session: Session, services: Services, timeline: TimelineTable) -> None:
        self.session = session
        self.services = services
        self.row = timeline

    @property
    def bucket(self) -> str:
        return self.services.settings.backup_bucket

    @property
    def walg_prefix(self) -> str:
        return f"gs://{self.bucket}/{self.row.id}"

    def generate_walg_config(self) -> dict[str, str | None]:
        return {"gcp_creds_b64": self.row.gcp_creds_b64, "walg_gs_prefix": self.walg_prefix}

    def leader(self) -> NodeTable | None:
        return self.session.scalar(
            select(NodeTable)
            .where(NodeTable.timeline_id == self.row.id, NodeTable.timeline_access == "push")
            .order_by(NodeTable.created_at)
        )

    def backups(self) -> list[BlobObject]:
        objects = self.services.blob.list_objects(self.bucket, f"{self.row.id}/{BASEBACKUP_DIR}/")
        return [obj for obj in objects if obj.key.endswith(SENTINEL_SUFFIX)]

    def latest_backup_label_before_target(self, target: datetime) -> str:
        candidates = [b for b in self.backups() if b.last_modified < target]
        if not candidates:
            raise DbplaneError(f"no backup of timeline {self.row.id} completed before {to_iso8601(target)}")
        latest = max(candidates, key=lambda b: b.last_modified)
        return backup_label_from_key(self.row.id, latest.key)

    def refresh_earliest_backup_completion_time(self) -> datetime | None:
        backups = self.backups()
        earliest = min((b.last_modified for b in backups), default=None)
        self.row.earliest_backup_completed_at = earliest
        return earliest

    def earliest_restore_time(self) -> datetime | None:
        completed = self.row.earliest_backup_completed_at or self.refresh_earliest_backup_completion_time()
        if completed is None:
            return None
        offset = timedelta(0) if self.services.settings.e2e_test else RESTORE_OFFSET
        return completed + offset

    def latest_restore_time(self) -> datetime:
        return self.services.clock.now()

    def restore_window(self) -> tuple[datetime | None, datetime]:
        return self.earliest_restore_time(), self.latest_restore_time()

    def latest_backup_at(self) -> datetime:
        """Most recent completed backup, the timeline's creation counting as the first."""
        return max((b.last_modified for b in self.backups()), default=self.row.created_at)

    # --- remote checks (run on the leader) ---

    def leader_task(self, name: str) -> RemoteTask | None:
        leader = self.leader()
        if leader is None:
            return None
        return self.services.task(leader.vm, name)

    def need_backup(self) -> bool:
        task = self.leader_task("take_postgres_backup")
        if task is None:
            return False
        status = task.check()
        if status in (TaskStatus.NOT_STARTED, TaskStatus.FAILED):
            return True
        if status is TaskStatus.SUCCEEDED:
            started = self.row.latest_backup_started_at
            return started is None or self.services.clock.now() - started > BACKUP_MAX_AGE
        return False

    def need_cleanup(self) -> bool:
        task = self.leader_task("delete_old_backups")
        if task is None:
            return False
        status = task.check()
        if status in (TaskStatus.NOT_STARTED, TaskStatus.FAILED):
            return True
        if status is TaskStatus.SUCCEEDED:
            started = self.row.latest_cleanup_started_at
            return started is None or self.services.clock.now() - started > CLEANUP_INTERVAL
        return False

    def cleanup_command(self) -> str:
        retention = self.services.settings.backup_retention_days
        cutoff = self.services.clock.now() - timedelta(days=retention)
        return (
            "sudo lantern/bin/exec wal-g delete retain FULL "
            f"{retention} --after {cutoff:%Y-%m-%dT%H:%M:%SZ} --confirm"
        )


# ── Node ─────────────────────────────────────────────────────────


class NodeModel:
    """One database server: its shell, queries and replication role."""

    def __init__(self, session: Session, services: Services, node: NodeTable) -> None:
        self.session = session
        self.services = services
        self.row = node

    @property
    def vm(self):
        return self.row.vm

    @property
    def resource(self) -> ResourceTable:
        return self.row.resource

    @property
    def shell(self) -> Shell:
        return self.services.shell_for(self.row.vm)

    def task(self, name: str) -> RemoteTask:
        return self.services.task(self.row.vm, name)

    @property
    def is_primary(self) -> bool:
        return self.row.timeline_access == "push"

    @property
    def is_representative(self) -> bool:
        return self.row.representative_at is not None

    @property
    def is_standby(self) -> bool:
        return not self.is_representative

    # --- database access ---

    def run_query(self, sql: str, db: str = "postgres", user: str = "postgres") -> str:
        """Run ``sql`` through psql on the node; CSV output without headers."""
        cmd = PSQL_CMD.format(user=shlex.quote(user), db=shlex.quote(db))
        return self.shell.run(cmd, stdin=sql).strip()

    def list_all_databases(self) -> list[str]:
        out = self.run_query(
            "SELECT datname FROM pg_database WHERE datistemplate = false AND datname != 'postgres'"
        )
        return ["postgres"] + [line.strip() for line in out.splitlines() if line.strip()]

    def is_available(self) -> bool:
        try:
            self.run_query("SELECT 1")
            return True
        except RemoteCommandError:
            pass
        try:
            logs = self.shell.run(LOGS_CMD)
        except RemoteCommandError:
            return False
        return "redo in progress" in logs

    def installed_extension_version(self, extension: str) -> str | None:
        out = self.run_query(
            f"SELECT extversion FROM pg_extension WHERE extname = '{extension}'", db=self.resource.db_name
        )
        return out or None

    def set_read_only(self, enabled: bool) -> None:
        value = "on" if enabled else "off"
        self.run_query(
            f"ALTER SYSTEM SET default_transaction_read_only TO {value}; SELECT pg_reload_conf();"
        )

    # --- configuration ---

    def container_image(self) -> str:
        settings = self.services.settings
        return (
            f"{settings.container_image}:lantern-{self.row.lantern_version}"
            f"-extras-{self.row.extras_version}-minor-{self.row.minor_version}"
        )

    def query_string(self, user: str | None = None, password: str | None = None) -> str | None:
        resource = self.resource
        host = self.row.domain or self.vm.host
        if host is None:
            return None
        user = user or resource.db_user
        password = password if password is not None else (
            resource.superuser_password if user == "postgres" else resource.db_user_password
        )
        return f"postgres://{user}:{password}@{host}:6432/{resource.db_name}"

    def update_env(self, pairs: list[tuple[str, str]]) -> None:
        self.shell.run(UPDATE_ENV_CMD, stdin=json.dumps([list(p) for p in pairs]))

    def walg_env(self) -> list[tuple[str, str]]:
        config = TimelineModel(self.session, self.services, self.row.timeline).generate_walg_config()
        return [
            ("WALG_GS_PREFIX", config["walg_gs_prefix"]),
            ("GOOGLE_APPLICATION_CREDENTIALS_WALG_B64", config["gcp_creds_b64"] or ""),
            ("POSTGRESQL_RECOVER_FROM_BACKUP", ""),
        ]

    def change_replication_mode(self, mode: str, *, update_env: bool = True) -> None:
        """Flip the role: ``master`` takes push access and representation, ``slave`` the reverse."""
        if mode == "master":
            self.row.timeline_access = "push"
            self.row.representative_at = self.services.clock.now()
        else:
            self.row.timeline_access = "fetch"
            self.row.representative_at = None
        if update_env:
            self.update_env([("POSTGRESQL_REPLICATION_MODE", mode), *self.walg_env()])

    def configure_payload(self) -> dict:
        node = self.row
        resource = self.resource
        timeline = TimelineModel(self.session, self.services, node.timeline)
        walg = timeline.generate_walg_config()
        restoring = resource.parent_id is not None and self.is_representative and node.timeline_access == "fetch"

        backup_label = ""
        if restoring:
            target = resource.restore_target or self.services.clock.now()
            backup_label = timeline.latest_backup_label_before_target(target)
        elif self.is_standby:
            backup_label = "LATEST"

        master_host = ""
        if self.is_standby:
            representative = ResourceModel(self.session, self.services, resource).representative()
            master_host = representative.vm.host if representative is not None else ""

        payload = {
            "enable_coredumps": True,
            "org_id": resource.org_id,
            "instance_id": resource.id,
            "instance_type": "writer" if self.is_representative else "reader",
            "app_env": resource.app_env,
            "repl_user": resource.repl_user,
            "repl_password": resource.repl_password,
            "replication_mode": "master" if self.is_representative else "slave",
            "db_name": resource.db_name,
            "db_user": resource.db_user,
            "db_user_password": resource.db_user_password,
            "postgres_password": resource.superuser_password,
            "master_host": master_host,
            "master_port": 5432,
            "container_image": self.container_image(),
            "lantern_version": node.lantern_version,
            "extras_version": node.extras_version,
            "postgresql_recover_from_backup": backup_label,
            "postgresql_recovery_target_time": to_iso8601(resource.restore_target) if restoring and resource.restore_target else "",
            "postgresql_recovery_target_lsn": (resource.recovery_target_lsn or "") if restoring else "",
        }
        if node.timeline_access == "push":
            payload["gcp_creds_walg_b64"] = walg["gcp_creds_b64"] or ""
            payload["walg_gs_prefix"] = walg["walg_gs_prefix"]
        else:
            payload["gcp_creds_walg_pull_b64"] = walg["gcp_creds_b64"] or ""
            payload["walg_pull_gs_prefix"] = walg["walg_gs_prefix"]
        return payload

    def autoresize_disk(self) -> int | None:
        """Grow the target storage by half, bounded by the node's maximum; returns the new size."""
        node = self.row
        new_size = next_storage_size(node.target_storage_size_gib, node.max_storage_autoresize_gib)
        if new_size is None:
            logger.info("autoresize_skipped", node_id=node.id, target=node.target_storage_size_gib)
            return None
        node.target_storage_size_gib = new_size
        SignalStore(self.session).incr(node.id, "resize_storage")
        logger.info("autoresize_scheduled", node_id=node.id, new_size_gib=new_size)
        return new_size

    # --- state ---

    def display_state(self) -> str:
        node = self.row
        step = process_step(self.session, node.id)
        if step == "destroy" or SignalStore(self.session).is_set(node.id, "destroy"):
            return "deleting"
        if node.display_state == "failed":
            return "failed"
        vm_state = node.vm.display_state if node.vm is not None else None
        if vm_state in VM_PASSTHROUGH_STATES:
            return vm_state
        if step == "add_domain":
            return "domain setup"
        if step == "setup_tls":
            return "ssl setup"
        if step in UPDATING_STEPS:
            return "updating"
        if step in ("wait_db_available", "unavailable"):
            return "unavailable"
        if step in FAILOVER_STEPS:
            return "failover"
        if step == "wait":
            return "running"
        return "creating"

    def record_pulse(self, reading: str, *, threshold: int, timeout_seconds: float) -> bool:
        """Track consecutive readings; True when a down streak should trigger a checkup."""
        node = self.row
        now = self.services.clock.now()
        if reading == node.pulse_reading:
            node.pulse_repeat += 1
        else:
            node.pulse_reading = reading
            node.pulse_repeat = 1
            node.pulse_changed_at = now
        return (
            reading == "down"
            and node.pulse_repeat >= threshold
            and (now - node.pulse_changed_at).total_seconds() > timeout_seconds
        )


# ── Resource ─────────────────────────────────────────────────────


class ResourceModel:
    """A logical cluster: its nodes, representative and fork relationship."""

    def __init__(self, session: Session, services: Services, resource: ResourceTable) -> None:
        self.session = session
        self.services = services
        self.row = resource

    @property
    def nodes(self) -> list[NodeTable]:
        return list(
            self.session.scalars(
                select(NodeTable).where(NodeTable.resource_id == self.row.id).order_by(NodeTable.created_at)
            )
        )

    @property
    def required_standby_count(self) -> int:
        return required_standby_count(self.row.ha_type)

    def representative(self) -> NodeTable | None:
        return next((n for n in self.nodes if n.representative_at is not None), None)

    def node_model(self, node: NodeTable) -> NodeModel:
        return NodeModel(self.session, self.services, node)

    def standbys(self) -> list[NodeTable]:
        return [n for n in self.nodes if n.representative_at is None]

    def run_on_representative(self, sql: str, db: str | None = None, user: str = "postgres") -> str:
        representative = self.representative()
        if representative is None:
            raise DbplaneError(f"resource {self.row.id} has no representative node")
        return self.node_model(representative).run_query(sql, db=db or self.row.db_name, user=user)

    def set_to_readonly(self, enabled: bool = True) -> None:
        representative = self.representative()
        if representative is not None:
            self.node_model(representative).set_read_only(enabled)

    # --- logical replication ---

    def publication_name(self) -> str:
        return f"pub_{self.row.id.lower()}"

    def subscription_name(self) -> str:
        return f"sub_{self.row.id.lower()}"

    def create_publication(self, name: str | None = None) -> None:
        name = name or self.publication_name()
        self.run_on_representative(
            f"DO $$ BEGIN IF NOT EXISTS (SELECT 1 FROM pg_publication WHERE pubname = '{name}') THEN "
            f"CREATE PUBLICATION {name} FOR ALL TABLES; END IF; END $$;"
        )

    def create_and_enable_subscription(self, publisher: ResourceTable) -> None:
        parent = ResourceModel(self.session, self.services, publisher)
        representative = parent.representative()
        if representative is None:
            raise DbplaneError(f"resource {publisher.id} has no representative node")
        conninfo = (
            f"host={representative.vm.host} port=5432 user=postgres "
            f"password={publisher.superuser_password} dbname={publisher.db_name}"
        )
        name = self.subscription_name()
        self.run_on_representative(
            f"CREATE SUBSCRIPTION {name} CONNECTION '{conninfo}' PUBLICATION {parent.publication_name()} "
            "WITH (copy_data = false, create_slot = true, enabled = true);"
        )

    def disable_logical_subscription(self) -> None:
        self.run_on_representative(f"ALTER SUBSCRIPTION {self.subscription_name()} DISABLE;")

    # --- state ---

    def display_state(self) -> str:
        if self.row.display_state is not None:
            return self.row.display_state
        nodes = self.nodes
        if not nodes:
            return "creating"
        states = [self.node_model(n).display_state() for n in nodes]
        representative = self.representative()
        rep_state = self.node_model(representative).display_state() if representative is not None else states[0]
        if rep_state not in DISPLAY_STATE_RANK:
            return rep_state
        return worst_display_state(states) or rep_state
