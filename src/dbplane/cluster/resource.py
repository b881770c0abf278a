"""Cluster topology machine: one logical database resource.

Assembly validates the request, creates (or, for a fork, inherits) the
backup lineage and spawns one primary plus the standbys the HA type
requires.  The steady loop keeps the standby count topped up and performs
the fork ⇄ parent leader swap on request.

    start → wait_servers → [enable_logical_replication] → wait
    wait → swap_leaders_with_parent → wait_swap_ip → update_hosts → wait
    destroy
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from dbplane.cluster.models import ResourceModel, TimelineModel, process_step
from dbplane.cluster.node import assemble_node
from dbplane.cluster.timeline import assemble_timeline
from dbplane.cluster.vm import swap_ip
from dbplane.core.errors import NotFoundError, RemoteCommandError
from dbplane.core.hashing import generate_password
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import DoctorTable, ProcessTable, ResourceTable
from dbplane.core.timestamps import generate_ulid, to_iso8601
from dbplane.doctor.machine import assemble_doctor
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program
from dbplane.remote.services import Services
from dbplane.validation import (
    Validator,
    required_standby_count,
    validate_date,
    validate_domain,
    validate_ha_type,
    validate_location,
    validate_name,
    validate_storage_size,
    validate_vm_size,
)

logger = get_logger(__name__)


def assemble_resource(
    session: Session,
    services: Services,
    *,
    name: str,
    location: str | None = None,
    provider: str | None = None,
    org_id: str | None = None,
    app_env: str | None = None,
    ha_type: str = "none",
    target_vm_size: str | None = None,
    target_storage_size_gib: int | None = None,
    lantern_version: str | None = None,
    extras_version: str | None = None,
    minor_version: str | None = None,
    db_name: str = "postgres",
    db_user: str = "postgres",
    db_user_password: str | None = None,
    superuser_password: str | None = None,
    parent_id: str | None = None,
    restore_target: str | datetime | None = None,
    recovery_target_lsn: str | None = None,
    version_upgrade: bool = False,
    logical_replication: bool = False,
    domain: str | None = None,
    label: str | None = None,
) -> ResourceTable:
    """Validate a cluster request and create the resource with its nodes, lineage and doctor.

    Raises:
        ValidationError: field → message map of everything wrong with the request
        NotFoundError: ``parent_id`` names no resource
    """
    settings = services.settings
    location = location or settings.default_location
    provider = provider or settings.provider
    target_vm_size = target_vm_size or settings.default_vm_size
    target_storage_size_gib = target_storage_size_gib or settings.default_storage_size_gib

    v = Validator()
    v.check(validate_name, name)
    v.check(validate_location, location, provider)
    v.check(validate_vm_size, target_vm_size)
    v.check(validate_ha_type, ha_type)
    v.check(validate_storage_size, target_storage_size_gib)
    domain = v.check(validate_domain, domain)

    parent = None
    parent_rep = None
    if parent_id is not None:
        parent = session.get(ResourceTable, parent_id)
        if parent is None:
            raise NotFoundError(f"No resource with id {parent_id}")
        parent_rep = ResourceModel(session, services, parent).representative()
        if parent_rep is None:
            v.add("parent_id", "Parent resource has no representative server")
        else:
            timeline = TimelineModel(session, services, parent_rep.timeline)
            timeline.refresh_earliest_backup_completion_time()
            target = (
                v.check(validate_date, restore_target, "restore_target")
                if restore_target is not None
                else timeline.latest_restore_time()
            )
            earliest, latest = timeline.restore_window()
            if earliest is None:
                v.add("restore_target", "Parent resource has no completed backups to restore from")
            elif target is not None and not earliest <= target <= latest:
                v.add(
                    "restore_target",
                    f"Restore target must be between {to_iso8601(earliest)} and {to_iso8601(latest)}",
                )
            restore_target = target
    v.raise_if_failed()

    if parent is not None:
        superuser_password = parent.superuser_password
        repl_user, repl_password = parent.repl_user, parent.repl_password
        db_name, db_user, db_user_password = parent.db_name, parent.db_user, parent.db_user_password
        if not version_upgrade:
            lantern_version = parent_rep.lantern_version
            extras_version = parent_rep.extras_version
            minor_version = parent_rep.minor_version
    else:
        superuser_password = superuser_password or generate_password()
        repl_user, repl_password = "repl_user", generate_password()
        if db_user != "postgres" and not db_user_password:
            db_user_password = generate_password()

    resource = ResourceTable(
        id=generate_ulid(),
        name=name,
        location=location,
        org_id=org_id,
        app_env=app_env,
        ha_type=ha_type,
        superuser_password=superuser_password,
        db_name=db_name,
        db_user=db_user,
        db_user_password=db_user_password,
        repl_user=repl_user,
        repl_password=repl_password,
        parent_id=parent_id,
        restore_target=restore_target if parent is not None else None,
        recovery_target_lsn=recovery_target_lsn,
        version_upgrade=version_upgrade,
        logical_replication=logical_replication,
        label=label,
        created_at=services.clock.now(),
    )
    session.add(resource)
    session.flush()

    if parent is not None:
        timeline_id, access = parent_rep.timeline_id, "fetch"
    else:
        timeline_id, access = assemble_timeline(session, services).id, "push"

    node_args = dict(
        timeline_id=timeline_id,
        lantern_version=lantern_version or settings.default_lantern_version,
        extras_version=extras_version or settings.default_extras_version,
        minor_version=minor_version or settings.default_minor_version,
        target_vm_size=target_vm_size,
        target_storage_size_gib=target_storage_size_gib,
    )
    assemble_node(session, services, resource, timeline_access=access, representative=True, domain=domain, **node_args)
    for _ in range(required_standby_count(ha_type)):
        assemble_node(session, services, resource, timeline_access="fetch", representative=False, **node_args)

    assemble_doctor(session, services, resource)
    session.add(
        ProcessTable(id=resource.id, program=ResourceNexus.name, step="start", stack=[{}], due_at=services.clock.now())
    )
    session.flush()
    logger.info("resource_assembled", resource_id=resource.id, name=name, ha_type=ha_type, fork_of=parent_id)
    return resource


def create_logical_replica(
    session: Session,
    services: Services,
    resource: ResourceTable,
    *,
    name: str | None = None,
    lantern_version: str | None = None,
    extras_version: str | None = None,
    minor_version: str | None = None,
) -> ResourceTable:
    """Fork ``resource`` at its latest restore point and subscribe the fork to it.

    The replica is sized like the parent's representative and runs its
    versions unless newer ones are given.
    """
    representative = ResourceModel(session, services, resource).representative()
    if representative is None:
        raise NotFoundError(f"Resource {resource.id} has no representative server")
    return assemble_resource(
        session,
        services,
        name=name or f"{resource.name}-replica",
        location=resource.location,
        org_id=resource.org_id,
        app_env=resource.app_env,
        ha_type=resource.ha_type,
        target_vm_size=representative.target_vm_size,
        target_storage_size_gib=representative.target_storage_size_gib,
        lantern_version=lantern_version or representative.lantern_version,
        extras_version=extras_version or representative.extras_version,
        minor_version=minor_version or representative.minor_version,
        parent_id=resource.id,
        version_upgrade=True,
        logical_replication=True,
        label=resource.label,
    )


@register_program
class ResourceNexus(Program):
    name = "Resource"

    @property
    def resource(self) -> ResourceTable:
        return self.session.get(ResourceTable, self.subject_id)

    @property
    def model(self) -> ResourceModel:
        return ResourceModel(self.session, self.services, self.resource)

    @step
    def start(self):
        self.advance("wait_servers")

    @step
    def wait_servers(self):
        nodes = self.model.nodes
        if not nodes or any(process_step(self.session, n.id) != "wait" for n in nodes):
            self.sleep_and_retry(5)
        resource = self.resource
        if resource.logical_replication and resource.parent_id is not None:
            self.advance("enable_logical_replication")
        self.advance("wait")

    @step
    def enable_logical_replication(self):
        resource = self.resource
        parent = self.session.get(ResourceTable, resource.parent_id)
        ResourceModel(self.session, self.services, parent).create_publication()
        self.model.create_and_enable_subscription(parent)
        logger.info("logical_replication_enabled", resource_id=resource.id, parent_id=parent.id)
        self.advance("wait")

    @step
    def wait(self):
        resource = self.resource
        model = self.model
        representative = model.representative()

        if resource.display_state == "failed" and representative is not None:
            if process_step(self.session, representative.id) == "wait":
                resource.display_state = None

        if representative is not None:
            missing = model.required_standby_count - len(model.standbys())
            for _ in range(missing):
                node = assemble_node(
                    self.session,
                    self.services,
                    resource,
                    timeline_id=representative.timeline_id,
                    timeline_access="fetch",
                    representative=False,
                    lantern_version=representative.lantern_version,
                    extras_version=representative.extras_version,
                    minor_version=representative.minor_version,
                    target_vm_size=representative.target_vm_size,
                    target_storage_size_gib=representative.target_storage_size_gib,
                )
                logger.info("standby_replaced", resource_id=resource.id, node_id=node.id)

        if self.is_signaled("swap_leaders_with_parent"):
            self.advance("swap_leaders_with_parent")
        self.sleep_and_retry(30)

    # ── Fork ⇄ parent swap ───────────────────────────────────────

    @step
    def swap_leaders_with_parent(self):
        resource = self.resource
        parent = self.session.get(ResourceTable, resource.parent_id) if resource.parent_id else None
        if parent is None:
            self.decr("swap_leaders_with_parent")
            logger.warning("swap_skipped", resource_id=resource.id, reason="no parent")
            self.advance("wait")
        parent_model = ResourceModel(self.session, self.services, parent)
        mine, theirs = self.model.representative(), parent_model.representative()
        if mine is None or theirs is None:
            # one side is mid-failover
            logger.info("swap_waiting_for_representatives", resource_id=resource.id, parent_id=parent.id)
            self.sleep_and_retry(15)
        self.decr("swap_leaders_with_parent")
        parent_model.set_to_readonly(True)
        self.model.set_to_readonly(True)
        if resource.logical_replication:
            self.model.disable_logical_subscription()
        swap_ip(self.services.cloud, mine.vm, theirs.vm)
        self.update_frame(swap_parent_id=parent.id)
        self.advance("wait_swap_ip")

    @step
    def wait_swap_ip(self):
        try:
            self.model.run_on_representative("SELECT 1", db="postgres")
        except RemoteCommandError:
            self.sleep_and_retry(5)
        self.advance("update_hosts")

    @step
    def update_hosts(self):
        resource = self.resource
        parent = self.session.get(ResourceTable, self.frame["swap_parent_id"])
        mine = self.model.representative()
        theirs = ResourceModel(self.session, self.services, parent).representative()
        if mine is None or theirs is None:
            self.sleep_and_retry(15)
        mine.domain, theirs.domain = theirs.domain, mine.domain
        for node in (mine, theirs):
            if node.domain:
                self.signal(node.id, "setup_tls")
        resource.parent_id = None
        self.model.set_to_readonly(False)
        logger.info("leaders_swapped", resource_id=resource.id, parent_id=parent.id)
        self.advance("wait")

    # ── Teardown ─────────────────────────────────────────────────

    @step
    def destroy(self):
        resource = self.resource
        nodes = self.model.nodes
        if not self.frame.get("destroy_signaled"):
            for node in nodes:
                self.signal(node.id, "destroy")
            for doctor_id in self.doctor_ids():
                self.signal(doctor_id, "destroy")
            resource.display_state = "deleting"
            self.update_frame(destroy_signaled=True)
        if nodes:
            self.sleep_and_retry(5)
        self.decr("destroy")
        if resource.service_account_name is not None:
            self.services.cloud.remove_service_account(resource.service_account_name)
        self.session.delete(resource)
        self.return_("resource is deleted")

    def doctor_ids(self) -> list[str]:
        return list(self.session.scalars(select(DoctorTable.id).where(DoctorTable.resource_id == self.resource.id)))
