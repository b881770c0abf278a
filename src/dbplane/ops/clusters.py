"""
Cluster operations.

Every mutating operation either assembles new processes (create, fork) or
raises signal flags on existing ones; the machines do the actual work on
their next invocation.  Targets (versions, sizes, domains, passwords) are
written to the rows first so that the step reading the flag sees them.
"""

from __future__ import annotations

from sqlalchemy import func, select

from dbplane.cluster.models import NodeModel, ResourceModel, TimelineModel, process_step
from dbplane.cluster.resource import assemble_resource
from dbplane.core.errors import NotFoundError, ValidationError
from dbplane.core.hashing import generate_password
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import NodeTable, ResourceTable
from dbplane.execution.signals import SignalStore
from dbplane.ops.context import OperationContext, operation_failed
from dbplane.ops.requests import (
    CreateClusterRequest,
    ListClustersRequest,
    NodeActionRequest,
    ResizeRequest,
    UpgradeRequest,
)
from dbplane.ops.responses import ClusterDetail, ClusterSummary, NodeSummary, SignalAccepted
from dbplane.ops.result import OperationResult, PagedResult, start_timer
from dbplane.validation import (
    Validator,
    validate_domain,
    validate_password,
    validate_storage_size,
    validate_vm_size,
)

logger = get_logger(__name__)

# CLI action name → node signal flag
NODE_ACTIONS: dict[str, str] = {
    "start": "start_server",
    "stop": "stop_server",
    "restart": "restart_server",
    "take-over": "take_over",
    "update-agent": "update_agent",
    "setup-tls": "setup_tls",
}


# ------------------------------------------------------------------ #
# Lookups and projections
# ------------------------------------------------------------------ #


def _resource(ctx: OperationContext, resource_id: str) -> ResourceTable:
    resource = ctx.session.get(ResourceTable, resource_id)
    if resource is None:
        raise NotFoundError(f"No cluster with id {resource_id}")
    return resource


def _node(ctx: OperationContext, node_id: str) -> NodeTable:
    node = ctx.session.get(NodeTable, node_id)
    if node is None:
        raise NotFoundError(f"No node with id {node_id}")
    return node


def _representative(ctx: OperationContext, resource: ResourceTable) -> NodeTable:
    representative = ResourceModel(ctx.session, ctx.services, resource).representative()
    if representative is None:
        raise ValidationError(details={"resource_id": f"cluster {resource.id} has no representative server"})
    return representative


def _accepted(ctx: OperationContext, process_id: str, name: str) -> SignalAccepted:
    return SignalAccepted(process_id=process_id, signal=name, count=ctx.signal(process_id, name), dry_run=ctx.dry_run)


def _node_summary(ctx: OperationContext, node: NodeTable) -> NodeSummary:
    model = NodeModel(ctx.session, ctx.services, node)
    return NodeSummary(
        id=node.id,
        vm_name=node.vm.name,
        role="primary" if model.is_representative else "standby",
        timeline_access=node.timeline_access,
        step=process_step(ctx.session, node.id),
        display_state=model.display_state(),
        host=node.vm.host,
        domain=node.domain,
        versions=f"{node.lantern_version}/{node.extras_version}/{node.minor_version}",
    )


def _cluster_summary(ctx: OperationContext, resource: ResourceTable) -> ClusterSummary:
    model = ResourceModel(ctx.session, ctx.services, resource)
    return ClusterSummary(
        id=resource.id,
        name=resource.name,
        location=resource.location,
        ha_type=resource.ha_type,
        display_state=model.display_state(),
        node_count=len(model.nodes),
        parent_id=resource.parent_id,
        label=resource.label,
        created_at=resource.created_at,
    )


# ------------------------------------------------------------------ #
# Create / read / delete
# ------------------------------------------------------------------ #


def create_cluster(ctx: OperationContext, request: CreateClusterRequest) -> OperationResult[ClusterSummary]:
    """Validate and assemble a new cluster, or a fork when ``parent_id`` is set.

    Under dry-run every check (including the fork restore window) runs and
    the assembled rows are discarded.
    """
    timer = start_timer()
    try:
        v = Validator()
        if request.superuser_password is not None:
            v.check(validate_password, request.superuser_password, "superuser_password")
        if request.db_user_password is not None:
            v.check(validate_password, request.db_user_password, "db_user_password")
        v.raise_if_failed()

        resource = assemble_resource(
            ctx.session,
            ctx.services,
            name=request.name,
            location=request.location,
            org_id=request.org_id,
            app_env=request.app_env,
            ha_type=request.ha_type,
            target_vm_size=request.vm_size,
            target_storage_size_gib=request.storage_size_gib,
            lantern_version=request.lantern_version,
            extras_version=request.extras_version,
            minor_version=request.minor_version,
            db_name=request.db_name,
            db_user=request.db_user,
            db_user_password=request.db_user_password,
            superuser_password=request.superuser_password,
            parent_id=request.parent_id,
            restore_target=request.restore_target,
            recovery_target_lsn=request.recovery_target_lsn,
            version_upgrade=request.version_upgrade,
            logical_replication=request.logical_replication,
            domain=request.domain,
            label=request.label,
        )
        summary = _cluster_summary(ctx, resource)
        ctx.commit()
        logger.info("cluster_created", resource_id=resource.id, fork_of=request.parent_id, dry_run=ctx.dry_run)
        return OperationResult.ok(summary, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "create_cluster", timer.elapsed_ms)


def list_clusters(ctx: OperationContext, request: ListClustersRequest) -> PagedResult[ClusterSummary]:
    timer = start_timer()
    try:
        stmt = select(ResourceTable)
        count_stmt = select(func.count()).select_from(ResourceTable)
        if request.org_id is not None:
            stmt = stmt.where(ResourceTable.org_id == request.org_id)
            count_stmt = count_stmt.where(ResourceTable.org_id == request.org_id)
        total = ctx.session.scalar(count_stmt) or 0
        rows = ctx.session.scalars(
            stmt.order_by(ResourceTable.created_at, ResourceTable.id).limit(request.limit).offset(request.offset)
        )
        items = [_cluster_summary(ctx, row) for row in rows]
        return PagedResult.from_items(
            items, total=total, limit=request.limit, offset=request.offset, elapsed_ms=timer.elapsed_ms
        )
    except Exception as exc:
        return operation_failed(ctx, exc, "list_clusters", timer.elapsed_ms)


def get_cluster(ctx: OperationContext, resource_id: str) -> OperationResult[ClusterDetail]:
    """Cluster, its nodes, pending flags and (when backups exist) its restore window."""
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        model = ResourceModel(ctx.session, ctx.services, resource)
        window = (None, None)
        representative = model.representative()
        if representative is not None:
            window = TimelineModel(ctx.session, ctx.services, representative.timeline).restore_window()
        detail = ClusterDetail(
            id=resource.id,
            name=resource.name,
            location=resource.location,
            ha_type=resource.ha_type,
            display_state=model.display_state(),
            db_name=resource.db_name,
            db_user=resource.db_user,
            parent_id=resource.parent_id,
            restore_window=window,
            nodes=[_node_summary(ctx, node) for node in model.nodes],
            signals=SignalStore(ctx.session).names(resource.id),
        )
        # restore_window may cache the earliest backup time on the timeline row
        ctx.commit()
        return OperationResult.ok(detail, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "get_cluster", timer.elapsed_ms)


def delete_cluster(ctx: OperationContext, resource_id: str) -> OperationResult[SignalAccepted]:
    """Request teardown; the cluster machine fans ``destroy`` out to nodes and doctors."""
    timer = start_timer()
    try:
        _resource(ctx, resource_id)
        accepted = _accepted(ctx, resource_id, "destroy")
        ctx.commit()
        logger.info("cluster_delete_requested", resource_id=resource_id, dry_run=ctx.dry_run)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "delete_cluster", timer.elapsed_ms)


# ------------------------------------------------------------------ #
# Day-two operations
# ------------------------------------------------------------------ #


def resize_cluster(ctx: OperationContext, request: ResizeRequest) -> OperationResult[list[SignalAccepted]]:
    """Set new storage and/or machine-size targets on every node and signal the resize."""
    timer = start_timer()
    try:
        resource = _resource(ctx, request.resource_id)
        nodes = ResourceModel(ctx.session, ctx.services, resource).nodes
        v = Validator()
        if request.storage_size_gib is None and request.vm_size is None:
            v.add("size", "Give a storage size, a VM size or both")
        if request.storage_size_gib is not None:
            v.check(validate_storage_size, request.storage_size_gib)
            smallest = min((n.target_storage_size_gib for n in nodes), default=0)
            if request.storage_size_gib < smallest:
                v.add("storage_size_gib", f"Storage can not shrink below the current {smallest} GiB")
        if request.vm_size is not None:
            v.check(validate_vm_size, request.vm_size)
        v.raise_if_failed()

        accepted = []
        for node in nodes:
            if request.storage_size_gib is not None and request.storage_size_gib != node.target_storage_size_gib:
                node.target_storage_size_gib = request.storage_size_gib
                node.max_storage_autoresize_gib = max(node.max_storage_autoresize_gib, request.storage_size_gib)
                accepted.append(_accepted(ctx, node.id, "resize_storage"))
            if request.vm_size is not None and request.vm_size != node.target_vm_size:
                node.target_vm_size = request.vm_size
                accepted.append(_accepted(ctx, node.id, "resize_vm"))
        ctx.commit()
        logger.info("cluster_resize_requested", resource_id=resource.id, signals=len(accepted))
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "resize_cluster", timer.elapsed_ms)


def upgrade_cluster(ctx: OperationContext, request: UpgradeRequest) -> OperationResult[list[SignalAccepted]]:
    """Record new versions and flag the matching upgrade steps.

    Every node gets the new image; extension upgrades only run on the
    representative since standbys replay them from WAL.
    """
    timer = start_timer()
    try:
        resource = _resource(ctx, request.resource_id)
        model = ResourceModel(ctx.session, ctx.services, resource)
        accepted = []
        for node in model.nodes:
            flags = []
            if request.update_agent:
                flags.append("update_agent")
            representative = node.representative_at is not None
            if request.lantern_version and request.lantern_version != node.lantern_version:
                node.lantern_version = request.lantern_version
                if representative:
                    flags.append("update_engine_extension")
            if request.extras_version and request.extras_version != node.extras_version:
                node.extras_version = request.extras_version
                if representative:
                    flags.append("update_extras_extension")
            if request.minor_version and request.minor_version != node.minor_version:
                node.minor_version = request.minor_version
            if ctx.session.is_modified(node):
                flags.append("update_image")
            accepted.extend(_accepted(ctx, node.id, flag) for flag in flags)
        if not accepted:
            raise ValidationError(details={"version": "Nothing to upgrade: versions already match"})
        ctx.commit()
        logger.info("cluster_upgrade_requested", resource_id=resource.id, signals=len(accepted))
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "upgrade_cluster", timer.elapsed_ms)


def rotate_password(
    ctx: OperationContext, resource_id: str, password: str | None = None
) -> OperationResult[SignalAccepted]:
    """Store a new application-user password and have the representative apply it."""
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        if resource.db_user == "postgres":
            raise ValidationError(details={"db_user": "The superuser password is not rotated this way"})
        if password is not None:
            validate_password(password)
        resource.db_user_password = password or generate_password()
        accepted = _accepted(ctx, _representative(ctx, resource).id, "rotate_password")
        ctx.commit()
        logger.info("password_rotation_requested", resource_id=resource.id)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "rotate_password", timer.elapsed_ms)


def add_domain(ctx: OperationContext, resource_id: str, domain: str) -> OperationResult[SignalAccepted]:
    """Point ``domain`` at the representative; the node creates the record and a certificate."""
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        domain = validate_domain(domain)
        representative = _representative(ctx, resource)
        representative.domain = domain
        accepted = _accepted(ctx, representative.id, "add_domain")
        ctx.commit()
        logger.info("domain_requested", resource_id=resource.id, domain=domain)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "add_domain", timer.elapsed_ms)


def restart_cluster(ctx: OperationContext, resource_id: str) -> OperationResult[list[SignalAccepted]]:
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        nodes = ResourceModel(ctx.session, ctx.services, resource).nodes
        accepted = [_accepted(ctx, node.id, "restart_server") for node in nodes]
        ctx.commit()
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "restart_cluster", timer.elapsed_ms)


def swap_leaders(ctx: OperationContext, resource_id: str) -> OperationResult[SignalAccepted]:
    """Promote a fork in place of its parent (domains and static IPs are exchanged)."""
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        if resource.parent_id is None:
            raise ValidationError(details={"parent_id": f"cluster {resource.id} is not a fork"})
        accepted = _accepted(ctx, resource.id, "swap_leaders_with_parent")
        ctx.commit()
        logger.info("leader_swap_requested", resource_id=resource.id, parent_id=resource.parent_id)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "swap_leaders", timer.elapsed_ms)


def trigger_backup(ctx: OperationContext, resource_id: str) -> OperationResult[SignalAccepted]:
    """Ask the representative's timeline for a base backup now."""
    timer = start_timer()
    try:
        resource = _resource(ctx, resource_id)
        representative = _representative(ctx, resource)
        if representative.timeline_access != "push":
            raise ValidationError(
                details={"resource_id": f"cluster {resource.id} does not archive yet (still restoring)"}
            )
        accepted = _accepted(ctx, representative.timeline_id, "take_backup")
        ctx.commit()
        logger.info("backup_requested", resource_id=resource.id, timeline_id=representative.timeline_id)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "trigger_backup", timer.elapsed_ms)


# ------------------------------------------------------------------ #
# Node operations
# ------------------------------------------------------------------ #


def get_node(ctx: OperationContext, node_id: str) -> OperationResult[NodeSummary]:
    timer = start_timer()
    try:
        return OperationResult.ok(_node_summary(ctx, _node(ctx, node_id)), elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "get_node", timer.elapsed_ms)


def node_action(ctx: OperationContext, request: NodeActionRequest) -> OperationResult[SignalAccepted]:
    """Raise the flag behind a named node action (see ``NODE_ACTIONS``)."""
    timer = start_timer()
    try:
        flag = NODE_ACTIONS.get(request.action)
        if flag is None:
            raise ValidationError(details={"action": f"action must be one of {', '.join(NODE_ACTIONS)}"})
        node = _node(ctx, request.node_id)
        if flag == "take_over" and node.representative_at is not None:
            raise ValidationError(details={"node_id": f"node {node.id} is already the representative"})
        if flag == "setup_tls" and not node.domain:
            raise ValidationError(details={"node_id": f"node {node.id} has no domain"})
        accepted = _accepted(ctx, node.id, flag)
        ctx.commit()
        logger.info("node_action_requested", node_id=node.id, action=request.action)
        return OperationResult.ok(accepted, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "node_action", timer.elapsed_ms)
