"""
CLI: ``dbplane cluster``: cluster lifecycle commands.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import make_context, output_paged, output_result
from dbplane.ops import clusters as ops
from dbplane.ops.requests import CreateClusterRequest, ListClustersRequest, ResizeRequest, UpgradeRequest

app = typer.Typer(no_args_is_help=True)


@app.command("create")
def create(
    name: str = typer.Argument(..., help="Cluster name (lowercase letters, digits, hyphens)"),
    location: str | None = typer.Option(None, "--location", "-l"),
    ha_type: str = typer.Option("none", "--ha", help="none | async | sync"),
    vm_size: str | None = typer.Option(None, "--vm-size"),
    storage: int | None = typer.Option(None, "--storage", help="Storage size in GiB"),
    lantern_version: str | None = typer.Option(None, "--lantern-version"),
    extras_version: str | None = typer.Option(None, "--extras-version"),
    minor_version: str | None = typer.Option(None, "--minor-version"),
    db_name: str = typer.Option("postgres", "--db-name"),
    db_user: str = typer.Option("postgres", "--db-user"),
    domain: str | None = typer.Option(None, "--domain"),
    label: str | None = typer.Option(None, "--label"),
    org_id: str | None = typer.Option(None, "--org"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate without creating anything"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Create a cluster: a primary, the standbys the HA type needs, a timeline and a doctor.

    Example::

        dbplane cluster create orders --ha async --storage 100
    """
    request = CreateClusterRequest(
        name=name,
        location=location,
        ha_type=ha_type,
        vm_size=vm_size,
        storage_size_gib=storage,
        lantern_version=lantern_version,
        extras_version=extras_version,
        minor_version=minor_version,
        db_name=db_name,
        db_user=db_user,
        domain=domain,
        label=label,
        org_id=org_id,
    )
    with make_context(dry_run=dry_run) as ctx:
        output_result(ops.create_cluster(ctx, request), as_json=json_out, title="Cluster")


@app.command("fork")
def fork(
    parent_id: str = typer.Argument(..., help="Cluster to fork"),
    name: str = typer.Argument(..., help="Name of the new cluster"),
    restore_target: str | None = typer.Option(
        None, "--restore-target", "-t", help="ISO-8601 point in time (default: latest restorable)"
    ),
    recovery_target_lsn: str | None = typer.Option(None, "--lsn"),
    version_upgrade: bool = typer.Option(False, "--version-upgrade", help="Restore onto newer versions"),
    lantern_version: str | None = typer.Option(None, "--lantern-version"),
    extras_version: str | None = typer.Option(None, "--extras-version"),
    minor_version: str | None = typer.Option(None, "--minor-version"),
    logical_replication: bool = typer.Option(False, "--logical-replication"),
    ha_type: str = typer.Option("none", "--ha"),
    label: str | None = typer.Option(None, "--label"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Restore a cluster's backups into a new cluster (point-in-time fork)."""
    request = CreateClusterRequest(
        name=name,
        parent_id=parent_id,
        restore_target=restore_target,
        recovery_target_lsn=recovery_target_lsn,
        version_upgrade=version_upgrade,
        lantern_version=lantern_version,
        extras_version=extras_version,
        minor_version=minor_version,
        logical_replication=logical_replication,
        ha_type=ha_type,
        label=label,
    )
    with make_context(dry_run=dry_run) as ctx:
        output_result(ops.create_cluster(ctx, request), as_json=json_out, title="Fork")


@app.command("list")
def list_(
    org_id: str | None = typer.Option(None, "--org"),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List clusters with their display state."""
    with make_context() as ctx:
        result = ops.list_clusters(ctx, ListClustersRequest(org_id=org_id, limit=limit, offset=offset))
        output_paged(result, as_json=json_out, title="Clusters")


@app.command("show")
def show(
    resource_id: str = typer.Argument(...),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a cluster, its nodes and restore window."""
    with make_context() as ctx:
        output_result(ops.get_cluster(ctx, resource_id), as_json=json_out, title="Cluster")


@app.command("delete")
def delete(
    resource_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Delete a cluster with all its nodes, VMs and health checks."""
    if not yes:
        typer.confirm(f"Delete cluster {resource_id}?", abort=True)
    with make_context() as ctx:
        output_result(ops.delete_cluster(ctx, resource_id), as_json=json_out, title="Delete")


@app.command("resize")
def resize(
    resource_id: str = typer.Argument(...),
    storage: int | None = typer.Option(None, "--storage", help="New storage size in GiB"),
    vm_size: str | None = typer.Option(None, "--vm-size"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Grow storage and/or change the machine size of every node."""
    with make_context() as ctx:
        request = ResizeRequest(resource_id=resource_id, storage_size_gib=storage, vm_size=vm_size)
        output_result(ops.resize_cluster(ctx, request), as_json=json_out, title="Resize")


@app.command("upgrade")
def upgrade(
    resource_id: str = typer.Argument(...),
    lantern_version: str | None = typer.Option(None, "--lantern-version"),
    extras_version: str | None = typer.Option(None, "--extras-version"),
    minor_version: str | None = typer.Option(None, "--minor-version"),
    update_agent: bool = typer.Option(False, "--update-agent", help="Reinstall the agent first"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Upgrade extensions and the container image."""
    request = UpgradeRequest(
        resource_id=resource_id,
        lantern_version=lantern_version,
        extras_version=extras_version,
        minor_version=minor_version,
        update_agent=update_agent,
    )
    with make_context() as ctx:
        output_result(ops.upgrade_cluster(ctx, request), as_json=json_out, title="Upgrade")


@app.command("rotate-password")
def rotate_password(
    resource_id: str = typer.Argument(...),
    password: str | None = typer.Option(
        None, "--password", prompt=False, hide_input=True, help="New password (generated when omitted)"
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Rotate the application user's password."""
    with make_context() as ctx:
        output_result(ops.rotate_password(ctx, resource_id, password), as_json=json_out, title="Rotate password")


@app.command("add-domain")
def add_domain(
    resource_id: str = typer.Argument(...),
    domain: str = typer.Argument(...),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Attach a domain (DNS record and TLS certificate) to the primary."""
    with make_context() as ctx:
        output_result(ops.add_domain(ctx, resource_id, domain), as_json=json_out, title="Add domain")


@app.command("restart")
def restart(
    resource_id: str = typer.Argument(...),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Restart every server of the cluster."""
    with make_context() as ctx:
        output_result(ops.restart_cluster(ctx, resource_id), as_json=json_out, title="Restart")


@app.command("swap-leaders")
def swap_leaders(
    resource_id: str = typer.Argument(..., help="Fork that takes over from its parent"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Swap a fork's primary with its parent's (addresses and domains move)."""
    with make_context() as ctx:
        output_result(ops.swap_leaders(ctx, resource_id), as_json=json_out, title="Swap leaders")
