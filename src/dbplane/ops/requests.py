"""
Typed request objects for operations.

Each dataclass is the *input* contract of a single operation function.
Requests carry transport-agnostic data only; semantic checks happen in the
operation (and in assembly) so that every failure comes back as one
field → message map.
"""

from __future__ import annotations

from dataclasses import dataclass

# ------------------------------------------------------------------ #
# Cluster operations
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class CreateClusterRequest:
    """Request for :func:`dbplane.ops.clusters.create_cluster`.

    A request with ``parent_id`` is a fork: it restores the parent's backup
    lineage to ``restore_target`` (default: latest restorable moment) and
    inherits the parent's credentials.
    """

    name: str
    location: str | None = None
    ha_type: str = "none"
    vm_size: str | None = None
    storage_size_gib: int | None = None
    lantern_version: str | None = None
    extras_version: str | None = None
    minor_version: str | None = None
    db_name: str = "postgres"
    db_user: str = "postgres"
    db_user_password: str | None = None
    superuser_password: str | None = None
    org_id: str | None = None
    app_env: str | None = None
    domain: str | None = None
    label: str | None = None
    parent_id: str | None = None
    restore_target: str | None = None
    recovery_target_lsn: str | None = None
    version_upgrade: bool = False
    logical_replication: bool = False


@dataclass(frozen=True, slots=True)
class ListClustersRequest:
    org_id: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True, slots=True)
class ResizeRequest:
    """Request for :func:`dbplane.ops.clusters.resize_cluster`; at least one target is required."""

    resource_id: str
    storage_size_gib: int | None = None
    vm_size: str | None = None


@dataclass(frozen=True, slots=True)
class UpgradeRequest:
    """Request for :func:`dbplane.ops.clusters.upgrade_cluster`.

    Versions left as ``None`` keep their current value.  ``update_agent``
    reinstalls the agent before any extension or image upgrade.
    """

    resource_id: str
    lantern_version: str | None = None
    extras_version: str | None = None
    minor_version: str | None = None
    update_agent: bool = False


@dataclass(frozen=True, slots=True)
class NodeActionRequest:
    """Request for :func:`dbplane.ops.clusters.node_action`."""

    node_id: str
    action: str


# ------------------------------------------------------------------ #
# Incident operations
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class ListIncidentsRequest:
    resource_id: str | None = None
    include_new: bool = True
    limit: int = 50
    offset: int = 0


# ------------------------------------------------------------------ #
# Database operations
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class PurgeRequest:
    """Request for :func:`dbplane.ops.database.purge_processes`."""

    older_than_days: int = 30


@dataclass(frozen=True, slots=True)
class ListProcessesRequest:
    program: str | None = None
    include_exited: bool = False
    failing_only: bool = False
    limit: int = 50
    offset: int = 0
