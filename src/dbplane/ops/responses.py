"""
Typed response objects for operations.

Each dataclass is the payload of a single operation beyond the generic
:class:`~dbplane.ops.result.OperationResult` envelope.  Passwords and
service-account credentials never appear here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

# ------------------------------------------------------------------ #
# Cluster responses
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class NodeSummary:
    id: str
    vm_name: str
    role: str
    timeline_access: str
    step: str | None
    display_state: str
    host: str | None = None
    domain: str | None = None
    versions: str = ""


@dataclass(frozen=True, slots=True)
class ClusterSummary:
    id: str
    name: str
    location: str
    ha_type: str
    display_state: str
    node_count: int
    parent_id: str | None = None
    label: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ClusterDetail:
    id: str
    name: str
    location: str
    ha_type: str
    display_state: str
    db_name: str
    db_user: str
    parent_id: str | None = None
    restore_window: tuple[datetime | None, datetime | None] = (None, None)
    nodes: list[NodeSummary] = field(default_factory=list)
    signals: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SignalAccepted:
    """A flag was raised on a process; the machine acts on its next invocation."""

    process_id: str
    signal: str
    count: int
    dry_run: bool = False


# ------------------------------------------------------------------ #
# Incident responses
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class IncidentSummary:
    id: str
    query: str
    db_name: str
    vm_name: str
    status: str
    created_at: datetime | None = None
    resolved_at: datetime | None = None


# ------------------------------------------------------------------ #
# Database / process responses
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class DatabaseInitResult:
    tables: list[str]
    queries_seeded: int = 0
    doctors_signaled: int = 0
    dry_run: bool = False


@dataclass(frozen=True, slots=True)
class PurgeResult:
    processes_deleted: int
    dry_run: bool = False


@dataclass(frozen=True, slots=True)
class ProcessSummary:
    id: str
    program: str
    step: str
    depth: int
    due_at: datetime | None
    exited_at: datetime | None = None
    error_count: int = 0
    last_error: str | None = None
