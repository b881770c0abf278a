"""Cluster tables: resources, their nodes and the VMs under them.

Tags:
    dbplane, orm, sqlalchemy, tables, cluster
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dbplane.core.orm.base import DbplaneBase
from dbplane.core.timestamps import utc_now

if TYPE_CHECKING:
    from dbplane.core.orm.tables.timeline import TimelineTable


class VmTable(DbplaneBase):
    __tablename__ = "dp_vms"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    machine_type: Mapped[str] = mapped_column(Text, nullable=False)
    storage_size_gib: Mapped[int] = mapped_column(Integer, nullable=False)
    boot_image: Mapped[str] = mapped_column(Text, nullable=False)
    unix_user: Mapped[str] = mapped_column(Text, nullable=False, default="lantern")
    address_name: Mapped[str | None] = mapped_column(Text)
    host: Mapped[str | None] = mapped_column(Text)
    display_state: Mapped[str] = mapped_column(Text, nullable=False, default="creating")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class ResourceTable(DbplaneBase):
    """A logical database cluster (or a fork of one)."""

    __tablename__ = "dp_resources"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    org_id: Mapped[str | None] = mapped_column(Text)
    app_env: Mapped[str | None] = mapped_column(Text)
    ha_type: Mapped[str] = mapped_column(Text, nullable=False, default="none")

    # --- credentials ---
    superuser_password: Mapped[str] = mapped_column(Text, nullable=False)
    db_name: Mapped[str] = mapped_column(Text, nullable=False, default="postgres")
    db_user: Mapped[str] = mapped_column(Text, nullable=False, default="postgres")
    db_user_password: Mapped[str | None] = mapped_column(Text)
    repl_user: Mapped[str] = mapped_column(Text, nullable=False, default="repl_user")
    repl_password: Mapped[str] = mapped_column(Text, nullable=False)

    # --- forks ---
    parent_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_resources.id", ondelete="SET NULL"))
    restore_target: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    recovery_target_lsn: Mapped[str | None] = mapped_column(Text)
    version_upgrade: Mapped[bool] = mapped_column(Integer, default=False, nullable=False)
    logical_replication: Mapped[bool] = mapped_column(Integer, default=False, nullable=False)

    display_state: Mapped[str | None] = mapped_column(Text)
    service_account_name: Mapped[str | None] = mapped_column(Text)
    gcp_creds_b64: Mapped[str | None] = mapped_column(Text)
    label: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    # --- relationships ---
    nodes: Mapped[list[NodeTable]] = relationship(
        "NodeTable", back_populates="resource", order_by="NodeTable.created_at"
    )


class NodeTable(DbplaneBase):
    """One database server of a resource, backed by one VM."""

    __tablename__ = "dp_nodes"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    resource_id: Mapped[str] = mapped_column(Text, ForeignKey("dp_resources.id"), nullable=False, index=True)
    vm_id: Mapped[str] = mapped_column(Text, ForeignKey("dp_vms.id"), nullable=False)
    timeline_id: Mapped[str] = mapped_column(Text, ForeignKey("dp_timelines.id"), nullable=False)
    timeline_access: Mapped[str] = mapped_column(Text, nullable=False, default="push")
    representative_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    synchronization_status: Mapped[str] = mapped_column(Text, nullable=False, default="ready")

    lantern_version: Mapped[str] = mapped_column(Text, nullable=False)
    extras_version: Mapped[str] = mapped_column(Text, nullable=False)
    minor_version: Mapped[str] = mapped_column(Text, nullable=False)
    target_vm_size: Mapped[str] = mapped_column(Text, nullable=False)
    target_storage_size_gib: Mapped[int] = mapped_column(Integer, nullable=False)
    max_storage_autoresize_gib: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    domain: Mapped[str | None] = mapped_column(Text)
    display_state: Mapped[str | None] = mapped_column(Text)

    # --- pulse ---
    pulse_reading: Mapped[str | None] = mapped_column(Text)
    pulse_repeat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pulse_changed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    # --- relationships ---
    resource: Mapped[ResourceTable] = relationship("ResourceTable", back_populates="nodes")
    vm: Mapped[VmTable] = relationship("VmTable")
    timeline: Mapped[TimelineTable] = relationship("TimelineTable")
