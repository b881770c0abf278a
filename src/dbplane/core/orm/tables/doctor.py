"""Health-check tables: doctors, queries (templates and copies) and incidents.

Tags:
    dbplane, orm, sqlalchemy, tables, doctor
"""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from dbplane.core.orm.base import DbplaneBase
from dbplane.core.timestamps import utc_now

_OPEN = text("status != 'resolved'")


class DoctorTable(DbplaneBase):
    __tablename__ = "dp_doctors"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    resource_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_resources.id", ondelete="SET NULL"))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class QueryTable(DbplaneBase):
    """A diagnostic check.

    ``type='system'`` rows without a doctor are templates; per-resource
    copies point at their template through ``parent_id`` and leave the
    inherited fields NULL.
    """

    __tablename__ = "dp_doctor_queries"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    parent_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_doctor_queries.id"))
    doctor_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_doctors.id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="user")
    name: Mapped[str | None] = mapped_column(Text)
    sql: Mapped[str | None] = mapped_column(Text)
    fn_label: Mapped[str | None] = mapped_column(Text)
    db_name: Mapped[str | None] = mapped_column(Text)
    schedule: Mapped[str | None] = mapped_column(Text)
    severity: Mapped[str | None] = mapped_column(Text)
    response_type: Mapped[str | None] = mapped_column(Text)
    server_type: Mapped[str | None] = mapped_column(Text)
    last_checked: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class IncidentTable(DbplaneBase):
    """A failing (query, database, node) triple, new → triggered/acknowledged → resolved."""

    __tablename__ = "dp_doctor_incidents"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    query_id: Mapped[str] = mapped_column(Text, ForeignKey("dp_doctor_queries.id", ondelete="CASCADE"), nullable=False)
    db_name: Mapped[str] = mapped_column(Text, nullable=False)
    vm_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new")
    page_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_pages.id", ondelete="SET NULL"))
    output: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index(
            "uq_dp_doctor_incidents_open",
            "query_id",
            "db_name",
            "vm_name",
            unique=True,
            sqlite_where=_OPEN,
            postgresql_where=_OPEN,
        ),
    )
