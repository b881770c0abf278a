"""Backup-lineage (WAL timeline) table.

Tags:
    dbplane, orm, sqlalchemy, tables, backups
"""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from dbplane.core.orm.base import DbplaneBase
from dbplane.core.timestamps import utc_now


class TimelineTable(DbplaneBase):
    __tablename__ = "dp_timelines"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    parent_id: Mapped[str | None] = mapped_column(Text, ForeignKey("dp_timelines.id", ondelete="SET NULL"))
    service_account_name: Mapped[str | None] = mapped_column(Text)
    gcp_creds_b64: Mapped[str | None] = mapped_column(Text)
    latest_backup_started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    earliest_backup_completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    latest_cleanup_started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
