"""Incident pages, keyed by a stable tag.

Tags:
    dbplane, orm, sqlalchemy, tables, paging
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from dbplane.core.orm.base import DbplaneBase
from dbplane.core.timestamps import utc_now


class PageTable(DbplaneBase):
    __tablename__ = "dp_pages"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    tag: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False, default="error")
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    # At most one unresolved page per tag.
    __table_args__ = (
        Index(
            "uq_dp_pages_open_tag",
            "tag",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )
