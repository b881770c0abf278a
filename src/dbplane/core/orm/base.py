"""Declarative base for every dbplane table.

Ids are ULID text, timestamps naive UTC (see ``dbplane.core.timestamps``).
Constraint names follow one convention so the same schema can be created
on SQLite for tests and on PostgreSQL in production.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Integer, MetaData, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dbplane.core.timestamps import utc_now

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class DbplaneBase(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    # bool stays Integer: flags are stored 0/1 on every dialect
    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Integer,
        datetime.datetime: DateTime,
        dict: JSON,
        list: JSON,
    }


class TimestampMixin:
    """Row bookkeeping times, set on the Python side so they are readable right after flush."""

    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime, nullable=True, default=utc_now, onupdate=utc_now
    )
