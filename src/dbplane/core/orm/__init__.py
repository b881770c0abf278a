"""SQLAlchemy 2.0 persistence layer for dbplane.

Modules
-------
base        DbplaneBase (declarative base, naming convention) + TimestampMixin
session     Engine factory, DbplaneSession, session factory, create_all
tables      Mapped tables: engine (processes, signals), cluster, timeline,
            doctor, pages
"""

from __future__ import annotations

from dbplane.core.orm.base import DbplaneBase, TimestampMixin
from dbplane.core.orm.session import (
    DbplaneSession,
    create_all,
    create_dbplane_engine,
    dbplane_session_factory,
)

__all__ = [
    "DbplaneBase",
    "TimestampMixin",
    "DbplaneSession",
    "create_all",
    "create_dbplane_engine",
    "dbplane_session_factory",
]
