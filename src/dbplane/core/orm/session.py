"""Engine and session factories for the control-plane store.

Several workers lease processes out of the same store, so SQLite runs in
WAL mode with a busy timeout and server databases get pre-pinged pools
that survive a worker sitting idle between polls.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dbplane.core.orm.base import DbplaneBase

SQLITE_BUSY_TIMEOUT_MS = 5000


def create_dbplane_engine(url: str = "sqlite:///dbplane.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)
        return create_engine(url, echo=echo, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
        # one shared connection, otherwise every checkout sees an empty store
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _configure_sqlite(dbapi_connection: Any, _rec: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    return engine


class DbplaneSession(Session):
    """Rows stay readable after a step commits (``expire_on_commit=False``)."""

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def dbplane_session_factory(engine: Engine) -> sessionmaker[DbplaneSession]:
    return sessionmaker(bind=engine, class_=DbplaneSession)


def create_all(engine: Engine) -> list[str]:
    """Create the missing control-plane tables; returns every table name."""
    import dbplane.core.orm.tables  # noqa: F401  (registers mappers)

    DbplaneBase.metadata.create_all(engine)
    return [table.name for table in DbplaneBase.metadata.sorted_tables]
