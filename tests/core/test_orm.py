"""Tests for dbplane.core.orm: engine setup and schema creation."""

from sqlalchemy import text

from dbplane.core.orm.session import SQLITE_BUSY_TIMEOUT_MS, create_all, create_dbplane_engine, dbplane_session_factory
from dbplane.core.orm.tables import ProcessTable


class TestSqliteEngine:
    def test_workers_wait_on_locks(self, tmp_path):
        engine = create_dbplane_engine(f"sqlite:///{tmp_path / 'store.db'}")
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == SQLITE_BUSY_TIMEOUT_MS
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        engine.dispose()

    def test_memory_store_is_shared_across_sessions(self):
        engine = create_dbplane_engine("sqlite://")
        create_all(engine)
        factory = dbplane_session_factory(engine)
        with factory() as session:
            session.add(ProcessTable(id="p1", program="Resource", step="start", stack=[{}]))
            session.commit()
        with factory() as session:
            assert session.get(ProcessTable, "p1").step == "start"
        engine.dispose()


def test_create_all_lists_tables(tmp_path):
    engine = create_dbplane_engine(f"sqlite:///{tmp_path / 'store.db'}")
    tables = create_all(engine)
    assert {"dp_processes", "dp_signals", "dp_resources", "dp_nodes", "dp_pages"} <= set(tables)
    assert create_all(engine) == tables
    engine.dispose()
