"""Fixtures for doctor tests: an assembled cluster whose nodes count as running."""

import pytest
from sqlalchemy import select

from dbplane.core.orm.tables import DoctorTable, NodeTable, ProcessTable, QueryTable, ResourceTable
from dbplane.core.timestamps import generate_ulid


@pytest.fixture
def cluster(harness, session) -> ResourceTable:
    resource = harness.provision(name="orders", ha_type="async", db_user="app", db_name="shop")
    for node in session.scalars(select(NodeTable).where(NodeTable.resource_id == resource.id)):
        session.get(ProcessTable, node.id).step = "wait"
    session.flush()
    return session.get(ResourceTable, resource.id)


@pytest.fixture
def doctor(session, cluster) -> DoctorTable:
    return session.scalar(select(DoctorTable).where(DoctorTable.resource_id == cluster.id))


@pytest.fixture
def make_query(session, doctor):
    def make(**fields) -> QueryTable:
        values = {
            "name": "Long running transactions",
            "sql": "SELECT pid FROM pg_stat_activity WHERE now() - xact_start > interval '1 hour'",
            "db_name": "shop",
            "schedule": "* * * * *",
            "severity": "error",
            "response_type": "rows",
            "server_type": "primary",
        }
        values.update(fields)
        row = QueryTable(id=generate_ulid(), doctor_id=doctor.id, type="user", **values)
        session.add(row)
        session.flush()
        return row

    return make
