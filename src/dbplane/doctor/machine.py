"""Health-check machine: one doctor per resource.

    start → wait_resource → wait (run due queries every minute)
    destroy

The doctor keeps one copy of every system template.  Copies are created
lazily each time the query list is read and eagerly on the
``sync_system_queries`` signal, which ``db init`` raises after seeding new
templates.
"""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from dbplane.cluster.models import process_step
from dbplane.core.errors import DbplaneError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import DoctorTable, IncidentTable, ProcessTable, QueryTable, ResourceTable
from dbplane.core.timestamps import generate_ulid
from dbplane.doctor.incidents import IncidentService
from dbplane.doctor.queries import DoctorQuery
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program
from dbplane.remote.services import Services

logger = get_logger(__name__)

TX_WRAPAROUND_SQL = """\
WITH max_age AS (
    SELECT 2000000000 AS max_old_xid, setting AS autovacuum_freeze_max_age
    FROM pg_catalog.pg_settings
    WHERE name = 'autovacuum_freeze_max_age'
), per_database_stats AS (
    SELECT datname, m.max_old_xid::int, m.autovacuum_freeze_max_age::int, age(d.datfrozenxid) AS oldest_current_xid
    FROM pg_catalog.pg_database d
    JOIN max_age m ON (true)
    WHERE d.datallowconn
)
SELECT max(ROUND(100 * (oldest_current_xid / max_old_xid::float))) > 85 FROM per_database_stats;
"""

# Stable ids so re-seeding updates rather than duplicates.
SYSTEM_QUERIES: tuple[dict, ...] = (
    {
        "id": "01HXDOCTOR0DISKUSAGE000000",
        "name": "Lantern Server Disk Usage",
        "fn_label": "check_disk_space_usage",
        "db_name": "postgres",
        "schedule": "*/5 * * * *",
        "severity": "error",
        "response_type": "rows",
        "server_type": "*",
    },
    {
        "id": "01HXDOCTOR0TXWRAPAROUND000",
        "name": "Percent towards tx wraparound is >85%",
        "sql": TX_WRAPAROUND_SQL,
        "db_name": "postgres",
        "schedule": "45 */10 * * *",
        "severity": "warning",
        "response_type": "bool",
        "server_type": "primary",
    },
    {
        "id": "01HXDOCTOR0DANGLINGIMAGES0",
        "name": "Cleanup dangling docker images",
        "fn_label": "remove_dangling_images",
        "db_name": "postgres",
        "schedule": "0 9 * * *",
        "severity": "error",
        "response_type": "rows",
        "server_type": "*",
    },
)


def seed_system_queries(session: Session) -> int:
    """Insert or refresh the system templates; returns how many were inserted."""
    inserted = 0
    for fields in SYSTEM_QUERIES:
        template = session.get(QueryTable, fields["id"])
        if template is None:
            session.add(QueryTable(type="system", **fields))
            inserted += 1
            continue
        for key, value in fields.items():
            setattr(template, key, value)
    session.flush()
    logger.info("system_queries_seeded", inserted=inserted, total=len(SYSTEM_QUERIES))
    return inserted


def sync_system_queries(session: Session, doctor: DoctorTable) -> list[QueryTable]:
    """Create this doctor's missing copies of system templates."""
    templates = session.scalars(
        select(QueryTable).where(QueryTable.type == "system", QueryTable.doctor_id.is_(None))
    )
    have = set(
        session.scalars(
            select(QueryTable.parent_id).where(QueryTable.doctor_id == doctor.id, QueryTable.parent_id.is_not(None))
        )
    )
    created = []
    for template in templates:
        if template.id in have:
            continue
        copy = QueryTable(id=generate_ulid(), parent_id=template.id, doctor_id=doctor.id, type="system")
        session.add(copy)
        created.append(copy)
    session.flush()
    return created


def list_queries(session: Session, doctor: DoctorTable) -> list[QueryTable]:
    sync_system_queries(session, doctor)
    return list(
        session.scalars(select(QueryTable).where(QueryTable.doctor_id == doctor.id).order_by(QueryTable.created_at))
    )


def assemble_doctor(session: Session, services: Services, resource: ResourceTable) -> DoctorTable:
    now = services.clock.now()
    doctor = DoctorTable(id=generate_ulid(), resource_id=resource.id, created_at=now)
    session.add(doctor)
    session.add(ProcessTable(id=doctor.id, program=DoctorNexus.name, step="start", stack=[{}], due_at=now))
    session.flush()
    return doctor


@register_program
class DoctorNexus(Program):
    name = "Doctor"

    @property
    def doctor(self) -> DoctorTable:
        return self.session.get(DoctorTable, self.subject_id)

    @step
    def start(self):
        self.advance("wait_resource")

    @step
    def wait_resource(self):
        resource_id = self.doctor.resource_id
        if resource_id is None or process_step(self.session, resource_id) != "wait":
            self.sleep_and_retry(5)
        self.advance("wait")

    @step
    def wait(self):
        doctor = self.doctor
        if self.is_signaled("sync_system_queries"):
            self.decr("sync_system_queries")
            created = sync_system_queries(self.session, doctor)
            logger.info("doctor_queries_synced", doctor_id=doctor.id, created=len(created))
        for row in list_queries(self.session, doctor):
            try:
                DoctorQuery(self.session, self.services, row).run(self.now)
            except DbplaneError:
                logger.exception("doctor_query_aborted", doctor_id=doctor.id, query_id=row.id)
        self.sleep_and_retry(60)

    @step
    def destroy(self):
        self.decr("destroy")
        doctor = self.doctor
        incidents = IncidentService(self.session, self.services)
        query_ids = select(QueryTable.id).where(QueryTable.doctor_id == doctor.id)
        open_incidents = list(
            self.session.scalars(
                select(IncidentTable).where(IncidentTable.query_id.in_(query_ids), IncidentTable.status != "resolved")
            )
        )
        for incident in open_incidents:
            incidents.resolve(incident.id)
        self.session.execute(delete(IncidentTable).where(IncidentTable.query_id.in_(query_ids)))
        self.session.execute(delete(QueryTable).where(QueryTable.doctor_id == doctor.id))
        self.session.delete(doctor)
        self.return_("lantern doctor is deleted")
