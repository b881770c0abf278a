"""Health-check incidents.

An incident is the failing state of one (query, database, node) triple and
is backed by a page.  At most one incident per triple is open at a time; a
partial unique index on the table enforces it, and
:meth:`IncidentService.update_page_status` never tries to break it.

    new ─┬─ triggered ─┐
         └─ acknowledged ─┴─ resolved
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dbplane.core.errors import NotFoundError, ValidationError
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import DoctorTable, IncidentTable, PageTable, QueryTable
from dbplane.core.timestamps import generate_ulid
from dbplane.paging import PageService

if TYPE_CHECKING:
    from dbplane.doctor.queries import DoctorQuery

logger = get_logger(__name__)

INCIDENT_TAG = "DoctorQueryFailed"
OPEN_STATUSES = ("new", "triggered", "acknowledged")


class IncidentService:
    def __init__(self, session: Session, services: Any) -> None:
        self.session = session
        self.services = services
        self.pages = PageService(session, services)

    def find_open(self, query_id: str, db_name: str, vm_name: str) -> IncidentTable | None:
        return self.session.scalar(
            select(IncidentTable).where(
                IncidentTable.query_id == query_id,
                IncidentTable.db_name == db_name,
                IncidentTable.vm_name == vm_name,
                IncidentTable.status != "resolved",
            )
        )

    def get(self, incident_id: str) -> IncidentTable:
        incident = self.session.get(IncidentTable, incident_id)
        if incident is None:
            raise NotFoundError(f"No incident with id {incident_id}")
        return incident

    def create(self, query: DoctorQuery, db_name: str, vm_name: str, *, output: str = "", error: str = "") -> IncidentTable:
        resource_model = query.resource_model
        resource_name = "unknown resource"
        if resource_model is not None:
            resource = resource_model.row
            resource_name = f"{resource.name} - {resource.label}" if resource.label else resource.name
        page = self.pages.open(
            f"Healthcheck: {query.name} failed on {resource_name} ({db_name} - {vm_name})",
            (INCIDENT_TAG, query.row.id, db_name, vm_name),
            severity=query.severity or "error",
            details={"stdout": output, "stderr": error, "query_id": query.row.id},
        )
        incident = IncidentTable(
            id=generate_ulid(),
            query_id=query.row.id,
            db_name=db_name,
            vm_name=vm_name,
            status="new",
            page_id=page.id,
            output=output,
            error=error,
            created_at=self.services.clock.now(),
        )
        self.session.add(incident)
        self.session.flush()
        logger.warning("incident_opened", incident_id=incident.id, query=query.name, db=db_name, vm=vm_name)
        return incident

    def update_page_status(
        self,
        query: DoctorQuery,
        db_name: str,
        vm_name: str,
        failed: bool,
        *,
        output: str = "",
        error: str = "",
    ) -> IncidentTable | None:
        """Open an incident on the first failure, refresh it on repeats, resolve it on a pass."""
        incident = self.find_open(query.row.id, db_name, vm_name)
        if failed:
            if incident is None:
                return self.create(query, db_name, vm_name, output=output, error=error)
            incident.output, incident.error = output, error
            return incident
        if incident is not None:
            self._resolve(incident)
        return incident

    # --- operator actions ---

    def ack(self, incident_id: str) -> IncidentTable:
        incident = self._open_incident(incident_id)
        incident.status = "acknowledged"
        return incident

    def trigger(self, incident_id: str) -> IncidentTable:
        incident = self._open_incident(incident_id)
        incident.status = "triggered"
        return incident

    def resolve(self, incident_id: str) -> IncidentTable:
        incident = self.get(incident_id)
        if incident.status != "resolved":
            self._resolve(incident)
        return incident

    def _open_incident(self, incident_id: str) -> IncidentTable:
        incident = self.get(incident_id)
        if incident.status == "resolved":
            raise ValidationError(details={"status": f"incident {incident_id} is already resolved"})
        return incident

    def _resolve(self, incident: IncidentTable) -> None:
        incident.status = "resolved"
        incident.resolved_at = self.services.clock.now()
        if incident.page_id is not None:
            page = self.session.get(PageTable, incident.page_id)
            if page is not None:
                self.pages.resolve_page(page)
        self.session.flush()
        logger.info("incident_resolved", incident_id=incident.id)

    # --- listings ---

    def _listing(self, statuses: tuple[str, ...], resource_id: str | None) -> list[IncidentTable]:
        stmt = select(IncidentTable).where(IncidentTable.status.in_(statuses))
        if resource_id is not None:
            stmt = (
                stmt.join(QueryTable, QueryTable.id == IncidentTable.query_id)
                .join(DoctorTable, DoctorTable.id == QueryTable.doctor_id)
                .where(DoctorTable.resource_id == resource_id)
            )
        return list(self.session.scalars(stmt.order_by(IncidentTable.created_at)))

    def active(self, resource_id: str | None = None) -> list[IncidentTable]:
        """Incidents someone has picked up (triggered or acknowledged)."""
        return self._listing(("triggered", "acknowledged"), resource_id)

    def new_and_active(self, resource_id: str | None = None) -> list[IncidentTable]:
        """Every incident that is not resolved."""
        return self._listing(OPEN_STATUSES, resource_id)
