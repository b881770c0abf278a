"""
Incident operations.

Thin wrappers over :class:`~dbplane.doctor.incidents.IncidentService` for
the operator-facing lifecycle: list, acknowledge, trigger, resolve.
"""

from __future__ import annotations

from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import IncidentTable, QueryTable
from dbplane.doctor.incidents import IncidentService
from dbplane.ops.context import OperationContext, operation_failed
from dbplane.ops.requests import ListIncidentsRequest
from dbplane.ops.responses import IncidentSummary
from dbplane.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def _summary(ctx: OperationContext, incident: IncidentTable) -> IncidentSummary:
    query = ctx.session.get(QueryTable, incident.query_id)
    name = query.name if query is not None else None
    if name is None and query is not None and query.parent_id is not None:
        template = ctx.session.get(QueryTable, query.parent_id)
        name = template.name if template is not None else None
    return IncidentSummary(
        id=incident.id,
        query=name or incident.query_id,
        db_name=incident.db_name,
        vm_name=incident.vm_name,
        status=incident.status,
        created_at=incident.created_at,
        resolved_at=incident.resolved_at,
    )


def list_incidents(ctx: OperationContext, request: ListIncidentsRequest) -> PagedResult[IncidentSummary]:
    """Open incidents, optionally for one cluster; ``include_new=False`` keeps only picked-up ones."""
    timer = start_timer()
    try:
        service = IncidentService(ctx.session, ctx.services)
        if request.include_new:
            rows = service.new_and_active(request.resource_id)
        else:
            rows = service.active(request.resource_id)
        window = rows[request.offset : request.offset + request.limit]
        return PagedResult.from_items(
            [_summary(ctx, row) for row in window],
            total=len(rows),
            limit=request.limit,
            offset=request.offset,
            elapsed_ms=timer.elapsed_ms,
        )
    except Exception as exc:
        return operation_failed(ctx, exc, "list_incidents", timer.elapsed_ms)


def _transition(ctx: OperationContext, incident_id: str, action: str) -> OperationResult[IncidentSummary]:
    timer = start_timer()
    try:
        service = IncidentService(ctx.session, ctx.services)
        incident = getattr(service, action)(incident_id)
        summary = _summary(ctx, incident)
        ctx.commit()
        logger.info("incident_updated", incident_id=incident_id, action=action, status=summary.status)
        return OperationResult.ok(summary, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, f"{action}_incident", timer.elapsed_ms)


def acknowledge_incident(ctx: OperationContext, incident_id: str) -> OperationResult[IncidentSummary]:
    return _transition(ctx, incident_id, "ack")


def trigger_incident(ctx: OperationContext, incident_id: str) -> OperationResult[IncidentSummary]:
    return _transition(ctx, incident_id, "trigger")


def resolve_incident(ctx: OperationContext, incident_id: str) -> OperationResult[IncidentSummary]:
    """Resolve by hand; the incident reopens as a new one if the check fails again."""
    return _transition(ctx, incident_id, "resolve")
