"""
Database operations.

Schema creation, system health-check seeding, process inspection and
purging of exited processes.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func, select

from dbplane.cluster.monitor import ensure_monitor
from dbplane.core.logging import get_logger
from dbplane.core.orm.base import DbplaneBase
from dbplane.core.orm.session import create_all
from dbplane.core.orm.tables import DoctorTable, ProcessTable
from dbplane.doctor.machine import seed_system_queries
from dbplane.execution.runner import purge_exited
from dbplane.ops.context import OperationContext, operation_failed
from dbplane.ops.requests import ListProcessesRequest, PurgeRequest
from dbplane.ops.responses import DatabaseInitResult, ProcessSummary, PurgeResult
from dbplane.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def initialize_database(ctx: OperationContext) -> OperationResult[DatabaseInitResult]:
    """Create missing tables, refresh the system query templates and start the pulse monitor.

    Existing doctors are told to copy templates they do not have yet.
    Idempotent; safe to run on every deploy.
    """
    timer = start_timer()
    tables = [table.name for table in DbplaneBase.metadata.sorted_tables]
    if ctx.dry_run:
        return OperationResult.ok(DatabaseInitResult(tables=tables, dry_run=True), elapsed_ms=timer.elapsed_ms)

    try:
        tables = create_all(ctx.session.get_bind())
        seeded = seed_system_queries(ctx.session)
        doctor_ids = list(ctx.session.scalars(select(DoctorTable.id)))
        for doctor_id in doctor_ids:
            ctx.signal(doctor_id, "sync_system_queries")
        ensure_monitor(ctx.session, ctx.services)
        ctx.commit()
        logger.info("database_initialized", tables=len(tables), seeded=seeded, doctors=len(doctor_ids))
        return OperationResult.ok(
            DatabaseInitResult(tables=tables, queries_seeded=seeded, doctors_signaled=len(doctor_ids)),
            elapsed_ms=timer.elapsed_ms,
        )
    except Exception as exc:
        return operation_failed(ctx, exc, "initialize_database", timer.elapsed_ms)


def purge_processes(ctx: OperationContext, request: PurgeRequest) -> OperationResult[PurgeResult]:
    """Delete processes that exited more than ``older_than_days`` ago."""
    timer = start_timer()
    try:
        deleted = purge_exited(ctx.session, timedelta(days=request.older_than_days), ctx.now)
        ctx.commit()
        logger.info("processes_purged", deleted=deleted, older_than_days=request.older_than_days, dry_run=ctx.dry_run)
        return OperationResult.ok(PurgeResult(processes_deleted=deleted, dry_run=ctx.dry_run), elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return operation_failed(ctx, exc, "purge_processes", timer.elapsed_ms)


def list_processes(ctx: OperationContext, request: ListProcessesRequest) -> PagedResult[ProcessSummary]:
    timer = start_timer()
    try:
        conditions = []
        if request.program is not None:
            conditions.append(ProcessTable.program == request.program)
        if not request.include_exited:
            conditions.append(ProcessTable.exited_at.is_(None))
        if request.failing_only:
            conditions.append(ProcessTable.last_error.is_not(None))
        total = ctx.session.scalar(select(func.count()).select_from(ProcessTable).where(*conditions)) or 0
        rows = ctx.session.scalars(
            select(ProcessTable)
            .where(*conditions)
            .order_by(ProcessTable.due_at, ProcessTable.id)
            .limit(request.limit)
            .offset(request.offset)
        )
        items = [
            ProcessSummary(
                id=row.id,
                program=row.program,
                step=row.step,
                depth=len(row.stack),
                due_at=row.due_at,
                exited_at=row.exited_at,
                error_count=row.error_count,
                last_error=row.last_error,
            )
            for row in rows
        ]
        return PagedResult.from_items(
            items, total=total, limit=request.limit, offset=request.offset, elapsed_ms=timer.elapsed_ms
        )
    except Exception as exc:
        return operation_failed(ctx, exc, "list_processes", timer.elapsed_ms)
