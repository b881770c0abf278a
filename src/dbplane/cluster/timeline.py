"""Backup-lineage machine: one branch of WAL history.

Provisions a service identity scoped to the timeline's bucket prefix, waits
for a leader (the push-access node) to reach steady state, then loops:
backups when the leader reports one is due, retention cleanup, and a page
when no backup has landed for two days.

    start → wait_leader → wait ⇄ take_backup
                         destroy
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dbplane.cluster.models import TAKE_BACKUP_CMD, TimelineModel, process_step
from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import NodeTable, ProcessTable, TimelineTable
from dbplane.core.timestamps import generate_ulid
from dbplane.execution.program import Program, step
from dbplane.execution.registry import register_program
from dbplane.paging import PageService
from dbplane.remote.daemonizer import TaskStatus
from dbplane.remote.services import Services

logger = get_logger(__name__)

MISSING_BACKUP_AFTER = timedelta(days=2)


def assemble_timeline(session: Session, services: Services, parent_id: str | None = None) -> TimelineTable:
    now = services.clock.now()
    timeline = TimelineTable(id=generate_ulid(), parent_id=parent_id, created_at=now)
    session.add(timeline)
    session.add(ProcessTable(id=timeline.id, program=TimelineNexus.name, step="start", stack=[{}], due_at=now))
    session.flush()
    return timeline


@register_program
class TimelineNexus(Program):
    name = "Timeline"

    @property
    def timeline(self) -> TimelineTable:
        return self.session.get(TimelineTable, self.subject_id)

    @property
    def model(self) -> TimelineModel:
        return TimelineModel(self.session, self.services, self.timeline)

    @step
    def start(self):
        timeline = self.timeline
        if timeline.service_account_name is None:
            cloud = self.services.cloud
            account = cloud.create_service_account(
                f"tl-{timeline.id.lower()[-20:]}", f"Service account for timeline {timeline.id}"
            )
            email = account["email"]
            timeline.gcp_creds_b64 = cloud.export_service_account_key(email)
            cloud.allow_bucket_usage_by_prefix(email, self.settings.backup_bucket, timeline.id)
            timeline.service_account_name = email
            logger.info("timeline_identity_created", timeline_id=timeline.id, account=email)
        self.advance("wait_leader")

    @step
    def wait_leader(self):
        leader = self.model.leader()
        if leader is None or process_step(self.session, leader.id) != "wait":
            self.sleep_and_retry(5)
        self.advance("wait")

    @step
    def wait(self):
        model = self.model
        if model.leader() is None:
            # Fork parents and demoted lineages have no pusher; nothing to archive.
            self.sleep_and_retry(15 * 60)

        # retention cleanup and new backups both move the start of the restore window
        model.refresh_earliest_backup_completion_time()

        if self.is_signaled("take_backup"):
            # Operator request: forget the last start so a finished backup counts as stale.
            self.decr("take_backup")
            self.timeline.latest_backup_started_at = None

        if model.need_backup():
            self.advance("take_backup")

        if model.need_cleanup():
            task = model.leader_task("delete_old_backups")
            if task.check().is_terminal:
                task.clean()
            task.run(model.cleanup_command())
            self.timeline.latest_cleanup_started_at = self.now
            logger.info("backup_cleanup_started", timeline_id=self.timeline.id)

        self.check_missing_backup(model)
        self.sleep_and_retry(20 * 60)

    def check_missing_backup(self, model: TimelineModel) -> None:
        timeline = self.timeline
        pages = PageService(self.session, self.services)
        tag = ("MissingBackup", timeline.id)
        if self.now - model.latest_backup_at() > MISSING_BACKUP_AFTER:
            pages.open(
                f"Missing backup at {timeline.id}!",
                tag,
                details={"timeline_id": timeline.id, "walg_gs_prefix": model.walg_prefix},
            )
        else:
            pages.resolve(tag)

    @step
    def take_backup(self):
        model = self.model
        if not model.need_backup():
            self.advance("wait")
        task = model.leader_task("take_postgres_backup")
        status = task.check()
        if status is TaskStatus.FAILED:
            logs = task.logs()
            logger.warning("backup_failed_resubmitting", timeline_id=self.timeline.id, stderr=logs.stderr[-500:])
        if status.is_terminal:
            task.clean()
        task.run(TAKE_BACKUP_CMD)
        self.timeline.latest_backup_started_at = self.now
        logger.info("backup_started", timeline_id=self.timeline.id)
        self.advance("wait")

    @step
    def destroy(self):
        timeline = self.timeline
        if timeline is None:
            self.return_("timeline database record is deleted")
        referenced = self.session.scalar(
            select(func.count()).select_from(NodeTable).where(NodeTable.timeline_id == timeline.id)
        )
        if referenced:
            self.sleep_and_retry(10)
        self.decr("destroy")
        if timeline.service_account_name is not None:
            self.services.cloud.remove_service_account(timeline.service_account_name)
        PageService(self.session, self.services).resolve(("MissingBackup", timeline.id))
        self.session.delete(timeline)
        self.return_("timeline database record is deleted")
