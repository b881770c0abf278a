"""
Tests for the Timeline machine: backups, retention and the missing-backup page.
"""

from datetime import timedelta

import pytest

from dbplane.cluster.models import backup_key_for_label
from dbplane.core.orm.tables import TimelineTable


def open_tags(notifier) -> set[str]:
    resolved = {page.id for page in notifier.resolved}
    return {page.tag for page in notifier.opened if page.id not in resolved}


@pytest.fixture
def steady(harness):
    """A steady single-node cluster whose timeline has gone through its first ``wait``."""
    resource = harness.provision_steady(name="orders")
    node = harness.representative(resource.id)
    assert harness.settle(node.timeline_id)
    return node


class TestBackups:
    def test_first_backup_and_cleanup_are_submitted(self, harness, fleet, steady):
        vm_name = harness.vm_name(steady)
        assert len(fleet.submitted("take_postgres_backup", vm=vm_name)) == 1
        (cleanup,) = fleet.submitted("delete_old_backups", vm=vm_name)
        assert "wal-g delete retain FULL 7" in cleanup.cmd

        timeline = harness.get(TimelineTable, steady.timeline_id)
        assert timeline.latest_backup_started_at is not None
        assert timeline.latest_cleanup_started_at is not None

    def test_recent_backup_is_not_repeated(self, harness, fleet, steady):
        harness.clock.advance(2 * 3600)
        harness.run(lambda: False, max_rounds=30)
        assert len(fleet.submitted("take_postgres_backup")) == 1

    def test_stale_backup_is_retaken(self, harness, fleet, steady):
        harness.clock.advance(25 * 3600)
        assert harness.run(lambda: len(fleet.submitted("take_postgres_backup")) == 2)

    def test_operator_request_forces_backup(self, harness, fleet, steady):
        harness.signal(steady.timeline_id, "take_backup")
        assert harness.run(lambda: len(fleet.submitted("take_postgres_backup")) == 2)
        assert not harness.is_signaled(steady.timeline_id, "take_backup")

    def test_failed_backup_is_resubmitted(self, harness, fleet):
        fleet.task_outcome["take_postgres_backup"] = "Failed"
        fleet.task_logs["take_postgres_backup"] = {"stdout": "", "stderr": "wal-g: permission denied"}
        harness.provision_steady(name="orders")
        assert harness.run(lambda: len(fleet.submitted("take_postgres_backup")) >= 2)
        assert fleet.ran("--logs take_postgres_backup")


class TestRestoreWindow:
    def test_earliest_backup_follows_cleanup(self, harness, blob, steady):
        timeline_id = steady.timeline_id
        old_key = backup_key_for_label(timeline_id, "base_000000010000000000000002")
        old_at = harness.clock.now() - timedelta(days=9)
        new_at = harness.clock.now() - timedelta(hours=1)
        blob.put("test-backups", old_key, old_at)
        blob.put("test-backups", backup_key_for_label(timeline_id, "base_000000010000000000000006"), new_at)

        harness.clock.advance(20 * 60 + 1)
        assert harness.settle(timeline_id)
        assert harness.get(TimelineTable, timeline_id).earliest_backup_completed_at == old_at

        blob.delete("test-backups", old_key)
        harness.clock.advance(20 * 60 + 1)
        assert harness.settle(timeline_id)
        assert harness.get(TimelineTable, timeline_id).earliest_backup_completed_at == new_at


class TestMissingBackup:
    def test_pages_after_two_days_and_resolves_on_backup(self, harness, blob, notifier, steady):
        tag = f"MissingBackup-{steady.timeline_id}"
        harness.clock.advance(2 * 24 * 3600 + 3600)
        assert harness.run(lambda: tag in open_tags(notifier))

        blob.put(
            "test-backups",
            backup_key_for_label(steady.timeline_id, "base_000000010000000000000002"),
            harness.clock.now(),
        )
        assert harness.run(lambda: tag not in open_tags(notifier))


class TestTimelineDestroy:
    def test_waits_for_referencing_nodes(self, harness, cloud, steady):
        timeline_id = steady.timeline_id
        harness.signal(timeline_id, "destroy")
        harness.run(lambda: False, max_rounds=10)
        assert harness.step_of(timeline_id) == "destroy"
        assert harness.get(TimelineTable, timeline_id) is not None

        harness.signal(steady.resource_id, "destroy")
        assert harness.run_until_exited(timeline_id)
        assert harness.get(TimelineTable, timeline_id) is None
        assert cloud.accounts == {}
