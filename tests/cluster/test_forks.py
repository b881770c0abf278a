"""
Forks: point-in-time restores from a parent's timeline, logical replication
and swapping leaders with the parent.
"""

import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from dbplane.cluster.models import TimelineModel, backup_key_for_label
from dbplane.cluster.resource import create_logical_replica
from dbplane.core.errors import NotFoundError, ValidationError
from dbplane.core.orm.tables import NodeTable, ProcessTable, ResourceTable, TimelineTable, VmTable

LABEL = "base_000000010000000000000004"


@pytest.fixture
def parent(harness, blob):
    """A steady cluster with one base backup that finished an hour ago."""
    resource = harness.provision_steady(name="orders")
    node = harness.representative(resource.id)
    blob.put("test-backups", backup_key_for_label(node.timeline_id, LABEL), harness.clock.now() - timedelta(hours=1))
    return resource


def parent_timeline(harness, resource) -> str:
    return harness.representative(resource.id).timeline_id


# =============================================================================
# Restore
# =============================================================================


class TestRestore:
    def test_fork_restores_then_branches_timeline(self, harness, fleet, parent):
        source_timeline = parent_timeline(harness, parent)
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id)
        node = harness.representative(fork.id)

        (submission,) = fleet.submitted("configure_lantern", vm=harness.vm_name(node))
        payload = json.loads(submission.stdin)
        assert payload["postgresql_recover_from_backup"] == LABEL
        assert payload["postgresql_recovery_target_time"]
        assert payload["walg_pull_gs_prefix"] == f"gs://test-backups/{source_timeline}"

        assert node.timeline_access == "push"
        assert node.timeline_id != source_timeline
        assert harness.get(TimelineTable, node.timeline_id).parent_id == source_timeline

    def test_fork_inherits_credentials(self, harness, parent):
        fork = harness.provision(name="orders-fork", parent_id=parent.id)
        source = harness.get(ResourceTable, parent.id)
        copy = harness.get(ResourceTable, fork.id)
        assert copy.superuser_password == source.superuser_password
        assert (copy.db_name, copy.db_user) == (source.db_name, source.db_user)
        assert copy.restore_target == harness.clock.now()

    def test_siblings_follow_new_timeline(self, harness, parent):
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id, ha_type="async")
        timelines = {n.timeline_id for n in harness.nodes(fork.id)}
        assert len(timelines) == 1
        assert timelines != {parent_timeline(harness, parent)}

    def test_paused_replay_is_resumed(self, harness, fleet, parent):
        fork = harness.provision(name="orders-fork", parent_id=parent.id)
        fork_vm = harness.vm_name(harness.representative(fork.id))
        fleet.respond("pg_is_in_recovery", "t", vm=fork_vm)
        fleet.respond("pg_get_wal_replay_pause_state", "paused", vm=fork_vm)

        assert harness.run(lambda: fleet.ran("pg_wal_replay_resume", vm=fork_vm))
        fleet.respond("pg_is_in_recovery", "f", vm=fork_vm)
        assert harness.run_until_step(fork.id, "wait")

    def test_installed_versions_are_adopted(self, harness, fleet, parent):
        fork = harness.provision(name="orders-fork", parent_id=parent.id)
        node = harness.representative(fork.id)
        fleet.respond("extname = 'lantern'", "0.3.0", vm=harness.vm_name(node))
        assert harness.run_until_step(fork.id, "wait")
        assert harness.get(NodeTable, node.id).lantern_version == "0.3.0"

    def test_version_upgrade_schedules_extension_update(self, harness, fleet, parent):
        fork = harness.provision(name="orders-fork", parent_id=parent.id, version_upgrade=True, lantern_version="0.4.0")
        node = harness.representative(fork.id)
        fleet.respond("extname = 'lantern'", "0.3.0", vm=harness.vm_name(node))
        assert harness.run(lambda: fleet.submitted("update_lantern_extension"))
        payload = json.loads(fleet.submitted("update_lantern_extension")[0].stdin)
        assert payload["version"] == "0.4.0"


class TestForkValidation:
    def test_unknown_parent(self, harness):
        with pytest.raises(NotFoundError):
            harness.provision(name="orders-fork", parent_id="01NOPE")

    def test_parent_without_backups(self, harness):
        source = harness.provision_steady(name="orders")
        with pytest.raises(ValidationError) as info:
            harness.provision(name="orders-fork", parent_id=source.id)
        assert "restore_target" in info.value.details

    @pytest.mark.parametrize("offset", [timedelta(minutes=56), timedelta(days=1)])
    def test_target_before_window(self, harness, parent, offset):
        with pytest.raises(ValidationError) as info:
            harness.provision(name="orders-fork", parent_id=parent.id, restore_target=harness.clock.now() - offset)
        assert "restore_target" in info.value.details

    def test_window_edges_are_inclusive(self, harness, parent):
        earliest = harness.clock.now() - timedelta(minutes=55)
        fork = harness.provision(name="orders-fork", parent_id=parent.id, restore_target=earliest)
        assert harness.get(ResourceTable, fork.id).restore_target == earliest

    def test_window_follows_retention_cleanup(self, harness, blob, parent):
        timeline_id = parent_timeline(harness, parent)
        old_key = backup_key_for_label(timeline_id, "base_000000010000000000000002")
        blob.put("test-backups", old_key, harness.clock.now() - timedelta(hours=3))
        with harness.session_factory() as session:
            timeline = TimelineModel(session, harness.services, session.get(TimelineTable, timeline_id))
            timeline.refresh_earliest_backup_completion_time()
            session.commit()

        blob.delete("test-backups", old_key)
        with pytest.raises(ValidationError) as info:
            harness.provision(
                name="orders-fork", parent_id=parent.id, restore_target=harness.clock.now() - timedelta(hours=2)
            )
        assert "restore_target" in info.value.details

    def test_failed_validation_leaves_nothing_behind(self, harness, parent):
        with harness.session_factory() as session:
            before = session.scalar(select(func.count()).select_from(ProcessTable))
        with pytest.raises(ValidationError):
            harness.provision(name="Bad Name!", parent_id=parent.id, restore_target="yesterday")
        with harness.session_factory() as session:
            assert session.scalar(select(func.count()).select_from(ProcessTable)) == before


# =============================================================================
# Logical replication and leader swap
# =============================================================================


class TestLogicalReplication:
    def test_publication_and_subscription(self, harness, fleet, parent):
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id, logical_replication=True)
        parent_vm = harness.vm_name(harness.representative(parent.id))
        fork_vm = harness.vm_name(harness.representative(fork.id))
        assert fleet.ran(f"CREATE PUBLICATION pub_{parent.id.lower()}", vm=parent_vm)
        (subscription,) = fleet.ran(f"CREATE SUBSCRIPTION sub_{fork.id.lower()}", vm=fork_vm)
        assert f"PUBLICATION pub_{parent.id.lower()}" in subscription.stdin

    def test_create_logical_replica(self, harness, parent):
        with harness.session_factory() as session:
            replica = create_logical_replica(
                session, harness.services, session.get(ResourceTable, parent.id), lantern_version="0.4.0"
            )
            session.commit()

        copy = harness.get(ResourceTable, replica.id)
        assert copy.name == "orders-replica"
        assert copy.parent_id == parent.id
        assert copy.logical_replication and copy.version_upgrade
        node = harness.representative(replica.id)
        source = harness.representative(parent.id)
        assert node.lantern_version == "0.4.0"
        assert node.extras_version == source.extras_version
        assert node.target_vm_size == source.target_vm_size


class TestSwapLeaders:
    def test_fork_takes_the_parent_address(self, harness, cloud, fleet, parent):
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id, logical_replication=True)
        parent_node = harness.representative(parent.id)
        fork_node = harness.representative(fork.id)
        parent_host = harness.get(VmTable, parent_node.vm_id).host
        fork_vm = harness.vm_name(fork_node)

        harness.signal(fork.id, "swap_leaders_with_parent")
        assert harness.run(lambda: harness.get(ResourceTable, fork.id).parent_id is None)

        assert cloud.address_of(fork_vm) == parent_host
        assert harness.get(VmTable, fork_node.vm_id).host == parent_host
        assert fleet.ran(f"ALTER SUBSCRIPTION sub_{fork.id.lower()} DISABLE", vm=fork_vm)
        assert fleet.ran("default_transaction_read_only TO on", vm=harness.vm_name(parent_node))
        assert fleet.ran("default_transaction_read_only TO off", vm=fork_vm)

    def test_domains_move_and_tls_is_redone(self, harness, fleet, parent):
        with harness.session_factory() as session:
            rep = session.get(NodeTable, harness.representative(parent.id).id)
            rep.domain = "orders.db.example.com"
            session.commit()
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id)
        fork_node = harness.representative(fork.id)

        harness.signal(fork.id, "swap_leaders_with_parent")
        assert harness.run(lambda: fleet.submitted("setup_ssl", vm=harness.vm_name(fork_node)))
        assert harness.get(NodeTable, fork_node.id).domain == "orders.db.example.com"

    def test_swap_waits_while_parent_has_no_leader(self, harness, cloud, parent):
        fork = harness.provision_steady(name="orders-fork", parent_id=parent.id)
        parent_node = harness.representative(parent.id)
        parent_host = harness.get(VmTable, parent_node.vm_id).host
        fork_vm = harness.vm_name(harness.representative(fork.id))
        with harness.session_factory() as session:
            session.get(NodeTable, parent_node.id).representative_at = None
            session.commit()

        harness.signal(fork.id, "swap_leaders_with_parent")
        assert harness.run_until_step(fork.id, "swap_leaders_with_parent")
        harness.run(max_rounds=5)
        assert harness.step_of(fork.id) == "swap_leaders_with_parent"
        assert harness.process(fork.id).last_error is None
        assert harness.is_signaled(fork.id, "swap_leaders_with_parent")
        assert cloud.address_of(fork_vm) != parent_host

        with harness.session_factory() as session:
            session.get(NodeTable, parent_node.id).representative_at = harness.clock.now()
            session.commit()
        assert harness.run(lambda: harness.get(ResourceTable, fork.id).parent_id is None)
        assert cloud.address_of(fork_vm) == parent_host
        assert not harness.is_signaled(fork.id, "swap_leaders_with_parent")
