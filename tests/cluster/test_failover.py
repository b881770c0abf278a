"""
Failover, self-healing and the pulse monitor.
"""

import pytest
from sqlalchemy import func, select

from dbplane.cluster.monitor import MONITOR_PROCESS_ID, ensure_monitor
from dbplane.core.errors import RemoteCommandError
from dbplane.core.orm.tables import NodeTable, ProcessTable, VmTable


def open_tags(notifier) -> set[str]:
    resolved = {page.id for page in notifier.resolved}
    return {page.tag for page in notifier.opened if page.id not in resolved}


@pytest.fixture
def pair(harness):
    """A steady async cluster: (resource, primary, standby)."""
    resource = harness.provision_steady(name="orders", ha_type="async")
    primary = harness.representative(resource.id)
    (standby,) = harness.standbys(resource.id)
    assert harness.settle(primary.id)
    assert harness.settle(standby.id)
    return resource, primary, standby


# =============================================================================
# Take-over
# =============================================================================


class TestTakeOver:
    def test_standby_takes_over_from_unreachable_primary(self, harness, cloud, fleet, notifier, pair):
        resource, primary, standby = pair
        primary_vm, standby_vm = harness.vm_name(primary), harness.vm_name(standby)
        primary_host = harness.get(VmTable, primary.vm_id).host
        fleet.unreachable.add(primary_vm)

        harness.signal(standby.id, "take_over")
        assert harness.run(
            lambda: harness.representative(resource.id).id == standby.id and harness.step_of(standby.id) == "wait"
        )

        promoted = harness.get(NodeTable, standby.id)
        demoted = harness.get(NodeTable, primary.id)
        assert promoted.timeline_access == "push"
        assert demoted.timeline_access == "fetch"
        assert demoted.representative_at is None
        assert fleet.ran("pg_promote", vm=standby_vm)

        # the standby now answers on the old primary's address
        assert cloud.address_of(standby_vm) == primary_host
        assert harness.get(VmTable, standby.vm_id).host == primary_host

        # the unreachable old primary is checked up and paged
        tag = f"NodeUnavailable-{primary.id}"
        assert harness.run(lambda: tag in open_tags(notifier))
        assert harness.step_of(primary.id) == "unavailable"

        fleet.unreachable.discard(primary_vm)
        assert harness.run_until_step(primary.id, "wait")
        assert tag not in open_tags(notifier)
        assert not harness.is_signaled(primary.id, "checkup")

    def test_reachable_primary_is_demoted_cleanly(self, harness, fleet, pair):
        resource, primary, standby = pair
        primary_vm = harness.vm_name(primary)
        harness.signal(standby.id, "take_over")
        assert harness.run(lambda: harness.representative(resource.id).id == standby.id)

        assert fleet.ran("default_transaction_read_only TO on", vm=primary_vm)
        assert fleet.ran('"POSTGRESQL_REPLICATION_MODE", "slave"', vm=primary_vm)
        assert fleet.ran("default_transaction_read_only TO off", vm=primary_vm)
        assert not harness.is_signaled(primary.id, "checkup")

    def test_take_over_on_representative_is_ignored(self, harness, fleet, pair):
        resource, primary, _ = pair
        harness.signal(primary.id, "take_over")
        assert harness.settle(primary.id)
        assert harness.representative(resource.id).id == primary.id
        assert not fleet.ran("pg_promote")

    def test_domain_follows_the_primary(self, harness, pair):
        resource, primary, standby = pair
        with harness.session_factory() as session:
            session.get(NodeTable, primary.id).domain = "orders.db.example.com"
            session.commit()
        harness.signal(standby.id, "take_over")
        assert harness.run(lambda: harness.representative(resource.id).id == standby.id)
        assert harness.get(NodeTable, standby.id).domain == "orders.db.example.com"
        assert harness.get(NodeTable, primary.id).domain is None


# =============================================================================
# Self-healing
# =============================================================================


class TestUnavailable:
    def test_restarts_are_bounded(self, harness, fleet, notifier, settings, pair):
        _, primary, standby = pair
        fleet.unreachable.add(harness.vm_name(primary))
        harness.signal(primary.id, "checkup")

        def restarts() -> int:
            with harness.session_factory() as session:
                return session.scalar(
                    select(func.count())
                    .select_from(ProcessTable)
                    .where(ProcessTable.program == "Node", ProcessTable.id.not_in([primary.id, standby.id]))
                )

        assert harness.run(lambda: harness.step_of(primary.id) == "unavailable")
        harness.run(lambda: restarts() > settings.max_auto_restarts, max_rounds=60)
        assert restarts() == settings.max_auto_restarts
        assert f"NodeUnavailable-{primary.id}" in open_tags(notifier)

    def test_checkup_of_healthy_node_is_consumed(self, harness, pair):
        _, primary, _ = pair
        harness.signal(primary.id, "checkup")
        assert harness.settle(primary.id)
        assert not harness.is_signaled(primary.id, "checkup")

    def test_redo_in_progress_counts_as_available(self, harness, fleet, notifier, pair):
        _, primary, _ = pair
        vm_name = harness.vm_name(primary)
        fleet.respond("SELECT 1", RemoteCommandError, vm=vm_name)
        fleet.respond("lantern/bin/logs", "LOG:  redo in progress, elapsed time: 3.2 s", vm=vm_name)
        harness.signal(primary.id, "checkup")
        assert harness.settle(primary.id)
        assert f"NodeUnavailable-{primary.id}" not in open_tags(notifier)


# =============================================================================
# Pulse monitor
# =============================================================================


class TestPulseMonitor:
    def test_singleton(self, session, services):
        first = ensure_monitor(session, services)
        second = ensure_monitor(session, services)
        assert first is second
        assert first.id == MONITOR_PROCESS_ID

    def test_down_streak_raises_checkup(self, harness, fleet, notifier, pair):
        _, primary, standby = pair
        with harness.session_factory() as session:
            ensure_monitor(session, harness.services)
            session.commit()
        fleet.unreachable.add(harness.vm_name(standby))

        assert harness.run(lambda: harness.step_of(standby.id) == "unavailable")
        node = harness.get(NodeTable, standby.id)
        assert node.pulse_reading == "down"
        assert node.pulse_repeat >= 3
        assert harness.get(NodeTable, primary.id).pulse_reading == "up"
        assert f"NodeUnavailable-{standby.id}" in open_tags(notifier)

    def test_short_blip_is_ignored(self, harness, fleet, pair):
        _, _, standby = pair
        with harness.session_factory() as session:
            ensure_monitor(session, harness.services)
            session.commit()
        vm_name = harness.vm_name(standby)
        fleet.unreachable.add(vm_name)
        assert harness.run(lambda: harness.get(NodeTable, standby.id).pulse_repeat == 2)
        fleet.unreachable.discard(vm_name)
        assert harness.run(lambda: harness.get(NodeTable, standby.id).pulse_reading == "up")
        assert not harness.is_signaled(standby.id, "checkup")
        assert harness.step_of(standby.id) == "wait"
