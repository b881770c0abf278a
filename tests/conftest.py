"""
Shared pytest fixtures for dbplane tests.

This module provides:
- A file-backed SQLite control-plane database per test
- A frozen clock and test settings
- In-memory fakes for the shell, cloud, DNS, blob storage and notifier
- A runner over the built-in programs and a ``Harness`` that drives it
- An ``OperationContext`` for the ops layer

Usage:
    Fixtures are auto-discovered by pytest::

        def test_primary_reaches_wait(harness):
            resource = harness.provision_steady(name="orders")
            ...
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import pytest

from dbplane.core.orm.session import create_all, create_dbplane_engine, dbplane_session_factory
from dbplane.core.settings import DbplaneSettings
from dbplane.core.timestamps import FrozenClock
from dbplane.execution.registry import load_builtin_programs
from dbplane.execution.runner import Runner
from dbplane.ops.context import OperationContext
from dbplane.remote.services import Services
from tests._support.fakes import FakeBlob, FakeCloud, FakeDns, FakeFleet, RecordingNotifier
from tests._support.harness import Harness

# Monday, five past noon
START = datetime(2026, 3, 2, 12, 5, 0)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path: Path):
    engine = create_dbplane_engine(f"sqlite:///{tmp_path / 'dbplane.db'}")
    create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return dbplane_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Generator:
    with session_factory() as session:
        yield session


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def settings(tmp_path: Path) -> DbplaneSettings:
    return DbplaneSettings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'dbplane.db'}",
        backup_bucket="test-backups",
        dns_token="token",
        dns_zone_id="zone",
    )


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def dns() -> FakeDns:
    return FakeDns()


@pytest.fixture
def blob() -> FakeBlob:
    return FakeBlob()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def services(settings, cloud, dns, blob, notifier, fleet, clock) -> Services:
    return Services(
        settings=settings,
        cloud=cloud,
        dns=dns,
        blob=blob,
        notifier=notifier,
        shell_factory=fleet.shell_factory,
        clock=clock,
    )


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def runner(session_factory, services) -> Runner:
    return Runner(session_factory, services, registry=load_builtin_programs(), owner_id="test-worker")


@pytest.fixture
def harness(session_factory, services, runner, fleet, cloud, dns, blob, notifier) -> Harness:
    return Harness(session_factory, services, runner, fleet, cloud, dns, blob, notifier)


# =============================================================================
# Operations
# =============================================================================


@pytest.fixture
def ctx(session, services) -> OperationContext:
    return OperationContext(session=session, services=services)
