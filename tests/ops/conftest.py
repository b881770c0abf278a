"""Fixtures for ops tests."""

import pytest

from dbplane.ops.clusters import create_cluster
from dbplane.ops.context import OperationContext
from dbplane.ops.requests import CreateClusterRequest


@pytest.fixture
def dry_ctx(session, services) -> OperationContext:
    return OperationContext(session=session, services=services, caller="test", dry_run=True)


@pytest.fixture
def make_cluster(ctx):
    def make(**fields):
        result = create_cluster(ctx, CreateClusterRequest(**{"name": "orders", **fields}))
        assert result.success, result.error
        return result.data

    return make
