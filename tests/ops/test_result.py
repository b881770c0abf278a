"""Tests for ``dbplane.ops.result``: how failures reach the CLI."""

import pytest

from dbplane.core.errors import (
    CloudError,
    EngineError,
    NotFoundError,
    RemoteCommandError,
    RemoteTaskFailed,
    ValidationError,
)
from dbplane.ops.result import OperationResult, PagedResult, error_code, start_timer


class TestOperationResult:
    def test_ok(self):
        result = OperationResult.ok({"id": "r1"}, elapsed_ms=1.5)
        assert result.success
        assert result.data == {"id": "r1"}
        assert result.error is None

    def test_validation_error_keeps_field_map(self):
        result = OperationResult.from_error(ValidationError(details={"name": "bad", "size": "huge"}))
        assert not result.success
        assert result.error.code == "VALIDATION_FAILED"
        assert result.error.details == {"name": "bad", "size": "huge"}
        assert not result.error.retryable

    def test_not_found(self):
        result = OperationResult.from_error(NotFoundError("No cluster with id r1"))
        assert result.error.code == "NOT_FOUND"
        assert result.error.message == "No cluster with id r1"

    def test_remote_failure_carries_vm(self):
        result = OperationResult.from_error(RemoteCommandError("ssh failed").with_context(vm_name="orders-vm-1"))
        assert result.error.code == "REMOTE_COMMAND_FAILED"
        assert result.error.details == {"vm_name": "orders-vm-1"}
        assert result.error.retryable


@pytest.mark.parametrize(
    "exc, code",
    [
        (RemoteTaskFailed("task failed"), "REMOTE_COMMAND_FAILED"),
        (CloudError("quota"), "CLOUD_UNAVAILABLE"),
        (EngineError("no such step"), "ORCHESTRATION"),
    ],
)
def test_error_codes(exc, code):
    assert error_code(exc) == code


class TestPagedResult:
    def test_has_more(self):
        page = PagedResult.from_items([1, 2], total=5, limit=2, offset=0)
        assert page.has_more
        assert page.data == [1, 2]

    def test_last_page(self):
        page = PagedResult.from_items([5], total=5, limit=2, offset=4)
        assert not page.has_more


def test_timer_counts_up():
    timer = start_timer()
    assert timer.elapsed_ms >= 0
