"""Tests for ``dbplane worker`` CLI commands."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from dbplane.cli.app import app
from dbplane.execution.runner import Runner

runner = CliRunner()


class TestWorkerStart:
    @patch("dbplane.execution.worker.WorkerLoop")
    def test_start_defaults(self, mock_cls):
        loop = MagicMock()
        mock_cls.return_value = loop

        result = runner.invoke(app, ["worker", "start"])
        assert result.exit_code == 0, result.output
        args, kwargs = mock_cls.call_args
        assert isinstance(args[0], Runner)
        assert kwargs == {"poll_interval": 1.0, "batch_size": 20, "max_workers": 4, "worker_id": None}
        loop.start.assert_called_once()

    @patch("dbplane.execution.worker.WorkerLoop")
    def test_start_custom_params(self, mock_cls):
        mock_cls.return_value = MagicMock()
        result = runner.invoke(
            app,
            ["worker", "start", "--workers", "8", "--poll-interval", "0.5", "--batch-size", "5", "--id", "worker-1"],
        )
        assert result.exit_code == 0, result.output
        _, kwargs = mock_cls.call_args
        assert kwargs == {"poll_interval": 0.5, "batch_size": 5, "max_workers": 8, "worker_id": "worker-1"}
        assert mock_cls.call_args.args[0].leases.owner_id == "worker-1"

    @patch("dbplane.execution.worker.WorkerLoop")
    def test_keyboard_interrupt(self, mock_cls):
        loop = MagicMock()
        loop.start.side_effect = KeyboardInterrupt
        mock_cls.return_value = loop
        result = runner.invoke(app, ["worker", "start"])
        assert result.exit_code == 0
        assert "Worker stopped by user" in result.output

    @patch("dbplane.execution.worker.WorkerLoop")
    def test_loop_error_exits_1(self, mock_cls):
        loop = MagicMock()
        loop.start.side_effect = RuntimeError("pool exploded")
        mock_cls.return_value = loop
        result = runner.invoke(app, ["worker", "start"])
        assert result.exit_code == 1
        assert "pool exploded" in result.output


class TestWorkerDrain:
    def test_runs_due_processes(self):
        created = runner.invoke(app, ["cluster", "create", "orders", "--json"])
        assert created.exit_code == 0, created.output
        result = runner.invoke(app, ["worker", "drain", "--max-rounds", "1"])
        assert result.exit_code == 0
        assert "invocations" in result.output
        assert not result.output.strip().startswith("0 ")
