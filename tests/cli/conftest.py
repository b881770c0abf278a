"""CLI fixtures: route ``build_runtime`` to the test database and fakes."""

import importlib
import logging

import pytest
import structlog


@pytest.fixture(autouse=True)
def cli_runtime(monkeypatch, session_factory, services):
    def build_runtime(settings=None):
        return session_factory, services

    monkeypatch.setattr("dbplane.cli.utils.build_runtime", build_runtime)
    monkeypatch.setattr("dbplane.cli.worker.build_runtime", build_runtime)
    # CliRunner swaps stdout per invocation; keep log lines out of captured output.
    monkeypatch.setattr(importlib.import_module("dbplane.cli.app"), "configure_logging", lambda **kwargs: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield session_factory
    structlog.reset_defaults()
