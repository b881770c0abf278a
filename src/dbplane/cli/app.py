"""
Root Typer application for the dbplane CLI.

Every command resolves to an operation in :mod:`dbplane.ops`: cluster
creation assembles processes, everything else raises signal flags that the
worker picks up.
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

from dbplane import __version__
from dbplane.core.logging import configure_logging
from dbplane.core.settings import get_settings

app = Typer(
    name="dbplane",
    help="dbplane: durable control plane for replicated database clusters.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("dbplane")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"dbplane {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """dbplane CLI: manage clusters, nodes, backups, incidents and the worker."""
    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
        service=settings.service_name,
        stream=sys.stderr,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from dbplane.cli.backup import app as backup_app  # noqa: E402
from dbplane.cli.cluster import app as cluster_app  # noqa: E402
from dbplane.cli.db import app as db_app  # noqa: E402
from dbplane.cli.incident import app as incident_app  # noqa: E402
from dbplane.cli.node import app as node_app  # noqa: E402
from dbplane.cli.worker import app as worker_app  # noqa: E402

app.add_typer(cluster_app, name="cluster", help="Cluster lifecycle: create, fork, resize, upgrade, delete.")
app.add_typer(node_app, name="node", help="Single-server actions: start, stop, restart, take over.")
app.add_typer(backup_app, name="backup", help="Backups and restore windows.")
app.add_typer(incident_app, name="incident", help="Health-check incidents.")
app.add_typer(worker_app, name="worker", help="Process worker.")
app.add_typer(db_app, name="db", help="Control-plane database operations.")
