"""
CLI: ``dbplane db``: control-plane database commands.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import make_context, output_paged, output_result
from dbplane.ops.database import initialize_database, list_processes, purge_processes
from dbplane.ops.requests import ListProcessesRequest, PurgeRequest

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without changes"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Create tables, seed system health checks and start the pulse monitor."""
    with make_context(dry_run=dry_run) as ctx:
        output_result(initialize_database(ctx), as_json=json_out, title="Database Init")


@app.command()
def processes(
    program: str | None = typer.Option(None, "--program", "-p", help="Node, Resource, Timeline, Doctor, ..."),
    all_: bool = typer.Option(False, "--all", help="Include exited processes"),
    failing: bool = typer.Option(False, "--failing", help="Only processes whose last invocation raised"),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List processes with their step, stack depth and last error."""
    request = ListProcessesRequest(
        program=program, include_exited=all_, failing_only=failing, limit=limit, offset=offset
    )
    with make_context() as ctx:
        output_paged(list_processes(ctx, request), as_json=json_out, title="Processes")


@app.command()
def purge(
    older_than_days: int = typer.Option(30, "--days", help="Purge processes that exited more than N days ago"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Delete exited processes."""
    with make_context(dry_run=dry_run) as ctx:
        output_result(purge_processes(ctx, PurgeRequest(older_than_days=older_than_days)), as_json=json_out)
