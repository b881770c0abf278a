"""
CLI: ``dbplane incident``: health-check incident commands.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import make_context, output_paged, output_result
from dbplane.ops import incidents as ops
from dbplane.ops.requests import ListIncidentsRequest

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_(
    resource_id: str | None = typer.Option(None, "--cluster", "-c", help="Only this cluster's incidents"),
    active_only: bool = typer.Option(False, "--active", help="Only triggered or acknowledged incidents"),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List unresolved incidents."""
    request = ListIncidentsRequest(resource_id=resource_id, include_new=not active_only, limit=limit, offset=offset)
    with make_context() as ctx:
        output_paged(ops.list_incidents(ctx, request), as_json=json_out, title="Incidents")


@app.command("ack")
def ack(incident_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Acknowledge an incident."""
    with make_context() as ctx:
        output_result(ops.acknowledge_incident(ctx, incident_id), as_json=json_out, title="Incident")


@app.command("trigger")
def trigger(incident_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Mark an incident as triggered."""
    with make_context() as ctx:
        output_result(ops.trigger_incident(ctx, incident_id), as_json=json_out, title="Incident")


@app.command("resolve")
def resolve(incident_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Resolve an incident and its page."""
    with make_context() as ctx:
        output_result(ops.resolve_incident(ctx, incident_id), as_json=json_out, title="Incident")
