"""
CLI: ``dbplane node``: single-server commands.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import make_context, output_result
from dbplane.ops.clusters import get_node, node_action
from dbplane.ops.requests import NodeActionRequest

app = typer.Typer(no_args_is_help=True)


def _act(node_id: str, action: str, json_out: bool) -> None:
    with make_context() as ctx:
        output_result(node_action(ctx, NodeActionRequest(node_id=node_id, action=action)), as_json=json_out)


@app.command("show")
def show(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Show a node's role, step and display state."""
    with make_context() as ctx:
        output_result(get_node(ctx, node_id), as_json=json_out, title="Node")


@app.command("start")
def start(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Start the database container."""
    _act(node_id, "start", json_out)


@app.command("stop")
def stop(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Stop the database container."""
    _act(node_id, "stop", json_out)


@app.command("restart")
def restart(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Restart the VM and wait for the database to come back."""
    _act(node_id, "restart", json_out)


@app.command("take-over")
def take_over(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Promote this standby to primary (manual failover)."""
    _act(node_id, "take-over", json_out)


@app.command("update-agent")
def update_agent(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Reinstall the remote agent."""
    _act(node_id, "update-agent", json_out)


@app.command("setup-tls")
def setup_tls(node_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Reissue the TLS certificate for the node's domain."""
    _act(node_id, "setup-tls", json_out)
