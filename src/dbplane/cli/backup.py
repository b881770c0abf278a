"""
CLI: ``dbplane backup``: backup commands.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import console, make_context, output_result
from dbplane.ops.clusters import get_cluster, trigger_backup

app = typer.Typer(no_args_is_help=True)


@app.command("trigger")
def trigger(resource_id: str = typer.Argument(...), json_out: bool = typer.Option(False, "--json")) -> None:
    """Take a base backup of the cluster now."""
    with make_context() as ctx:
        output_result(trigger_backup(ctx, resource_id), as_json=json_out, title="Backup")


@app.command("window")
def window(resource_id: str = typer.Argument(...)) -> None:
    """Print the earliest and latest moments a fork of this cluster can restore to."""
    with make_context() as ctx:
        result = get_cluster(ctx, resource_id)
    if not result.success:
        output_result(result)
    earliest, latest = result.data.restore_window
    if earliest is None:
        console.print("[yellow]No completed backup yet: nothing to restore from[/yellow]")
        return
    console.print(f"  [cyan]earliest[/cyan]: {earliest.isoformat()}")
    console.print(f"  [cyan]latest[/cyan]:   {latest.isoformat()}")
