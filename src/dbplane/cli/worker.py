"""
CLI: ``dbplane worker``: run the process worker.
"""

from __future__ import annotations

import typer

from dbplane.cli.utils import build_runtime, console, err_console
from dbplane.core.errors import ConfigError
from dbplane.core.settings import get_settings

app = typer.Typer(no_args_is_help=True)


def _runner(worker_id: str | None = None):
    from dbplane.execution.registry import load_builtin_programs
    from dbplane.execution.runner import Runner

    try:
        session_factory, services = build_runtime()
    except ConfigError as exc:
        err_console.print(f"[bold red]Configuration error[/bold red]: {exc}")
        raise typer.Exit(code=2) from exc
    return Runner(session_factory, services, registry=load_builtin_programs(), owner_id=worker_id)


@app.command("start")
def start(
    workers: int | None = typer.Option(None, "--workers", "-w", help="Concurrent invocation threads"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between poll cycles"),
    batch_size: int | None = typer.Option(None, "--batch-size", help="Max processes dispatched per poll"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),  # noqa: UP007
) -> None:
    """Run due processes until SIGINT/SIGTERM.

    Unset options fall back to ``DBPLANE_WORKER_*`` settings.  Any number of
    workers may share one database; leases keep each process single-threaded.

    Example::

        dbplane worker start --workers 8 --poll-interval 0.5
    """
    from dbplane.execution.worker import WorkerLoop

    settings = get_settings()
    workers = workers or settings.worker_max_workers
    poll_interval = poll_interval or settings.worker_poll_interval
    batch_size = batch_size or settings.worker_batch_size

    console.print(
        f"[bold green]Starting dbplane worker[/bold green] "
        f"(threads={workers}, poll={poll_interval}s, batch={batch_size})"
    )
    try:
        loop = WorkerLoop(
            _runner(worker_id),
            poll_interval=poll_interval,
            batch_size=batch_size,
            max_workers=workers,
            worker_id=worker_id,
        )
        loop.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
    except typer.Exit:
        raise
    except Exception as exc:
        err_console.print(f"[red]Worker error: {exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("drain")
def drain(
    max_rounds: int = typer.Option(50, "--max-rounds", help="Stop after this many passes"),
) -> None:
    """Run every due process in the foreground until nothing is due."""
    total = _runner().drain(max_rounds=max_rounds)
    console.print(f"[green]{total}[/green] invocations")
