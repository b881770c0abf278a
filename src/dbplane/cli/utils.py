"""
CLI utility helpers: runtime wiring and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import Session, sessionmaker

from dbplane.core.errors import ConfigError
from dbplane.core.orm.session import create_dbplane_engine, dbplane_session_factory
from dbplane.core.settings import DbplaneSettings, get_settings
from dbplane.ops.context import OperationContext
from dbplane.ops.result import OperationResult, PagedResult
from dbplane.remote.services import Services, build_services

console = Console()
err_console = Console(stderr=True)


# ── Runtime helpers ──────────────────────────────────────────────────────


def build_runtime(settings: DbplaneSettings | None = None) -> tuple[sessionmaker[Session], Services]:
    """Session factory on ``DBPLANE_DATABASE_URL`` plus the configured services."""
    settings = settings or get_settings()
    services = build_services(settings)
    engine = create_dbplane_engine(settings.database_url, echo=settings.db_echo)
    return dbplane_session_factory(engine), services


@contextmanager
def make_context(*, dry_run: bool = False) -> Iterator[OperationContext]:
    """Yield an ``OperationContext`` for one CLI command; exits with code 2 on bad configuration."""
    try:
        session_factory, services = build_runtime()
    except ConfigError as exc:
        err_console.print(f"[bold red]Configuration error[/bold red]: {exc}")
        raise typer.Exit(code=2) from exc
    with session_factory() as session:
        yield OperationContext(session=session, services=services, caller="cli", dry_run=dry_run)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def _fail(result: OperationResult) -> None:
    err = result.error
    msg = err.message if err else "Unknown error"
    code = err.code if err else "ERROR"
    err_console.print(f"[bold red]Error[/bold red] ({code}): {msg}")
    if err is not None:
        for field, message in err.details.items():
            err_console.print(f"  [red]{field}[/red]: {message}")
        if err.retryable:
            err_console.print("[dim]The failure may be transient; retrying can succeed.[/dim]")
    raise typer.Exit(code=1)


def output_result(
    result: OperationResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render an ``OperationResult`` to the terminal."""
    if not result.success:
        _fail(result)

    data = result.data

    if as_json:
        payload = _to_dict(data) if not isinstance(data, list | tuple) else [_to_dict(d) for d in data]
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


def output_paged(
    result: PagedResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render a ``PagedResult`` to the terminal with pagination info."""
    if not result.success:
        _fail(result)

    items = result.data or []

    if as_json:
        payload = {
            "items": [_to_dict(d) for d in items],
            "total": result.total,
            "limit": result.limit,
            "offset": result.offset,
            "has_more": result.has_more,
        }
        console.print_json(json.dumps(payload, default=str))
        return

    if not items:
        console.print("[dim]No items.[/dim]")
        return

    _print_table(items, title=title)
    console.print(f"\n[dim]Showing {len(items)} of {result.total} (offset {result.offset})[/dim]")


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*(str(v) for v in d.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs; nested lists of rows become tables."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    nested = {}
    for k, v in data.items():
        if isinstance(v, list) and v and isinstance(v[0], dict):
            nested[k] = v
            continue
        console.print(f"  [cyan]{k}[/cyan]: {v}")
    for k, rows in nested.items():
        _print_table(rows, title=k)
