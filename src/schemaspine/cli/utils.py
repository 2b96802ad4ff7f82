"""
CLI utility helpers: output formatting, runner construction, error mapping.
"""

from __future__ import annotations

import importlib
import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from sqlalchemy import MetaData, Table as SATable
from sqlalchemy.exc import SQLAlchemyError

from schemaspine.core.errors import ConfigError, SchemaSpineError
from schemaspine.core.migrations.revision import RevisionStore
from schemaspine.core.migrations.runner import MigrationRunner
from schemaspine.core.schema import SchemaSnapshot, snapshot_from_table
from schemaspine.core.settings import SchemaSpineSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Invocation state ─────────────────────────────────────────────────────


@dataclass
class CliState:
    """Global options shared by every sub-command."""

    database: str | None = None
    versions: Path | None = None
    as_json: bool = False

    def settings(self) -> SchemaSpineSettings:
        try:
            return get_settings(database_url=self.database, versions_dir=self.versions)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}", cause=e) from e

    def store(self) -> RevisionStore:
        return RevisionStore(self.settings().versions_dir)

    @contextmanager
    def runner(self) -> Iterator[MigrationRunner]:
        """A runner whose connection manager is disposed on exit."""
        runner = MigrationRunner.from_settings(self.settings())
        try:
            yield runner
        finally:
            runner.manager.dispose()


def get_state(ctx: typer.Context) -> CliState:
    state = ctx.find_root().obj
    if not isinstance(state, CliState):
        state = CliState()
        ctx.find_root().obj = state
    return state


# ── Error mapping ────────────────────────────────────────────────────────


@contextmanager
def handle_errors() -> Iterator[None]:
    """Render schemaspine errors and exit with their mapped code."""
    try:
        yield
    except SchemaSpineError as e:
        err_console.print(f"[bold red]Error[/bold red] ({type(e).__name__}): {escape(str(e))}")
        raise typer.Exit(code=e.exit_code) from e
    except SQLAlchemyError as e:
        # corrupt or unreadable store files
        err_console.print(f"[bold red]Error[/bold red] (StoreError): {escape(str(getattr(e, 'orig', None) or e))}")
        raise typer.Exit(code=1) from e


# ── Collaborator loading ─────────────────────────────────────────────────


def load_declared(reference: str) -> list[SchemaSnapshot]:
    """Import ``module:attr`` and turn it into declared snapshots.

    ``attr`` may be a SQLAlchemy ``MetaData``, a ``Table``, or an iterable
    of either or of ``SchemaSnapshot`` objects.
    """
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Expected 'module:attribute', got {reference!r}")
    if str(Path.cwd()) not in sys.path:
        sys.path.insert(0, str(Path.cwd()))
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load {reference!r}: {e}", cause=e) from e

    items = target.sorted_tables if isinstance(target, MetaData) else target
    if isinstance(items, (SATable, SchemaSnapshot)):
        items = [items]
    declared = []
    for item in items:
        if isinstance(item, MetaData):
            declared.extend(snapshot_from_table(t) for t in item.sorted_tables)
        elif isinstance(item, SATable):
            declared.append(snapshot_from_table(item))
        elif isinstance(item, SchemaSnapshot):
            declared.append(item)
        else:
            raise ConfigError(f"{reference!r} contains unsupported object {item!r}")
    return declared


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a result object, a list of rows, or ``None``."""
    if as_json:
        if isinstance(data, list | tuple):
            payload: Any = [_to_dict(d) for d in data]
        elif data is None:
            payload = None
        else:
            payload = _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if data is None or (isinstance(data, list) and not data):
        console.print("[dim]No items.[/dim]")
        return
    if isinstance(data, list):
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


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
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
