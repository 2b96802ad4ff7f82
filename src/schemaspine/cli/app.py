"""
Root Typer application for the schemaspine CLI.

Commands operate on one store (``--database``) and one versions
directory (``--versions``); both fall back to ``SCHEMASPINE_*`` settings.
Errors exit with the code their class declares (3 multiple heads,
4 lock timeout, 5 irreversible, 1 otherwise).
"""

from __future__ import annotations

import warnings
from pathlib import Path

import typer
from rich.markup import escape
from typer import Typer

from schemaspine.cli.utils import (
    CliState,
    console,
    err_console,
    get_state,
    handle_errors,
    load_declared,
    output,
)
from schemaspine.core.errors import ConfigError
from schemaspine.core.logging import configure_logging

app = Typer(
    name="schemaspine",
    help="schemaspine: schema migrations for embedded SQLite stores.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("schemaspine")
        except PackageNotFoundError:
            from schemaspine import __version__ as v
        typer.echo(f"schemaspine {v}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    database: str | None = typer.Option(None, "--database", "-d", help="SQLAlchemy URL of the SQLite store."),
    versions: Path | None = typer.Option(None, "--versions", "-V", help="Directory holding revision files."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
    log_level: str | None = typer.Option(None, "--log-level", help="Override the configured log level."),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """schemaspine CLI: apply, revert and author schema revisions."""
    state = CliState(database=database, versions=versions, as_json=json_out)
    ctx.obj = state
    with handle_errors():
        settings = state.settings()
        configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)


# ── Apply / revert ───────────────────────────────────────────────────────


@app.command("upgrade")
def upgrade_cmd(
    ctx: typer.Context,
    to: str | None = typer.Option(None, "--to", help="Target revision (default: the unique head)."),
) -> None:
    """Apply pending revisions up to a target."""
    state = get_state(ctx)
    with handle_errors(), state.runner() as runner:
        result = runner.upgrade(to)
    if state.as_json:
        output(result, as_json=True)
        return
    if not result.applied:
        console.print(f"[dim]Already at {result.current or 'base'}.[/dim]")
        return
    for rid in result.applied:
        console.print(f"[green]applied[/green] {rid}")
    console.print(f"Current: [bold]{result.current}[/bold]")


@app.command("downgrade")
def downgrade_cmd(
    ctx: typer.Context,
    to: str = typer.Option(..., "--to", help="Revision to keep (``base`` reverts everything)."),
) -> None:
    """Revert applied revisions that are not ancestors of a target."""
    state = get_state(ctx)
    with handle_errors(), state.runner() as runner:
        result = runner.downgrade(to)
    if state.as_json:
        output(result, as_json=True)
        return
    if not result.reverted:
        console.print(f"[dim]Nothing to revert; at {result.current or 'base'}.[/dim]")
        return
    for rid in result.reverted:
        console.print(f"[yellow]reverted[/yellow] {rid}")
    console.print(f"Current: [bold]{result.current or 'base'}[/bold]")


@app.command("stamp")
def stamp_cmd(
    ctx: typer.Context,
    revision: str = typer.Argument(..., help="Revision to record as applied (``base`` clears the ledger)."),
) -> None:
    """Record a revision in the ledger without running it."""
    state = get_state(ctx)
    with handle_errors(), state.runner() as runner:
        result = runner.stamp(revision)
    if state.as_json:
        output(result, as_json=True)
        return
    console.print(f"[green]✓[/green] Stamped: {result.current or 'base'} ({len(result.applied)} recorded)")


# ── Inspection ───────────────────────────────────────────────────────────


@app.command("current")
def current_cmd(ctx: typer.Context) -> None:
    """Show the most recently applied revision."""
    state = get_state(ctx)
    with handle_errors(), state.runner() as runner:
        record = runner.current()
    if state.as_json:
        output({"current": record.revision_id if record else None}, as_json=True)
        return
    if record is None:
        console.print("[dim]No revision applied.[/dim]")
    else:
        console.print(f"{record.revision_id} [dim](applied {record.applied_at.isoformat()})[/dim]")


@app.command("history")
def history_cmd(ctx: typer.Context) -> None:
    """List applied revisions in application order."""
    state = get_state(ctx)
    with handle_errors(), state.runner() as runner:
        records = runner.history()
        rows = []
        for record in records:
            row = record.to_dict()
            row["message"] = runner.graph.get(record.revision_id).message if record.revision_id in runner.graph else "?"
            rows.append(row)
    output(rows, as_json=state.as_json, title="Revision history")


@app.command("heads")
def heads_cmd(ctx: typer.Context) -> None:
    """List head revisions of the revision graph."""
    state = get_state(ctx)
    with handle_errors():
        graph = state.store().load()
    rows = [{"id": rid, "message": graph.get(rid).message} for rid in graph.heads()]
    output(rows, as_json=state.as_json, title="Heads")


# ── Authoring ────────────────────────────────────────────────────────────


@app.command("merge")
def merge_cmd(
    ctx: typer.Context,
    first: str = typer.Argument(..., help="First head to join."),
    second: str = typer.Argument(..., help="Second head to join."),
    message: str = typer.Option(..., "--message", "-m", help="Merge message."),
) -> None:
    """Create a merge revision joining two heads."""
    state = get_state(ctx)
    with handle_errors():
        store = state.store()
        revision = store.merge(store.load(), [first, second], message)
    if state.as_json:
        output({"id": revision.id, "parents": list(revision.parents), "file": revision.filename()}, as_json=True)
        return
    console.print(f"[green]✓[/green] Merge revision {revision.id} ({', '.join(revision.parents)})")


@app.command("revision")
def revision_cmd(
    ctx: typer.Context,
    message: str = typer.Option(..., "--message", "-m", help="Revision message."),
    autogenerate: bool = typer.Option(False, "--autogenerate", help="Diff declared tables against the store."),
    metadata: str | None = typer.Option(
        None, "--metadata", help="Declared tables as ``module:attribute`` (MetaData or tables)."
    ),
) -> None:
    """Create a new revision on top of the current head."""
    state = get_state(ctx)
    with handle_errors():
        operations = []
        if autogenerate:
            if not metadata:
                raise ConfigError("--autogenerate needs --metadata module:attribute")
            declared = load_declared(metadata)
            with state.runner() as runner, warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                operations = runner.autogenerate(declared)
            for warning in caught:
                err_console.print(f"[yellow]Warning:[/yellow] {escape(str(warning.message))}")
        elif metadata:
            raise ConfigError("--metadata is only used with --autogenerate")

        store = state.store()
        revision = store.create(store.load(), message, operations)

    if state.as_json:
        output(
            {
                "id": revision.id,
                "parents": list(revision.parents),
                "operations": [op.describe() for op in revision.operations],
                "file": revision.filename(),
            },
            as_json=True,
        )
        return
    console.print(f"[green]✓[/green] Revision {revision.id}: {revision.message}")
    for op in revision.operations:
        console.print(f"  {op.describe()}")
    if autogenerate and not revision.operations:
        console.print("[dim]No schema differences detected.[/dim]")
