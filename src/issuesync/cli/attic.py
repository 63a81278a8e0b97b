"""
issuesync attic commands - inspect and restore superseded versions.

Every conflict resolved during sync keeps the losing version of the
record in the attic on the sync branch.
"""

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from issuesync.cli.errors import ExitCode, print_sync_not_initialized_error, report_sync_error
from issuesync.cli.sync import open_service
from issuesync.core.ids.mapper import IDMapper
from issuesync.core.sync.errors import RecordError, SyncError, UnknownIdentifier
from issuesync.core.sync.models import AtticEntry
from issuesync.core.sync.service import SyncService

console = Console()
app = typer.Typer(
    name="attic",
    help="Inspect and restore versions that lost a conflict",
    no_args_is_help=True,
)


def _initialized_service() -> SyncService:
    service = open_service()
    if not service.is_initialized():
        print_sync_not_initialized_error()
        raise typer.Exit(ExitCode.USER_ERROR)
    return service


def _display(mappings: IDMapper, internal_id: str) -> str:
    try:
        return mappings.display(internal_id)
    except UnknownIdentifier:
        return internal_id


@app.command("list")
def list_entries(
    identifier: str | None = typer.Argument(
        None,
        help="Only show entries for this record (display or internal id)",
    ),
) -> None:
    """
    List attic entries, oldest first.

    Examples:
        issuesync attic list           # Everything
        issuesync attic list bd-a1b2   # One record
    """
    service = _initialized_service()
    try:
        entries = service.list_attic(identifier)
        mappings = service.records().mappings()
    except (SyncError, RecordError) as e:
        raise typer.Exit(report_sync_error(e))

    if not entries:
        console.print("[dim]Attic is empty[/dim]")
        return

    table = Table(title="Attic")
    table.add_column("Entry", style="cyan", no_wrap=True)
    table.add_column("Record")
    table.add_column("Title")
    table.add_column("Reason")
    table.add_column("Resolved", style="dim")
    for entry in entries:
        table.add_row(
            entry.entry_id,
            _display(mappings, entry.internal_id),
            escape(str(entry.payload.get("title", ""))),
            entry.reason.value,
            entry.resolved_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def _render_entry(entry: AtticEntry, display_id: str) -> None:
    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Record", f"{display_id} ({entry.internal_id})")
    table.add_row("Superseded version", str(entry.superseded_version))
    table.add_row("Reason", entry.reason.value)
    table.add_row("Resolved", entry.resolved_at.strftime("%Y-%m-%d %H:%M:%S"))
    if entry.loser_side:
        table.add_row("Lost on", entry.loser_side.value)
    if entry.winner_version is not None:
        table.add_row("Winner version", str(entry.winner_version))
    console.print(Panel(table, title=entry.entry_id, expand=False))

    payload = yaml.safe_dump(entry.payload, sort_keys=True, allow_unicode=True)
    console.print(Panel(escape(payload.rstrip()), title="Archived payload", expand=False))


@app.command()
def show(
    entry_id: str = typer.Argument(..., help="Attic entry id, e.g. is-...@v2-1a2b3c4d"),
) -> None:
    """
    Show one attic entry and its archived payload.
    """
    service = _initialized_service()
    try:
        entry = service.get_attic_entry(entry_id)
        mappings = service.records().mappings()
    except (SyncError, RecordError) as e:
        raise typer.Exit(report_sync_error(e))

    _render_entry(entry, _display(mappings, entry.internal_id))


@app.command()
def restore(
    entry_id: str = typer.Argument(..., help="Attic entry id to restore"),
) -> None:
    """
    Restore an archived version as the newest version of its record.

    The restored record is written to the sync checkout and published by
    the next sync. The attic entry itself is kept.

    Examples:
        issuesync attic restore is-01hv...@v2-1a2b3c4d
        issuesync sync
    """
    service = _initialized_service()
    try:
        record = service.restore_attic(entry_id)
        display_id = _display(service.records().mappings(), record.id)
    except (SyncError, RecordError) as e:
        raise typer.Exit(report_sync_error(e))

    console.print(
        f"[green]✓[/green] Restored {display_id} as version {record.version}: "
        f"{escape(record.title)}"
    )
    console.print("\n[dim]→ Run [bold]issuesync sync[/bold] to publish it[/dim]")
