"""
issuesync CLI - Sync command.

Runs one sync cycle against the remote: fetch, merge record by record,
commit to the sync branch and publish.
"""

import typer
from rich.console import Console
from rich.table import Table

from issuesync.cli.errors import (
    ExitCode,
    print_error,
    print_incompatible_flags_error,
    print_sync_not_initialized_error,
    report_sync_error,
)
from issuesync.core.sync.errors import RecordError, SyncError
from issuesync.core.sync.models import SyncMode, SyncSummary
from issuesync.core.sync.service import SyncService

console = Console()
app = typer.Typer(
    name="sync",
    help="Sync issue records with the remote",
    no_args_is_help=False,
)


def open_service() -> SyncService:
    """
    Build the sync service for the current directory.

    Raises:
        typer.Exit: If the directory is not inside a usable git repository.
    """
    try:
        return SyncService()
    except SyncError as e:
        print_error(
            str(e),
            reason="issuesync stores records on a branch of the current repository",
            solution="git init  # or cd to your project root",
        )
        raise typer.Exit(ExitCode.USER_ERROR)


def render_summary(summary: SyncSummary, verbose: bool = False) -> None:
    """Print the outcome of a sync cycle."""
    console.print(f"[green]✓[/green] {summary.summary()}")

    if verbose:
        for record_id in summary.pulled:
            console.print(f"  [blue]↓[/blue] {record_id}")
        for record_id in summary.pushed:
            console.print(f"  [yellow]↑[/yellow] {record_id}")

    if summary.conflicts:
        table = Table(title="Resolved Conflicts")
        table.add_column("Record", style="cyan")
        table.add_column("Local", justify="right")
        table.add_column("Remote", justify="right")
        table.add_column("Winner")
        table.add_column("Reason")
        table.add_column("Attic entry", style="dim")
        for conflict in summary.conflicts:
            table.add_row(
                conflict.internal_id,
                str(conflict.local_version),
                str(conflict.remote_version),
                conflict.winner.value,
                conflict.reason.value,
                conflict.attic_entry_id or "-",
            )
        console.print()
        console.print(table)

    if summary.record_errors:
        console.print()
        console.print(
            f"[yellow]![/yellow] {len(summary.record_errors)} record(s) could not be read:"
        )
        for failure in summary.record_errors:
            console.print(f"  [yellow]•[/yellow] {failure.path} ({failure.side}): {failure.message}")

    if verbose and summary.duration_seconds is not None:
        console.print(f"[dim]Took {summary.duration_seconds:.2f}s[/dim]")


@app.callback(invoke_without_command=True)
def sync(
    ctx: typer.Context,
    pull: bool = typer.Option(
        False,
        "--pull",
        help="Only pull and merge remote changes; do not publish",
    ),
    push: bool = typer.Option(
        False,
        "--push",
        help="Only publish local changes; give up if the remote moved",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed sync information",
    ),
) -> None:
    """
    Sync issue records with the remote.

    Concurrent edits to the same record are resolved by version, then
    by updated_at, then by content hash. The losing version is kept in
    the attic and can be restored.

    Examples:
        issuesync sync            # Pull, merge, commit and push
        issuesync sync --pull     # Merge remote changes only
        issuesync sync --push     # Publish only when the remote has not moved
    """
    if ctx.invoked_subcommand is not None:
        return

    if pull and push:
        print_incompatible_flags_error("--pull", "--push")
        raise typer.Exit(ExitCode.USER_ERROR)

    mode = SyncMode.PULL if pull else SyncMode.PUSH if push else SyncMode.FULL
    service = open_service()

    if not service.is_initialized():
        print_sync_not_initialized_error()
        raise typer.Exit(ExitCode.USER_ERROR)

    try:
        summary = service.sync(mode)
    except (SyncError, RecordError) as e:
        raise typer.Exit(report_sync_error(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; the sync branch was not changed[/yellow]")
        raise typer.Exit(ExitCode.SIGINT)

    render_summary(summary, verbose=verbose)
