"""
issuesync status command - where this clone stands.
"""

import typer
from rich.console import Console
from rich.table import Table

from issuesync.cli.errors import ExitCode, print_sync_not_initialized_error, report_sync_error
from issuesync.cli.sync import open_service
from issuesync.core.sync.errors import SyncError

console = Console()


def status(
    fetch: bool = typer.Option(
        True,
        "--fetch/--no-fetch",
        help="Fetch the remote first (--no-fetch uses the last fetched state)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed status information",
    ),
) -> None:
    """
    Show sync status.

    Reports how many commits the sync branch is ahead of or behind the
    remote, and which records changed locally since the last sync.

    Examples:
        issuesync status              # Fetch, then report
        issuesync status --no-fetch   # Offline report
    """
    service = open_service()
    try:
        report = service.status(fetch=fetch)
    except SyncError as e:
        raise typer.Exit(report_sync_error(e))

    if not report.initialized:
        console.print("[red]✗[/red] Not initialized")
        print_sync_not_initialized_error()
        raise typer.Exit(ExitCode.USER_ERROR)

    if report.remote_commit is None:
        icon, color, message = "○", "blue", "No remote sync branch yet"
    elif report.ahead and report.behind:
        icon, color, message = "⚠", "yellow", "Local and remote have diverged"
    elif report.ahead:
        icon, color, message = "↑", "yellow", "Local commits not published"
    elif report.behind:
        icon, color, message = "↓", "yellow", "Remote changes available"
    else:
        icon, color, message = "✓", "green", "Up to date with remote"
    console.print(f"[{color}]{icon}[/{color}] {message}")

    if fetch and not report.remote_checked and service.worktree.has_remote():
        console.print("[dim]Remote not reachable; showing last fetched state[/dim]")

    if report.local_changes:
        console.print(f"\n{len(report.local_changes)} record(s) changed locally:")
        for record_id in report.local_changes:
            console.print(f"  [yellow]•[/yellow] {record_id}")

    if verbose:
        table = Table(title="Sync Details", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")

        table.add_row("Branch", report.branch)
        table.add_row("Remote", report.remote)
        table.add_row("Local commit", report.local_commit[:8] if report.local_commit else "-")
        table.add_row("Remote commit", report.remote_commit[:8] if report.remote_commit else "-")
        table.add_row("Ahead / behind", f"{report.ahead} / {report.behind}")
        table.add_row("Pending conflicts", str(report.pending_conflicts))
        if report.last_sync_at:
            table.add_row("Last synced", report.last_sync_at.strftime("%Y-%m-%d %H:%M:%S"))
        else:
            table.add_row("Last synced", "[dim]Never[/dim]")

        console.print()
        console.print(table)

    if report.ahead or report.local_changes or report.behind:
        console.print("\n[dim]→ Run [bold]issuesync sync[/bold] to exchange changes[/dim]")
