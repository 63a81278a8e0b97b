"""
issuesync CLI - Doctor command.

Diagnose and optionally repair the hidden sync checkout.
"""

import shutil

import typer
from rich.console import Console
from rich.panel import Panel

from issuesync.cli.errors import ExitCode, print_sync_not_initialized_error, report_sync_error
from issuesync.cli.sync import open_service
from issuesync.core.sync.errors import SyncError
from issuesync.core.sync.service import SyncService

app = typer.Typer(
    name="doctor",
    help="Diagnose and fix the sync checkout",
    no_args_is_help=False,
)

console = Console()


def check_environment() -> int:
    """
    Check that git is available.

    Returns:
        Number of issues found
    """
    console.print("\n[bold]Environment:[/bold]")
    if shutil.which("git") is None:
        console.print("[red]✗[/red] git not found on PATH")
        return 1
    console.print("[green]✓[/green] git available")
    return 0


def check_records(service: SyncService) -> int:
    """
    Check that every record in the checkout parses.

    Returns:
        Number of unreadable record files
    """
    console.print("\n[bold]Records:[/bold]")
    snapshot = service.worktree.local_snapshot()
    if not snapshot.failures:
        console.print(f"[green]✓[/green] {len(snapshot.records)} record(s) readable")
        return 0
    for failure in snapshot.failures:
        console.print(f"[red]✗[/red] {failure.path}: {failure.message}")
    console.print("[dim]Unreadable files are left in place; fix or delete them by hand[/dim]")
    return len(snapshot.failures)


@app.callback(invoke_without_command=True)
def doctor(
    ctx: typer.Context,
    fix: bool = typer.Option(
        False,
        "--fix",
        help="Repair the checkout, moving a diverged one aside",
    ),
) -> None:
    """
    Diagnose and optionally repair the hidden sync checkout.

    Checks:
    - Environment: git availability
    - Checkout: present, valid, detached and at the sync branch tip
    - Records: every record file parses

    Fix Actions:
    --fix will recreate a missing checkout, remove a stale index.lock,
    move the checkout forward, and move a diverged checkout aside
    (keeping its files) before recreating it.

    Examples:
        issuesync doctor          # Run diagnostics
        issuesync doctor --fix    # Repair what can be repaired
    """
    debug = ctx.obj.get("debug", False) if ctx.obj else False

    console.print(Panel("[bold]issuesync doctor[/bold] - Diagnostic Tool", expand=False))

    total_issues = check_environment()

    service = open_service()
    if not service.is_initialized():
        print_sync_not_initialized_error()
        raise typer.Exit(ExitCode.USER_ERROR)

    console.print("\n[bold]Sync checkout:[/bold]")
    try:
        problems = service.diagnose()
        for problem in problems:
            console.print(f"[yellow]![/yellow] {problem}")
        if fix and problems:
            for action in service.repair(force=True):
                console.print(f"[green]✓[/green] {action}")
            problems = service.diagnose()
        if not problems:
            console.print("[green]✓[/green] Checkout healthy")
        total_issues += len(problems)

        if service.worktree.checkout_path.exists():
            total_issues += check_records(service)
    except SyncError as e:
        if debug:
            console.print_exception()
        raise typer.Exit(report_sync_error(e))

    console.print("\n" + "=" * 60)
    if total_issues == 0:
        console.print("[green]✓[/green] No issues found")
        raise typer.Exit(ExitCode.SUCCESS)

    console.print(f"[yellow]![/yellow] Found {total_issues} issue(s)")
    if not fix:
        console.print("\n[dim]Run 'issuesync doctor --fix' to repair the checkout[/dim]")
    raise typer.Exit(ExitCode.GENERAL_ERROR)
