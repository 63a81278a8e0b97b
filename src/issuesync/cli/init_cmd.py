"""
issuesync init command - set up syncing in a repository.

Creates the sync branch (or adopts the remote one), the hidden checkout
and the project config file.
"""

import typer
from pydantic import ValidationError
from rich.console import Console

from issuesync.cli.errors import ExitCode, print_error, report_sync_error
from issuesync.cli.sync import open_service
from issuesync.core.config import SyncConfig, get_project_config_path, write_project_config
from issuesync.core.sync.errors import SyncError

console = Console()


def main(
    ctx: typer.Context,
    branch: str | None = typer.Option(
        None,
        "--branch",
        "-b",
        help="Name of the sync branch (default from config: issuesync-sync)",
    ),
    remote: str | None = typer.Option(
        None,
        "--remote",
        "-r",
        help="Remote to sync with (default from config: origin)",
    ),
) -> None:
    """
    Initialize issue syncing in this repository.

    When the remote already has the sync branch it is adopted; otherwise
    an empty orphan branch is created locally and published by the first
    sync. Running init again is safe.

    Examples:
        issuesync init                      # Use defaults
        issuesync init --branch issues      # Custom branch name
        issuesync init --remote upstream    # Sync with another remote
    """
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    service = open_service()

    overrides = {key: value for key, value in (("branch", branch), ("remote", remote)) if value}
    try:
        sync_config = SyncConfig(**{**service.config.sync.model_dump(), **overrides})
        service.config = service.config.model_copy(update={"sync": sync_config})
    except ValidationError as e:
        print_error(
            "Invalid sync settings",
            reason=str(e.errors()[0]["msg"]),
            solution="issuesync init --branch <valid-branch-name>",
        )
        raise typer.Exit(ExitCode.USER_ERROR)
    service.worktree.branch = service.config.sync.branch
    service.worktree.remote = service.config.sync.remote

    if debug:
        console.print(f"[dim]Project: {service.project_dir}[/dim]")
        console.print(f"[dim]Branch: {service.worktree.branch}[/dim]")
        console.print(f"[dim]Remote: {service.worktree.remote}[/dim]")

    already = service.is_initialized()
    try:
        tip = service.initialize()
    except SyncError as e:
        raise typer.Exit(report_sync_error(e))

    config_path = get_project_config_path(service.project_dir)
    if branch or remote or not config_path.exists():
        write_project_config(service.project_dir, service.config)

    if already:
        console.print(
            f"[green]✓[/green] Sync branch '{service.worktree.branch}' already initialized "
            f"at {tip[:8]}"
        )
    else:
        console.print(
            f"[green]✓[/green] Initialized sync branch '{service.worktree.branch}' at {tip[:8]}"
        )
    console.print(f"[dim]Checkout: {service.worktree.checkout_path}[/dim]")

    if not service.worktree.has_remote():
        console.print(
            f"\n[dim]→ Add a remote named [bold]{service.worktree.remote}[/bold] "
            "to share records with other clones[/dim]"
        )

    raise typer.Exit(ExitCode.SUCCESS)
