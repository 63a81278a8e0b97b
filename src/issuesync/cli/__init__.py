"""
issuesync CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging
import sys

import typer
from rich.console import Console

from issuesync import __version__
from issuesync.cli import attic, doctor, init_cmd, status, sync
from issuesync.core.config.env import load_layered_env

# Help panel names for command grouping
PANEL_KEY = "Key Commands"
PANEL_HISTORY = "Inspect Conflict History"
PANEL_MAINTENANCE = "Maintain This Clone"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Create the main Typer app
app = typer.Typer(
    name="issuesync",
    help="Peer-to-peer issue sync over a git branch",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def configure_logging(debug: bool) -> None:
    """Send log records to stderr; DEBUG with --debug, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    issuesync - keep issue records in sync between clones.

    Records live on a dedicated branch that is checked out in a hidden
    worktree, so syncing never touches your working tree. Concurrent
    edits are resolved last-write-wins and the losing version is kept
    in the attic.

    Quick Start:
        issuesync init               # Create the sync branch
        issuesync sync               # Pull, merge and push
        issuesync status             # Ahead/behind and local changes

    Conflict History:
        issuesync attic list         # Superseded versions
        issuesync attic restore ID   # Bring one back

    Documentation:
        issuesync --help             # This message
        issuesync <command> --help   # Help for specific command
    """
    # Load layered env files early so ISSUESYNC_* overrides reach the config.
    # Precedence: OS env > project .env > user .env
    load_layered_env()
    configure_logging(debug)

    # Store debug flag in context for subcommands
    ctx.obj = {"debug": debug}


# =============================================================================
# Key Commands
# =============================================================================

app.command(name="init", rich_help_panel=PANEL_KEY)(init_cmd.main)
app.add_typer(sync.app, name="sync", rich_help_panel=PANEL_KEY)
app.command(name="status", rich_help_panel=PANEL_KEY)(status.status)


# =============================================================================
# Inspect Conflict History
# =============================================================================

app.add_typer(attic.app, name="attic", rich_help_panel=PANEL_HISTORY)


# =============================================================================
# Maintain This Clone
# =============================================================================

app.add_typer(doctor.app, name="doctor", rich_help_panel=PANEL_MAINTENANCE)


@app.command(rich_help_panel=PANEL_MAINTENANCE)
def version() -> None:
    """Show issuesync version and exit."""
    console.print(f"issuesync version {__version__}")
    raise typer.Exit(0)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main", "main"]
