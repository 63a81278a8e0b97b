"""
Standardized error handling and exit codes for the issuesync CLI.

This module provides consistent error messaging with actionable guidance
and standardized exit codes across all CLI commands.
"""

from enum import IntEnum

from rich.console import Console

from issuesync.core.sync.errors import (
    CommitFailed,
    RecordError,
    SyncContention,
    SyncError,
    SyncInProgress,
    SyncUnreachable,
    UnknownIdentifier,
    WorktreeInconsistent,
)

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for issuesync CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error (remote, contention, git failure)."""

    USER_ERROR = 2
    """User configuration or input error (actionable by user)."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
    doc_url: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it
        doc_url: Optional documentation URL for more help

    Example:
        >>> print_error(
        ...     "Sync branch not initialized",
        ...     reason="Records live on a dedicated branch that does not exist yet",
        ...     solution="issuesync init",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")

    if doc_url:
        console.print(f"[dim]Docs: {doc_url}[/dim]")


def print_not_git_repo_error() -> None:
    """Print error when not in a git repository."""
    print_error(
        "Not a git repository",
        reason="issuesync stores records on a branch of the current repository",
        solution="git init  # or cd to your project root",
    )


def print_sync_not_initialized_error() -> None:
    """Print error when sync branch is not initialized."""
    print_error(
        "Sync branch not initialized",
        reason="Records live on a dedicated branch that does not exist in this clone yet",
        solution="issuesync init",
    )


def print_incompatible_flags_error(flag1: str, flag2: str) -> None:
    """Print error when incompatible CLI flags are used together."""
    print_error(
        f"Cannot use {flag1} with {flag2}",
        solution=f"Remove one of the flags: {flag1} or {flag2}",
    )


def report_sync_error(error: SyncError | RecordError) -> ExitCode:
    """
    Print an engine error with guidance and pick the exit code for it.

    Returns:
        The exit code the command should exit with.
    """
    if isinstance(error, SyncUnreachable):
        print_error(
            f"Cannot reach remote '{error.remote}'" if error.remote else "Cannot reach remote",
            reason=str(error),
            solution="check your network and 'git remote -v', then retry",
        )
        return ExitCode.GENERAL_ERROR
    if isinstance(error, SyncContention):
        print_error(
            "Remote keeps changing; changes were not published",
            reason=str(error),
            solution=(
                "issuesync sync  # your changes are committed on the sync branch;"
                " a full sync publishes them"
            ),
        )
        return ExitCode.GENERAL_ERROR
    if isinstance(error, SyncInProgress):
        print_error(
            "Another sync is running in this clone",
            reason=str(error),
            solution="wait for it to finish and retry",
        )
        return ExitCode.GENERAL_ERROR
    if isinstance(error, WorktreeInconsistent):
        print_error(
            "Sync checkout needs attention",
            reason=str(error),
            solution="issuesync doctor",
        )
        return ExitCode.USER_ERROR
    if isinstance(error, CommitFailed):
        print_error(
            "Could not commit the merged records",
            reason=str(error),
            solution="retry the sync; nothing was changed",
        )
        return ExitCode.GENERAL_ERROR
    if isinstance(error, UnknownIdentifier):
        print_error(
            str(error),
            reason="The id may be mistyped or belong to a record this clone has not pulled",
            solution="issuesync attic list  # or issuesync sync",
        )
        return ExitCode.USER_ERROR
    print_error(str(error))
    return ExitCode.USER_ERROR if isinstance(error, RecordError) else ExitCode.GENERAL_ERROR


__all__ = [
    "ExitCode",
    "console",
    "print_error",
    "print_incompatible_flags_error",
    "print_not_git_repo_error",
    "print_sync_not_initialized_error",
    "report_sync_error",
]
