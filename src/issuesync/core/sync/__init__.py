"""
Git-based issue synchronization.

The engine fetches the remote sync branch, diffs every record against the
common base by content hash, resolves divergent records with a
deterministic last-writer-wins chain, archives the losers in the attic,
and publishes the merged snapshot as one commit.

The facade lives in ``issuesync.core.sync.service``:

Example:
    >>> from issuesync.core.sync.service import SyncService
    >>> service = SyncService(project_dir=Path("."))
    >>> summary = service.sync()
    >>> if summary.conflicts:
    ...     print(f"Resolved {len(summary.conflicts)} conflicts")
"""

from issuesync.core.sync.errors import (
    CommitFailed,
    CorruptRecord,
    IdentifierError,
    IdentifierExhausted,
    RecordError,
    SyncContention,
    SyncError,
    SyncInProgress,
    SyncUnreachable,
    UnknownIdentifier,
    WorktreeInconsistent,
)
from issuesync.core.sync.models import (
    AtticEntry,
    ConflictRecord,
    ResolutionReason,
    SyncCheckpoint,
    SyncMode,
    SyncPhase,
    SyncState,
    SyncStatusReport,
    SyncSummary,
)

__all__ = [
    "AtticEntry",
    "CommitFailed",
    "ConflictRecord",
    "CorruptRecord",
    "IdentifierError",
    "IdentifierExhausted",
    "RecordError",
    "ResolutionReason",
    "SyncCheckpoint",
    "SyncContention",
    "SyncError",
    "SyncInProgress",
    "SyncMode",
    "SyncPhase",
    "SyncState",
    "SyncStatusReport",
    "SyncSummary",
    "SyncUnreachable",
    "UnknownIdentifier",
    "WorktreeInconsistent",
]
