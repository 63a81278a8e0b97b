"""
Data models for the sync engine.

Defines Pydantic models for the per-cycle state machine value, the
per-clone checkpoint, conflict and attic records, and sync results.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from issuesync.core.records.models import IssueRecord, migrate_payload

# Content hash characters in attic entry ids and paths
ATTIC_HASH_CHARS = 8


class SyncPhase(str, Enum):
    """Phases of the sync state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    RESOLVING = "resolving"
    COMMITTING = "committing"
    PUBLISHING = "publishing"
    FAILED = "failed"


class SyncMode(str, Enum):
    """Which directions a sync cycle covers."""

    FULL = "full"
    PUSH = "push"
    PULL = "pull"

    @property
    def reads_remote(self) -> bool:
        return self is not SyncMode.PUSH

    @property
    def publishes(self) -> bool:
        return self is not SyncMode.PULL


class ResolutionReason(str, Enum):
    """Which rule of the tie-break chain decided a conflict."""

    IDENTICAL = "identical"
    VERSION_SKEW = "version-skew"
    TIMESTAMP_TIEBREAK = "timestamp-tiebreak"
    HASH_TIEBREAK = "hash-tiebreak"
    # Local edit set aside because the remote copy cannot be parsed here
    REMOTE_UNREADABLE = "remote-unreadable"


class Side(str, Enum):
    """Side of a two-way comparison."""

    LOCAL = "local"
    REMOTE = "remote"


class SyncState(BaseModel):
    """
    Value carried through one sync cycle.

    Each phase method receives the current state and returns the next one;
    instances are immutable so a phase can never mutate state it does not
    own.
    """

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase = SyncPhase.IDLE
    mode: SyncMode = SyncMode.FULL
    attempt: int = Field(default=1, ge=1, description="Publish attempt, 1-based")
    local_ref: str | None = Field(default=None, description="Sync branch tip at fetch time")
    remote_ref: str | None = Field(default=None, description="Remote-tracking tip at fetch time")
    base_ref: str | None = Field(default=None, description="Merge base of local and remote")
    commit_ref: str | None = Field(default=None, description="Commit produced this cycle")
    dirty_ids: frozenset[str] = Field(default_factory=frozenset)
    error: str | None = None

    def advance(self, phase: SyncPhase, **changes: Any) -> SyncState:
        """Copy of this state in ``phase`` with ``changes`` applied."""
        return self.model_copy(update={"phase": phase, **changes})

    def fail(self, error: str) -> SyncState:
        return self.advance(SyncPhase.FAILED, error=error)


class SyncCheckpoint(BaseModel):
    """
    Per-clone sync bookkeeping stored in ``.issuesync/cache/state.json``.

    Not committed anywhere; losing it only costs the dirty-set hint and
    the timestamps shown by ``status``.
    """

    last_synced_commit: str | None = Field(
        default=None,
        description="Sync branch tip after the last successful cycle",
    )
    last_sync_at: datetime | None = None
    last_push_at: datetime | None = None
    last_pull_at: datetime | None = None
    dirty_ids: list[str] = Field(
        default_factory=list,
        description="Records mutated locally since the last sync",
    )

    def mark_dirty(self, internal_id: str) -> None:
        if internal_id not in self.dirty_ids:
            self.dirty_ids.append(internal_id)
            self.dirty_ids.sort()

    def mark_synced(self, commit_sha: str | None, *, pushed: bool, pulled: bool) -> None:
        """Update after a successful cycle."""
        now = datetime.now(timezone.utc)
        self.last_synced_commit = commit_sha
        self.last_sync_at = now
        if pushed:
            self.last_push_at = now
        if pulled:
            self.last_pull_at = now
        self.dirty_ids = []


class AtticEntry(BaseModel):
    """
    The losing side of a resolved conflict, kept for recovery.

    Stored at ``attic/<internal_id>/v<superseded_version>-<hash8>.yml`` on
    the sync branch, where ``hash8`` is the start of the loser's content
    hash. Two different payloads superseded at the same version (three
    replicas editing one record) get separate entries. Entries are written
    once and never modified.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(description="<internal_id>@v<superseded_version>-<hash8>")
    internal_id: str
    superseded_version: int = Field(ge=0)
    resolved_at: datetime
    reason: ResolutionReason
    loser_side: Side | None = None
    winner_version: int | None = None
    winner_hash: str | None = None
    loser_hash: str = Field(min_length=ATTIC_HASH_CHARS, description="Content hash of the payload")
    payload: dict[str, Any] = Field(description="Full losing record, JSON-compatible")

    @staticmethod
    def make_id(internal_id: str, superseded_version: int, loser_hash: str) -> str:
        return f"{internal_id}@v{superseded_version}-{loser_hash[:ATTIC_HASH_CHARS]}"

    @property
    def key(self) -> tuple[str, int, str]:
        return (self.internal_id, self.superseded_version, self.loser_hash[:ATTIC_HASH_CHARS])

    @property
    def path(self) -> str:
        """Path of this entry on the sync branch."""
        return (
            f"attic/{self.internal_id}/"
            f"v{self.superseded_version:06d}-{self.loser_hash[:ATTIC_HASH_CHARS]}.yml"
        )

    def record(self) -> IssueRecord:
        """The archived payload as a record."""
        return IssueRecord.model_validate(migrate_payload(self.payload))


class ConflictRecord(BaseModel):
    """One divergent record and how it was resolved."""

    internal_id: str
    local_version: int
    remote_version: int
    winner: Side
    reason: ResolutionReason
    merged_version: int
    attic_entry_id: str | None = Field(
        default=None,
        description="Attic entry holding the losing payload",
    )


class RecordFailure(BaseModel):
    """A per-record error collected during a cycle."""

    internal_id: str | None = None
    path: str
    side: str
    message: str


class PublishStatus(str, Enum):
    OK = "ok"
    REJECTED = "rejected"


class PublishResult(BaseModel):
    """Outcome of pushing a commit to the remote sync branch."""

    status: PublishStatus
    commit_sha: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is PublishStatus.OK


class SyncSummary(BaseModel):
    """
    Result of a completed sync cycle.

    Provides detailed feedback about what happened during the sync.
    """

    mode: SyncMode = SyncMode.FULL
    pulled: list[str] = Field(
        default_factory=list,
        description="Records taken from the remote unchanged",
    )
    pushed: list[str] = Field(
        default_factory=list,
        description="Local changes included in the published commit",
    )
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    record_errors: list[RecordFailure] = Field(default_factory=list)
    commit: str | None = Field(default=None, description="Sync branch tip after the cycle")
    committed: bool = Field(default=False, description="Whether a new commit was made")
    published: bool = False
    attempts: int = 1

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Calculate cycle duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def summary(self) -> str:
        """Generate a human-readable summary of the result."""
        parts = [f"sync ({self.mode.value}) succeeded"]

        if self.commit:
            parts.append(f"commit {self.commit[:8]}")
        if not self.committed and not self.published:
            parts.append("already up to date")
        if self.pulled:
            parts.append(f"{len(self.pulled)} pulled")
        if self.pushed:
            parts.append(f"{len(self.pushed)} pushed")
        if self.conflicts:
            parts.append(f"{len(self.conflicts)} conflicts resolved")
        if self.record_errors:
            parts.append(f"{len(self.record_errors)} record errors")
        if self.attempts > 1:
            parts.append(f"{self.attempts} attempts")

        return ", ".join(parts)


class SyncStatusReport(BaseModel):
    """Snapshot of where this clone stands relative to the remote."""

    initialized: bool = False
    branch: str
    remote: str
    local_commit: str | None = None
    remote_commit: str | None = None
    ahead: int = 0
    behind: int = 0
    pending_conflicts: int = Field(
        default=0,
        description="Always zero: conflicts are resolved during sync, never queued",
    )
    local_changes: list[str] = Field(default_factory=list)
    last_sync_at: datetime | None = None
    remote_checked: bool = False
