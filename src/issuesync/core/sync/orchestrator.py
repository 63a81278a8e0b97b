"""
The sync state machine.

One cycle moves through

    IDLE -> FETCHING -> DIFFING -> RESOLVING -> COMMITTING -> PUBLISHING -> IDLE

and loops from PUBLISHING back to FETCHING when the remote rejects the
push because it moved in the meantime. Any structural error moves the
cycle to FAILED and is re-raised; durable state is only ever changed by
the compare-and-swap ref update at the end of COMMITTING.

Each phase is a method that takes the current SyncState and returns the
next one. Snapshots and intermediate results for the current attempt
live in a _Workspace that is rebuilt on every attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from issuesync.core.ids.mapper import IDMapper
from issuesync.core.records.models import IssueRecord, utc_now
from issuesync.core.sync.attic import AtticArchiver
from issuesync.core.sync.errors import IdentifierError, SyncContention, SyncError
from issuesync.core.sync.models import (
    ConflictRecord,
    RecordFailure,
    ResolutionReason,
    Side,
    SyncMode,
    SyncPhase,
    SyncState,
    SyncSummary,
)
from issuesync.core.sync.resolver import ConflictResolver
from issuesync.core.worktree.lock import SyncLock
from issuesync.core.worktree.manager import WorktreeManager
from issuesync.core.worktree.snapshot import ATTIC_DIR, Snapshot, issue_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_PUBLISH_ATTEMPTS = 5

RecordKey = tuple[str, int]


class ChangeKind(str, Enum):
    """How a record moved relative to the common base."""

    UNCHANGED = "unchanged"
    LOCAL = "local"
    REMOTE = "remote"
    DIVERGENT = "divergent"


def _key(record: IssueRecord | None) -> RecordKey | None:
    if record is None:
        return None
    return (record.content_hash(), record.version)


def classify(
    base: IssueRecord | None, local: IssueRecord | None, remote: IssueRecord | None
) -> ChangeKind:
    """Classify one record by comparing both sides against the base."""
    b, l, r = _key(base), _key(local), _key(remote)
    if l == r:
        return ChangeKind.UNCHANGED
    if l == b:
        return ChangeKind.REMOTE
    if r == b:
        return ChangeKind.LOCAL
    return ChangeKind.DIVERGENT


@dataclass
class _Workspace:
    """Per-attempt scratch data shared by the phases."""

    local: Snapshot = field(default_factory=Snapshot)
    committed: Snapshot = field(default_factory=Snapshot)
    remote: Snapshot = field(default_factory=Snapshot)
    base: Snapshot = field(default_factory=Snapshot)
    changes: dict[str, ChangeKind] = field(default_factory=dict)
    effective_local: dict[str, IssueRecord] = field(default_factory=dict)
    effective_remote: dict[str, IssueRecord] = field(default_factory=dict)
    preserve: dict[str, bytes] = field(default_factory=dict)
    # Unreadable record files carried into the merge byte for byte
    held: dict[str, bytes] = field(default_factory=dict)
    merged: Snapshot | None = None


@dataclass
class _Totals:
    """Results accumulated across attempts."""

    pulled: set[str] = field(default_factory=set)
    pushed: set[str] = field(default_factory=set)
    conflicts: dict[str, ConflictRecord] = field(default_factory=dict)
    failures: dict[tuple[str, str], RecordFailure] = field(default_factory=dict)
    committed: bool = False
    published: bool = False

    def fail(self, failure: RecordFailure) -> None:
        self.failures.setdefault((failure.side, failure.path), failure)


class SyncOrchestrator:
    """
    Runs sync cycles against one clone.

    Example:
        >>> orchestrator = SyncOrchestrator(WorktreeManager(Path(".")))
        >>> summary = orchestrator.run(SyncMode.FULL)
        >>> print(summary.summary())
    """

    def __init__(
        self,
        worktree: WorktreeManager,
        max_publish_attempts: int = DEFAULT_MAX_PUBLISH_ATTEMPTS,
        lock: SyncLock | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.worktree = worktree
        self.max_publish_attempts = max_publish_attempts
        self.lock = lock
        self.clock = clock
        self._work = _Workspace()
        self._totals = _Totals()

    def run(
        self, mode: SyncMode = SyncMode.FULL, dirty_ids: frozenset[str] = frozenset()
    ) -> SyncSummary:
        """
        Run one sync cycle to completion.

        Raises:
            SyncInProgress: If another sync holds the lock.
            SyncUnreachable: If the remote cannot be reached.
            SyncContention: If publishing is rejected too many times (or
                at all, in push-only mode).
            WorktreeInconsistent: If the private checkout cannot be repaired.
            CommitFailed: If the commit or ref update fails.
        """
        if self.lock is not None:
            with self.lock:
                return self._run(mode, dirty_ids)
        return self._run(mode, dirty_ids)

    def _run(self, mode: SyncMode, dirty_ids: frozenset[str]) -> SyncSummary:
        started_at = self.clock()
        self._totals = _Totals()
        state = SyncState(mode=mode, dirty_ids=dirty_ids).advance(SyncPhase.FETCHING)
        logger.debug("Starting %s sync", mode.value)

        steps = {
            SyncPhase.FETCHING: self.fetching,
            SyncPhase.DIFFING: self.diffing,
            SyncPhase.RESOLVING: self.resolving,
            SyncPhase.COMMITTING: self.committing,
            SyncPhase.PUBLISHING: self.publishing,
        }
        while state.phase is not SyncPhase.IDLE:
            step = steps[state.phase]
            try:
                state = step(state)
            except SyncError as e:
                state = state.fail(str(e))
                logger.error("Sync failed during %s: %s", step.__name__, e)
                raise

        totals = self._totals
        return SyncSummary(
            mode=mode,
            pulled=sorted(totals.pulled),
            pushed=sorted(totals.pushed),
            conflicts=[totals.conflicts[k] for k in sorted(totals.conflicts)],
            record_errors=list(totals.failures.values()),
            commit=state.commit_ref,
            committed=totals.committed,
            published=totals.published,
            attempts=state.attempt,
            started_at=started_at,
            completed_at=self.clock(),
        )

    # Phases

    def fetching(self, state: SyncState) -> SyncState:
        """Read the local, last-committed, remote and base snapshots."""
        work = _Workspace()
        work.local = self.worktree.checkout()
        local_ref = self.worktree.local_tip()
        work.committed = self.worktree.read_commit(local_ref, side="local")

        remote_ref: str | None = None
        if state.mode.reads_remote:
            work.remote = self.worktree.fetch()
            remote_ref = work.remote.commit

        if remote_ref is None:
            # Nothing to merge with: the remote side is our own last commit
            work.remote = work.committed
            work.base = work.committed
        else:
            work.base = self.worktree.base_snapshot(local_ref, remote_ref)
        base_ref = work.base.commit

        self._work = work
        logger.debug(
            "Fetched local=%s remote=%s base=%s",
            (local_ref or "-")[:8],
            (remote_ref or "-")[:8],
            (base_ref or "-")[:8],
        )
        return state.advance(
            SyncPhase.DIFFING, local_ref=local_ref, remote_ref=remote_ref, base_ref=base_ref
        )

    def diffing(self, state: SyncState) -> SyncState:
        """Classify every record; unreadable records become per-record errors."""
        work = self._work
        totals = self._totals

        for failure in work.local.failures + work.remote.failures:
            totals.fail(failure)

        local_corrupt = work.local.corrupt_ids()
        remote_corrupt = work.remote.corrupt_ids()

        for internal_id in sorted(local_corrupt):
            path = issue_path(internal_id)
            if work.local.raw[path] != work.committed.raw.get(path):
                work.preserve[path] = work.local.raw[path]

        effective_local = dict(work.local.records)
        for internal_id, record in work.local.records.items():
            committed = work.committed.records.get(internal_id)
            if (
                committed is not None
                and committed.version == record.version
                and committed.content_hash() != record.content_hash()
            ):
                path = issue_path(internal_id)
                message = (
                    f"Record changed without a version bump (v{record.version}); "
                    "left in place and excluded from sync"
                )
                logger.warning("%s: %s", path, message)
                totals.fail(
                    RecordFailure(internal_id=internal_id, path=path, side="local", message=message)
                )
                work.preserve[path] = _read_raw(self.worktree, path)
                local_corrupt.add(internal_id)

        # An unreadable local file stands for the last committed version
        for internal_id in local_corrupt:
            committed = work.committed.records.get(internal_id)
            if committed is None:
                effective_local.pop(internal_id, None)
            else:
                effective_local[internal_id] = committed

        # An unreadable remote file (a newer schema, say) is never replaced;
        # it stays out of the diff and goes into the merge as it is
        for internal_id in sorted(remote_corrupt):
            work.held[internal_id] = work.remote.raw[issue_path(internal_id)]
        for internal_id in sorted(work.committed.corrupt_ids() - set(work.remote.records)):
            work.held.setdefault(internal_id, work.committed.raw[issue_path(internal_id)])

        effective_remote = dict(work.remote.records)
        ids = set(work.base.records) | set(effective_local) | set(effective_remote)
        ids -= set(work.held)
        work.changes = {
            internal_id: classify(
                work.base.records.get(internal_id),
                effective_local.get(internal_id),
                effective_remote.get(internal_id),
            )
            for internal_id in sorted(ids)
        }
        work.effective_local = effective_local
        work.effective_remote = effective_remote

        counts: dict[ChangeKind, int] = {}
        for kind in work.changes.values():
            counts[kind] = counts.get(kind, 0) + 1
        logger.debug("Diff: %s", {k.value: v for k, v in counts.items()})
        return state.advance(SyncPhase.RESOLVING)

    def resolving(self, state: SyncState) -> SyncState:
        """Build the merged snapshot."""
        work = self._work
        totals = self._totals

        attic = AtticArchiver(work.local.attic, clock=self.clock).merge(
            AtticArchiver(work.remote.attic, clock=self.clock)
        )
        resolver = ConflictResolver(attic)

        records: dict[str, IssueRecord] = {}
        for internal_id, kind in work.changes.items():
            local = work.effective_local.get(internal_id)
            remote = work.effective_remote.get(internal_id)
            base = work.base.records.get(internal_id)

            # Records are never deleted: a side that lost a record keeps the other's
            if kind is ChangeKind.UNCHANGED:
                chosen = local or base
            elif kind is ChangeKind.LOCAL:
                chosen = local or remote
                if local is not None:
                    totals.pushed.add(internal_id)
            elif kind is ChangeKind.REMOTE:
                chosen = remote or local
                if remote is not None:
                    totals.pulled.add(internal_id)
            elif local is None or remote is None:
                chosen = local or remote
            else:
                resolution = resolver.resolve(local, remote)
                chosen = resolution.merged
                if resolution.is_conflict:
                    totals.conflicts[internal_id] = ConflictRecord(
                        internal_id=internal_id,
                        local_version=local.version,
                        remote_version=remote.version,
                        winner=resolution.winner,
                        reason=resolution.reason,
                        merged_version=chosen.version,
                        attic_entry_id=resolution.attic_entry_id,
                    )
                    if resolution.winner is Side.LOCAL:
                        totals.pushed.add(internal_id)
                    else:
                        totals.pulled.add(internal_id)
            if chosen is not None:
                records[internal_id] = chosen

        for internal_id in sorted(work.held):
            self._set_aside(attic, work, internal_id)

        mappings = self._merge_mappings(work, records)

        raw = {
            path: data
            for snapshot in (work.committed, work.remote)
            for path, data in snapshot.raw.items()
            if path.startswith(f"{ATTIC_DIR}/")
        }
        raw.update({issue_path(i): data for i, data in work.held.items()})
        meta = dict(work.remote.meta)
        meta.update(work.local.meta)
        work.merged = Snapshot(
            commit=None,
            records=records,
            attic=attic.entries,
            mappings=mappings,
            meta=meta,
            raw=raw,
        )
        return state.advance(SyncPhase.COMMITTING)

    def _set_aside(self, attic: AtticArchiver, work: _Workspace, internal_id: str) -> None:
        """Archive a local edit to a record whose remote copy cannot be read."""
        local = work.effective_local.get(internal_id)
        if local is None or _key(local) == _key(work.base.records.get(internal_id)):
            return
        entry_id = attic.archive_record(
            local, ResolutionReason.REMOTE_UNREADABLE, loser_side=Side.LOCAL
        )
        path = issue_path(internal_id)
        message = (
            f"Remote copy is unreadable by this version; local v{local.version} "
            f"archived as {entry_id}"
        )
        logger.warning("%s: %s", path, message)
        self._totals.fail(
            RecordFailure(internal_id=internal_id, path=path, side="local", message=message)
        )

    def _merge_mappings(self, work: _Workspace, records: dict[str, IssueRecord]) -> IDMapper:
        mappings = work.local.mappings.merge(work.remote.mappings, base=work.base.mappings)
        for internal_id in sorted(records):
            try:
                mappings.allocate(internal_id)
            except IdentifierError as e:
                self._totals.fail(
                    RecordFailure(
                        internal_id=internal_id,
                        path=issue_path(internal_id),
                        side="local",
                        message=str(e),
                    )
                )
        return mappings

    def committing(self, state: SyncState) -> SyncState:
        """Commit the merged snapshot as one unit, or skip when nothing changed."""
        work = self._work
        assert work.merged is not None
        local_ref, remote_ref = state.local_ref, state.remote_ref
        merged_files = work.merged.to_files()

        remote_new = (
            remote_ref is not None
            and local_ref is not None
            and remote_ref != local_ref
            and not self.worktree.is_ancestor(remote_ref, local_ref)
        )

        if (
            remote_new
            and local_ref is not None
            and remote_ref is not None
            and self.worktree.is_ancestor(local_ref, remote_ref)
            and merged_files == work.remote.to_files()
        ):
            self.worktree.advance(remote_ref, local_ref, work.preserve)
            logger.info("Fast-forwarded to %s", remote_ref[:8])
            return state.advance(SyncPhase.PUBLISHING, commit_ref=remote_ref)

        if not remote_new and merged_files == work.committed.to_files():
            logger.debug("Nothing to commit")
            return state.advance(SyncPhase.PUBLISHING, commit_ref=local_ref)

        parents = [p for p in (local_ref,) if p is not None]
        if remote_new and remote_ref is not None:
            parents.append(remote_ref)
        sha = self.worktree.commit(
            work.merged,
            parents=parents,
            message=self._commit_message(state),
            expected_tip=local_ref,
            preserve=work.preserve,
        )
        self._totals.committed = True
        return state.advance(SyncPhase.PUBLISHING, commit_ref=sha)

    def _commit_message(self, state: SyncState) -> str:
        totals = self._totals
        parts = [f"issuesync: {state.mode.value} sync"]
        if totals.pushed:
            parts.append(f"{len(totals.pushed)} local")
        if totals.pulled:
            parts.append(f"{len(totals.pulled)} remote")
        if totals.conflicts:
            parts.append(f"{len(totals.conflicts)} conflicts")
        return ", ".join(parts)

    def publishing(self, state: SyncState) -> SyncState:
        """Push the result; loop back to FETCHING when the remote moved."""
        if not state.mode.publishes:
            return state.advance(SyncPhase.IDLE)

        commit_ref = state.commit_ref
        assert commit_ref is not None
        if state.mode.reads_remote:
            known_remote = state.remote_ref
        else:
            known_remote = self.worktree.remote_tip()
        if known_remote is not None and self.worktree.is_ancestor(commit_ref, known_remote):
            logger.debug("Remote already has %s", commit_ref[:8])
            return state.advance(SyncPhase.IDLE)

        result = self.worktree.publish(commit_ref)
        if result.ok:
            self._totals.published = True
            return state.advance(SyncPhase.IDLE)

        if state.mode is SyncMode.PUSH:
            raise SyncContention(
                "Remote has changes this clone does not have; run a full sync",
                attempts=state.attempt,
            )
        if state.attempt >= self.max_publish_attempts:
            raise SyncContention(
                f"Publish rejected {state.attempt} times; the remote keeps moving",
                attempts=state.attempt,
            )
        logger.info("Publish rejected, retrying (attempt %d)", state.attempt + 1)
        return state.advance(SyncPhase.FETCHING, attempt=state.attempt + 1)


def _read_raw(worktree: WorktreeManager, path: str) -> bytes:
    return (worktree.checkout_path / path).read_bytes()
