"""
Tests for the sync state machine.

Tests cover:
- Change classification against the merge base
- The immutable per-cycle state value
- Atomicity of the commit phase
- Publish retries and contention limits
- Push-only and pull-only cycles
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import T0, git

from issuesync.core.sync.errors import CommitFailed, SyncContention, SyncInProgress
from issuesync.core.sync.models import (
    PublishResult,
    PublishStatus,
    SyncMode,
    SyncPhase,
    SyncState,
)
from issuesync.core.sync.orchestrator import ChangeKind, SyncOrchestrator, classify
from issuesync.core.worktree.lock import SyncLock
from issuesync.core.worktree.manager import WorktreeManager


def rejected(sha: str = "0" * 40) -> PublishResult:
    return PublishResult(status=PublishStatus.REJECTED, commit_sha=sha, message="fetch first")


class TestClassify:
    """Test classification of one record against the base."""

    def test_unchanged(self, sample_record):
        assert classify(sample_record, sample_record, sample_record) is ChangeKind.UNCHANGED

    def test_same_change_on_both_sides_is_unchanged(self, sample_record):
        edited = sample_record.model_copy(update={"version": 2, "title": "New"})

        assert classify(sample_record, edited, edited) is ChangeKind.UNCHANGED

    def test_local_change(self, sample_record):
        edited = sample_record.model_copy(update={"version": 2, "title": "New"})

        assert classify(sample_record, edited, sample_record) is ChangeKind.LOCAL

    def test_remote_change(self, sample_record):
        edited = sample_record.model_copy(update={"version": 2, "title": "New"})

        assert classify(sample_record, sample_record, edited) is ChangeKind.REMOTE

    def test_divergent(self, sample_record, edited_pair):
        earlier, later = edited_pair

        assert classify(sample_record, earlier, later) is ChangeKind.DIVERGENT

    def test_created_on_one_side(self, sample_record):
        assert classify(None, sample_record, None) is ChangeKind.LOCAL
        assert classify(None, None, sample_record) is ChangeKind.REMOTE

    def test_created_independently_on_both_sides(self, sample_record):
        other = sample_record.model_copy(update={"title": "Other"})

        assert classify(None, sample_record, other) is ChangeKind.DIVERGENT

    def test_version_only_difference_is_a_change(self, sample_record):
        assert classify(sample_record, sample_record.with_version(2), sample_record) is (
            ChangeKind.LOCAL
        )


class TestSyncState:
    """Test the value carried between phases."""

    def test_advance_returns_new_state(self):
        state = SyncState()

        nxt = state.advance(SyncPhase.FETCHING, attempt=2)

        assert state.phase is SyncPhase.IDLE
        assert nxt.phase is SyncPhase.FETCHING
        assert nxt.attempt == 2

    def test_state_is_frozen(self):
        with pytest.raises(Exception):
            SyncState().phase = SyncPhase.FAILED  # type: ignore[misc]

    def test_fail_records_error(self):
        state = SyncState().fail("boom")

        assert state.phase is SyncPhase.FAILED
        assert state.error == "boom"

    def test_mode_directions(self):
        assert SyncMode.FULL.reads_remote and SyncMode.FULL.publishes
        assert not SyncMode.PUSH.reads_remote
        assert not SyncMode.PULL.publishes


class TestCommitPhase:
    """Test that a failed cycle changes nothing durable."""

    def test_failed_ref_update_keeps_branch_and_local_edits(self, replica_a):
        record = replica_a.records().create("Fix login bug")
        tip = replica_a.worktree.local_tip()
        record_file = replica_a.worktree.checkout_path / "issues" / f"{record.id}.md"
        before = record_file.read_bytes()

        with patch.object(WorktreeManager, "_update_ref", side_effect=CommitFailed("crash")):
            with pytest.raises(CommitFailed):
                replica_a.sync()

        assert replica_a.worktree.local_tip() == tip
        assert record_file.read_bytes() == before
        assert replica_a.worktree.remote_tip() is None

    def test_retry_after_failure_succeeds(self, replica_a):
        record = replica_a.records().create("Fix login bug")

        with patch.object(WorktreeManager, "_update_ref", side_effect=CommitFailed("crash")):
            with pytest.raises(CommitFailed):
                replica_a.sync()
        summary = replica_a.sync()

        assert summary.pushed == [record.id]
        assert summary.published

    def test_no_changes_means_no_commit(self, replica_a):
        replica_a.sync()
        tip = replica_a.worktree.local_tip()

        summary = replica_a.sync()

        assert not summary.committed
        assert not summary.published
        assert summary.commit == tip
        assert "already up to date" in summary.summary()


class TestPublishPhase:
    """Test publish retries and contention."""

    def test_contention_gives_up_after_max_attempts(self, replica_a):
        replica_a.records().create("Fix login bug")
        orchestrator = SyncOrchestrator(replica_a.worktree, max_publish_attempts=3)

        with patch.object(WorktreeManager, "publish", return_value=rejected()) as publish:
            with pytest.raises(SyncContention) as exc_info:
                orchestrator.run()

        assert publish.call_count == 3
        assert exc_info.value.attempts == 3

    def test_rejection_then_success_retries(self, replica_a):
        replica_a.records().create("Fix login bug")
        orchestrator = SyncOrchestrator(replica_a.worktree, max_publish_attempts=3)
        real_publish = WorktreeManager.publish
        calls = []

        def flaky(self, sha):
            calls.append(sha)
            if len(calls) == 1:
                return rejected(sha)
            return real_publish(self, sha)

        with patch.object(WorktreeManager, "publish", flaky):
            summary = orchestrator.run()

        assert summary.attempts == 2
        assert summary.published

    def test_push_only_rejection_fails_immediately(self, make_replica, replica_a):
        replica_a.sync()
        replica_b = make_replica("replica-b")
        replica_b.initialize()
        replica_a.records().create("From A")
        replica_a.sync()

        replica_b.records().create("From B")
        with pytest.raises(SyncContention, match="full sync") as exc_info:
            replica_b.sync(SyncMode.PUSH)

        assert exc_info.value.attempts == 1

    def test_contended_commit_goes_out_with_next_full_sync(
        self, make_replica, replica_a, remote_repo
    ):
        """A rejected push leaves the commit on the local branch for the next sync."""
        replica_a.sync()
        replica_b = make_replica("replica-b")
        replica_b.initialize()
        replica_a.records().create("From A")
        replica_a.sync()
        created = replica_b.records().create("From B")

        with pytest.raises(SyncContention):
            replica_b.sync(SyncMode.PUSH)
        contended = replica_b.worktree.local_tip()
        assert git(remote_repo, "rev-parse", "issuesync-sync") != contended

        summary = replica_b.sync()

        assert summary.published
        # Exits non-zero (and raises) unless the contended commit was published
        git(remote_repo, "merge-base", "--is-ancestor", contended, "issuesync-sync")
        replica_a.sync()
        assert created.id in {r.id for r in replica_a.records().list()}

    def test_pull_only_never_publishes(self, make_replica, replica_a, remote_repo):
        replica_a.records().create("From A")
        replica_a.sync()
        published = git(remote_repo, "rev-parse", "issuesync-sync")
        replica_b = make_replica("replica-b")
        replica_b.initialize()
        created = replica_b.records().create("From B")

        summary = replica_b.sync(SyncMode.PULL)

        assert not summary.published
        assert git(remote_repo, "rev-parse", "issuesync-sync") == published
        assert created.id in {r.id for r in replica_b.records().list()}

    def test_lock_held_elsewhere(self, replica_a):
        orchestrator = SyncOrchestrator(replica_a.worktree, lock=SyncLock(replica_a.lock_path))

        with SyncLock(replica_a.lock_path):
            with pytest.raises(SyncInProgress):
                orchestrator.run()


class TestDeterministicClock:
    """Test that the orchestrator stamps attic entries with its clock."""

    def test_attic_entries_use_orchestrator_clock(self, make_replica, replica_a):
        replica_a.sync()
        replica_b = make_replica("replica-b")
        replica_b.initialize()
        record = replica_a.records().create("Shared")
        replica_a.sync()
        replica_b.sync()

        store_a, store_b = replica_a.records(), replica_b.records()
        store_a.write(
            record.model_copy(update={"assignee": "alice", "updated_at": T0}), touch=False
        )
        store_b.write(
            record.model_copy(update={"assignee": "bob", "updated_at": T0 + timedelta(1)}),
            touch=False,
        )
        replica_a.sync()
        stamp = T0 + timedelta(days=30)
        summary = SyncOrchestrator(replica_b.worktree, clock=lambda: stamp).run()

        (conflict,) = summary.conflicts
        entry = replica_b.get_attic_entry(conflict.attic_entry_id)
        assert entry.resolved_at == stamp
