"""
Tests for SyncService.

End-to-end tests with several replicas sharing one bare remote. Each
replica is a separate clone with its own sync branch and checkout.
"""

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import T0, git

from issuesync.core.records import codec
from issuesync.core.records.models import IssueRecord, IssueStatus
from issuesync.core.sync.errors import SyncError, SyncInProgress, UnknownIdentifier
from issuesync.core.sync.models import ResolutionReason, Side, SyncMode
from issuesync.core.sync.service import SyncService
from issuesync.core.worktree.lock import SyncLock
from issuesync.core.worktree.snapshot import Snapshot


@pytest.fixture
def published_a(replica_a: SyncService) -> SyncService:
    """Replica A after publishing the empty sync branch."""
    replica_a.sync()
    return replica_a


@pytest.fixture
def replica_b(make_replica, published_a) -> SyncService:
    """Replica B, initialized from A's published branch."""
    service = make_replica("replica-b")
    service.initialize()
    return service


def branch_files(service: SyncService) -> dict[str, bytes]:
    worktree = service.worktree
    return worktree.read_commit(worktree.local_tip()).to_files()


def newer_schema_bytes(record: IssueRecord) -> bytes:
    """A record file as a later release with schema 3 would write it."""
    text = codec.dumps(record).replace("schema_version: 2", "schema_version: 3")
    return text.encode("utf-8")


def publish_raw(service: SyncService, path: str, data: bytes) -> None:
    """Commit ``data`` at ``path`` on the sync branch and publish it."""
    worktree = service.worktree
    tip = worktree.local_tip()
    files = worktree.read_commit(tip).to_files()
    files[path] = data
    sha = worktree.commit(
        Snapshot.from_files(files), parents=[tip], message="Newer release", expected_tip=tip
    )
    assert worktree.publish(sha).ok


class TestSyncServiceInit:
    """Test service construction and initialization."""

    def test_not_a_git_repo(self, tmp_path: Path) -> None:
        with pytest.raises(SyncError):
            SyncService(project_dir=tmp_path)

    def test_initialize_records_checkpoint(self, make_replica) -> None:
        service = make_replica("fresh")
        assert not service.is_initialized()

        tip = service.initialize()

        assert service.is_initialized()
        assert service.load_checkpoint().last_synced_commit == tip
        assert service.state_file_path.is_file()

    def test_subdirectory_finds_repo_root(self, git_repo: Path, fast_config) -> None:
        sub = git_repo / "src" / "pkg"
        sub.mkdir(parents=True)

        service = SyncService(project_dir=sub, config=fast_config)

        assert service.project_dir == git_repo.resolve()

    def test_corrupt_checkpoint_is_replaced(self, replica_a: SyncService) -> None:
        replica_a.state_file_path.write_text("{broken")
        service = SyncService(project_dir=replica_a.project_dir, config=replica_a.config)

        assert service.load_checkpoint().dirty_ids == []


class TestConvergence:
    """Test that replicas end up with identical branches."""

    def test_record_created_on_a_reaches_b(self, published_a, replica_b) -> None:
        record = published_a.records().create("Fix login bug", priority=1)
        published_a.sync()

        summary = replica_b.sync()

        assert summary.pulled == [record.id]
        assert replica_b.records().read(record.id) == record
        assert branch_files(replica_b) == branch_files(published_a)

    def test_display_ids_agree(self, published_a, replica_b) -> None:
        record = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()

        assert replica_b.records().display_id(record.id) == (
            published_a.records().display_id(record.id)
        )

    def test_independent_creates_merge(self, published_a, replica_b) -> None:
        first = published_a.records().create("From A")
        second = replica_b.records().create("From B")
        published_a.sync()
        replica_b.sync()
        published_a.sync()

        ids = {r.id for r in published_a.records().list()}
        assert ids == {first.id, second.id}
        assert branch_files(published_a) == branch_files(replica_b)

    def test_sync_is_idempotent(self, published_a, replica_b) -> None:
        published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()
        tip = replica_b.worktree.local_tip()

        summary = replica_b.sync()

        assert not summary.committed
        assert replica_b.worktree.local_tip() == tip

    def test_user_branch_is_untouched(self, published_a) -> None:
        head = git(published_a.project_dir, "rev-parse", "HEAD")
        published_a.records().create("Fix login bug")

        published_a.sync()

        assert git(published_a.project_dir, "rev-parse", "HEAD") == head
        assert git(published_a.project_dir, "status", "--porcelain", "--untracked-files=no") == ""


class TestConflicts:
    """Test concurrent edits of the same record."""

    def test_concurrent_edits_resolve_by_timestamp(self, published_a, replica_b) -> None:
        """A creates x; B and A both edit it at v2; B's later edit wins everywhere."""
        created = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()

        store_b = replica_b.records()
        later = store_b.write(
            created.model_copy(
                update={"status": IssueStatus.IN_PROGRESS, "updated_at": T0 + timedelta(minutes=2)}
            ),
            touch=False,
        )
        replica_b.sync()

        store_a = published_a.records()
        earlier = store_a.write(
            created.model_copy(
                update={"assignee": "alice", "updated_at": T0 + timedelta(minutes=1)}
            ),
            touch=False,
        )
        assert earlier.version == later.version == 2

        summary = published_a.sync()

        (conflict,) = summary.conflicts
        assert conflict.reason is ResolutionReason.TIMESTAMP_TIEBREAK
        assert conflict.winner is Side.REMOTE
        merged = store_a.read(created.id)
        assert merged.version == 3
        assert merged.status == IssueStatus.IN_PROGRESS
        assert merged.assignee is None

        (entry,) = published_a.list_attic()
        assert entry.superseded_version == 2
        assert entry.reason is ResolutionReason.TIMESTAMP_TIEBREAK
        assert entry.record() == earlier

        replica_b.sync()
        assert replica_b.records().read(created.id) == merged
        assert branch_files(replica_b) == branch_files(published_a)

    def test_three_losers_at_one_version_are_all_kept(self, make_replica, published_a) -> None:
        """Two losing payloads superseded at the same version both land in the attic."""
        replica_b = make_replica("replica-b")
        replica_c = make_replica("replica-c")
        created = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.initialize()
        replica_c.initialize()

        for minutes, (service, assignee) in enumerate(
            [(published_a, "alice"), (replica_b, "bob"), (replica_c, "carol")], start=1
        ):
            service.records().write(
                created.model_copy(
                    update={"assignee": assignee, "updated_at": T0 + timedelta(minutes=minutes)}
                ),
                touch=False,
            )
            service.sync()

        for service in (published_a, replica_b, replica_c):
            service.sync()

        entries = published_a.list_attic(created.id)
        assert sorted(e.record().assignee for e in entries) == ["alice", "carol"]
        assert {e.superseded_version for e in entries} == {2}
        assert published_a.records().read(created.id).assignee == "bob"
        assert branch_files(replica_c) == branch_files(published_a)

    def test_restore_brings_loser_back(self, published_a, replica_b) -> None:
        created = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()
        replica_b.records().write(
            created.model_copy(update={"title": "B title", "updated_at": T0 + timedelta(hours=2)}),
            touch=False,
        )
        replica_b.sync()
        loser = published_a.records().write(
            created.model_copy(update={"title": "A title", "updated_at": T0 + timedelta(hours=1)}),
            touch=False,
        )
        published_a.sync()
        (entry,) = published_a.list_attic()

        restored = published_a.restore_attic(entry.entry_id)
        published_a.sync()
        replica_b.sync()

        assert restored.version == 4
        assert restored.content_hash() == loser.content_hash()
        assert replica_b.records().read(created.id).title == "A title"
        assert published_a.get_attic_entry(entry.entry_id) == entry

    def test_unknown_attic_entry(self, published_a) -> None:
        with pytest.raises(UnknownIdentifier):
            published_a.restore_attic("is-01hx5zzkbkactav9wevgemmvrz@v2-00000000")


class TestCorruptRecords:
    """Test that unreadable files never abort a sync or get lost."""

    def test_corrupt_local_file_is_reported_and_kept(self, published_a) -> None:
        record = published_a.records().create("Fix login bug")
        published_a.sync()
        path = published_a.worktree.checkout_path / "issues" / f"{record.id}.md"
        path.write_text("---\nbroken: [\n---\n", encoding="utf-8")
        other = published_a.records().create("Another bug")

        summary = published_a.sync()

        assert [f.internal_id for f in summary.record_errors] == [record.id]
        assert summary.pushed == [other.id]
        assert path.read_text(encoding="utf-8") == "---\nbroken: [\n---\n"
        committed = published_a.worktree.read_commit(published_a.worktree.local_tip())
        assert committed.records[record.id] == record

    def test_edit_without_version_bump_is_not_synced(self, published_a) -> None:
        record = published_a.records().create("Fix login bug")
        published_a.sync()
        path = published_a.worktree.checkout_path / "issues" / f"{record.id}.md"
        path.write_text(codec.dumps(record.model_copy(update={"title": "Sneaky"})))

        summary = published_a.sync()

        assert "without a version bump" in summary.record_errors[0].message
        committed = published_a.worktree.read_commit(published_a.worktree.local_tip())
        assert committed.records[record.id].title == "Fix login bug"
        assert codec.load(path).title == "Sneaky"

    def test_unreadable_remote_record_is_carried_unchanged(self, published_a, replica_b) -> None:
        record = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()
        path = f"issues/{record.id}.md"
        newer = newer_schema_bytes(record.model_copy(update={"version": 2, "title": "Later"}))
        publish_raw(replica_b, path, newer)

        other = published_a.records().create("Another bug")
        summary = published_a.sync()

        assert record.id in {f.internal_id for f in summary.record_errors}
        assert summary.pushed == [other.id]
        assert branch_files(published_a)[path] == newer
        assert published_a.list_attic(record.id) == []

        replica_b.sync()
        assert branch_files(replica_b)[path] == newer
        assert other.id in replica_b.worktree.local_snapshot().records

    def test_local_edit_against_unreadable_remote_is_archived(
        self, published_a, replica_b
    ) -> None:
        record = published_a.records().create("Fix login bug")
        published_a.sync()
        replica_b.sync()
        path = f"issues/{record.id}.md"
        newer = newer_schema_bytes(record.model_copy(update={"version": 2, "title": "Later"}))
        publish_raw(replica_b, path, newer)
        published_a.records().write(record.model_copy(update={"title": "Edited on A"}))

        summary = published_a.sync()

        assert any("archived" in f.message for f in summary.record_errors)
        assert branch_files(published_a)[path] == newer
        (entry,) = published_a.list_attic(record.id)
        assert entry.reason is ResolutionReason.REMOTE_UNREADABLE
        assert entry.loser_side is Side.LOCAL
        assert entry.record().title == "Edited on A"


class TestStatus:
    """Test the status report."""

    def test_uninitialized(self, make_replica) -> None:
        report = make_replica("fresh").status()

        assert not report.initialized
        assert report.branch == "issuesync-sync"

    def test_local_changes_and_behind(self, published_a, replica_b) -> None:
        published_a.records().create("From A")
        published_a.sync()
        mine = replica_b.records().create("From B")

        report = replica_b.status()

        assert report.remote_checked
        assert report.behind == 1
        assert report.local_changes == [mine.id]
        assert report.pending_conflicts == 0

    def test_after_sync(self, published_a) -> None:
        published_a.records().create("Fix login bug")
        published_a.sync()

        report = published_a.status()

        assert (report.ahead, report.behind) == (0, 0)
        assert report.local_changes == []
        assert report.last_sync_at is not None

    def test_no_fetch_without_remote(self, local_only_repo: Path, fast_config) -> None:
        service = SyncService(project_dir=local_only_repo, config=fast_config)
        service.initialize()

        report = service.status()

        assert report.initialized
        assert not report.remote_checked


class TestLocking:
    def test_sync_while_locked(self, published_a) -> None:
        with SyncLock(published_a.lock_path):
            with pytest.raises(SyncInProgress):
                published_a.sync()

    def test_pull_only_records_checkpoint(self, published_a, replica_b) -> None:
        record = published_a.records().create("From A")
        published_a.sync()

        summary = replica_b.sync(SyncMode.PULL)

        assert summary.pulled == [record.id]
        assert not summary.published
        assert replica_b.load_checkpoint().last_pull_at is not None
        assert replica_b.load_checkpoint().last_push_at is None
