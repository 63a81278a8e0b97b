"""
Sync service: the facade used by the CLI and by record commands.

Wires configuration, the worktree manager, the lock and the
orchestrator together, and keeps the per-clone checkpoint in
``.issuesync/cache/state.json``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from issuesync.core.config import IssueSyncConfig, load_config
from issuesync.core.records.models import IssueRecord
from issuesync.core.records.store import RecordStore
from issuesync.core.sync.attic import AtticArchiver
from issuesync.core.sync.errors import RecordError, SyncUnreachable, WorktreeInconsistent
from issuesync.core.sync.models import (
    AtticEntry,
    SyncCheckpoint,
    SyncMode,
    SyncStatusReport,
    SyncSummary,
)
from issuesync.core.sync.orchestrator import SyncOrchestrator
from issuesync.core.worktree.lock import SyncLock
from issuesync.core.worktree.manager import WorktreeManager

logger = logging.getLogger(__name__)


class SyncService:
    """
    Service for syncing issue records through a dedicated git branch.

    Example:
        >>> service = SyncService(project_dir=Path("."))
        >>> if not service.is_initialized():
        ...     service.initialize()
        >>> service.records().create("Fix login bug")
        >>> summary = service.sync()
        >>> print(summary.summary())
    """

    STATE_FILE = ".issuesync/cache/state.json"
    LOCK_FILE = ".issuesync/cache/sync.lock"

    def __init__(
        self,
        project_dir: Path | None = None,
        config: IssueSyncConfig | None = None,
    ) -> None:
        """
        Initialize the sync service.

        Args:
            project_dir: Directory inside the git repository.
                Defaults to current working directory.
            config: Configuration; loaded from the project when omitted.
        """
        start = (project_dir or Path.cwd()).resolve()
        self.config = config or load_config(start)
        self.worktree = WorktreeManager(
            start,
            branch=self.config.sync.branch,
            remote=self.config.sync.remote,
            network_timeout=self.config.sync.network_timeout,
            network_retries=self.config.sync.network_retries,
            retry_delay=self.config.sync.retry_delay,
            id_prefix=self.config.display.id_prefix,
        )
        self.project_dir = self.worktree.root
        self._checkpoint: SyncCheckpoint | None = None

    @property
    def state_file_path(self) -> Path:
        """Full path to the checkpoint file."""
        return self.project_dir / self.STATE_FILE

    @property
    def lock_path(self) -> Path:
        return self.project_dir / self.LOCK_FILE

    # Checkpoint

    def load_checkpoint(self) -> SyncCheckpoint:
        """Load the checkpoint from file or return a fresh one."""
        if self._checkpoint is not None:
            return self._checkpoint

        if self.state_file_path.exists():
            try:
                content = self.state_file_path.read_text()
                self._checkpoint = SyncCheckpoint.model_validate_json(content)
                return self._checkpoint
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Failed to load sync checkpoint: %s", e)

        self._checkpoint = SyncCheckpoint()
        return self._checkpoint

    def _save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        """Save the checkpoint atomically."""
        self._checkpoint = checkpoint
        self.state_file_path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = self.state_file_path.with_suffix(".tmp")
        try:
            temp_path.write_text(checkpoint.model_dump_json(indent=2))
            temp_path.replace(self.state_file_path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def _mark_dirty(self, record: IssueRecord) -> None:
        checkpoint = self.load_checkpoint()
        checkpoint.mark_dirty(record.id)
        self._save_checkpoint(checkpoint)

    # Lifecycle

    def is_initialized(self) -> bool:
        return self.worktree.is_initialized()

    def initialize(self) -> str:
        """
        Create the sync branch and private checkout.

        Returns:
            The sync branch tip.
        """
        with SyncLock(self.lock_path):
            tip = self.worktree.initialize()
        checkpoint = self.load_checkpoint()
        if checkpoint.last_synced_commit is None:
            checkpoint.last_synced_commit = tip
            self._save_checkpoint(checkpoint)
        return tip

    def diagnose(self) -> list[str]:
        """Problems with the private checkout that ``repair`` would fix."""
        return self.worktree.diagnose()

    def repair(self, force: bool = False) -> list[str]:
        """Check the private checkout and repair it; returns actions taken."""
        with SyncLock(self.lock_path):
            return self.worktree.repair(force=force)

    def records(self) -> RecordStore:
        """
        Record store bound to the private checkout.

        Mutations are tracked in the checkpoint's dirty set.

        Raises:
            WorktreeInconsistent: If the sync branch is not initialized.
        """
        if not self.worktree.checkout_path.exists():
            self.repair()
        store = RecordStore(self.worktree.checkout_path, id_prefix=self.config.display.id_prefix)
        store.on_mutation(self._mark_dirty)
        return store

    # Sync

    def sync(self, mode: SyncMode = SyncMode.FULL) -> SyncSummary:
        """
        Run one sync cycle.

        Raises:
            SyncError: Subclasses, see SyncOrchestrator.run.
        """
        checkpoint = self.load_checkpoint()
        orchestrator = SyncOrchestrator(
            self.worktree,
            max_publish_attempts=self.config.sync.max_publish_attempts,
            lock=SyncLock(self.lock_path),
        )
        summary = orchestrator.run(mode, dirty_ids=frozenset(checkpoint.dirty_ids))

        checkpoint.mark_synced(
            summary.commit,
            pushed=summary.published,
            pulled=mode.reads_remote,
        )
        self._save_checkpoint(checkpoint)
        logger.info("%s", summary.summary())
        return summary

    def status(self, fetch: bool = True) -> SyncStatusReport:
        """
        Where this clone stands relative to the remote.

        Args:
            fetch: Whether to fetch first; without it the counts reflect
                the last fetch.
        """
        report = SyncStatusReport(
            initialized=self.is_initialized(),
            branch=self.worktree.branch,
            remote=self.worktree.remote,
            last_sync_at=self.load_checkpoint().last_sync_at,
        )
        if not report.initialized:
            return report

        remote_checked = False
        if fetch and self.worktree.has_remote():
            try:
                self.worktree.fetch()
                remote_checked = True
            except SyncUnreachable as e:
                logger.warning("Status without remote: %s", e)

        ahead, behind = self.worktree.ahead_behind()
        changes = set(self.load_checkpoint().dirty_ids)
        for path in self.worktree.local_changes():
            if path.startswith("issues/") and path.endswith(".md"):
                changes.add(path[len("issues/") : -len(".md")])

        return report.model_copy(
            update={
                "local_commit": self.worktree.local_tip(),
                "remote_commit": self.worktree.remote_tip(),
                "ahead": ahead,
                "behind": behind,
                "local_changes": sorted(changes),
                "remote_checked": remote_checked,
            }
        )

    # Attic

    def _attic(self) -> AtticArchiver:
        if not self.is_initialized():
            raise WorktreeInconsistent("Sync branch not initialized; run 'issuesync init'")
        if not self.worktree.checkout_path.exists():
            self.repair()
        return AtticArchiver(self.worktree.local_snapshot().attic)

    def list_attic(self, identifier: str | None = None) -> list[AtticEntry]:
        """
        Attic entries, oldest first.

        Args:
            identifier: Display or internal id to filter by.
        """
        internal_id = self.records().resolve(identifier) if identifier else None
        return self._attic().list(internal_id)

    def get_attic_entry(self, entry_id: str) -> AtticEntry:
        return self._attic().get(entry_id)

    def restore_attic(self, entry_id: str) -> IssueRecord:
        """
        Restore an archived payload as the newest version of its record.

        The restored record is written to the checkout and goes out with
        the next sync.

        Raises:
            UnknownIdentifier: If no such entry exists.
        """
        attic = self._attic()
        entry = attic.get(entry_id)
        store = self.records()
        try:
            current: IssueRecord | None = store.read(entry.internal_id)
        except RecordError as e:
            logger.warning("Current version of %s unreadable: %s", entry.internal_id, e)
            current = None

        restored = attic.restore(entry_id, current)
        # The store bumps past the stored version; hand it the one below
        return store.write(restored.with_version(restored.version - 1), touch=False)
