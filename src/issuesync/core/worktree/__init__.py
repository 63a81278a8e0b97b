"""
Sync branch storage.

The sync branch is materialized in a hidden git worktree inside the
project; this package manages that checkout, reads and writes branch
snapshots, and guards sync cycles with a per-clone lock.

Example:
    >>> from issuesync.core.worktree import WorktreeManager
    >>> manager = WorktreeManager()
    >>> manager.initialize()
    >>> snapshot = manager.checkout()
"""

from .lock import SyncLock
from .manager import WorktreeManager
from .snapshot import Snapshot

__all__ = ["Snapshot", "SyncLock", "WorktreeManager"]
