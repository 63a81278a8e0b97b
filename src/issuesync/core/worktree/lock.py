"""
Per-clone sync lock.

Only one sync cycle may run against a clone at a time. The lock is an
exclusive, non-blocking ``flock`` on ``.issuesync/cache/sync.lock``; a
second caller fails immediately with SyncInProgress instead of waiting.
The kernel drops the lock when the holding process exits, so a crashed
sync never leaves a stale lock behind.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType
from typing import IO

from issuesync.core.sync.errors import SyncInProgress

logger = logging.getLogger(__name__)


class SyncLock:
    """
    Exclusive lock held for the duration of one sync cycle.

    Example:
        >>> with SyncLock(Path(".issuesync/cache/sync.lock")):
        ...     orchestrator.run()
    """

    def __init__(self, path: Path):
        self.path = path
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            SyncInProgress: If another process (or another SyncLock in this
                process) holds it.
        """
        if self._handle is not None:
            raise SyncInProgress("Sync lock already held by this handle", str(self.path))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            handle.close()
            raise SyncInProgress(
                f"Another sync is already running (lock: {self.path})", str(self.path)
            ) from e

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired sync lock %s", self.path)

    def release(self) -> None:
        """Release the lock if held."""
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            logger.debug("Released sync lock %s", self.path)

    def __enter__(self) -> SyncLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
