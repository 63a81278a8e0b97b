"""
Exceptions raised by the sync engine.

Two families:

- ``SyncError`` subclasses are structural: they abort a sync cycle and
  leave durable state (the sync branch, the private checkout) as it was
  before the cycle started.
- ``RecordError`` subclasses concern a single record. During a sync they
  are collected into the summary instead of aborting the cycle.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for errors that abort a sync cycle."""


class SyncUnreachable(SyncError):
    """The remote could not be reached after all retries."""

    def __init__(self, message: str, remote: str = "", attempts: int = 0):
        super().__init__(message)
        self.remote = remote
        self.attempts = attempts


class SyncContention(SyncError):
    """
    Publishing kept being rejected because the remote moved.

    By the time this is raised the merged commit is already on the local
    sync branch. Nothing is lost: the next full sync merges the remote
    into it and publishes both.
    """

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class SyncInProgress(SyncError):
    """Another sync already holds the lock for this clone."""

    def __init__(self, message: str, lock_path: str = ""):
        super().__init__(message)
        self.lock_path = lock_path


class WorktreeInconsistent(SyncError):
    """The private checkout is in a state that cannot be repaired automatically."""


class CommitFailed(SyncError):
    """Writing the merged snapshot or advancing the branch failed."""


class RecordError(Exception):
    """Base class for errors that concern a single record."""

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class CorruptRecord(RecordError):
    """A record file could not be parsed or does not match the schema."""


class IdentifierError(RecordError):
    """Base class for identifier allocation and lookup errors."""


class IdentifierExhausted(IdentifierError):
    """No unique display id could be derived for an internal id."""


class UnknownIdentifier(IdentifierError):
    """A display or internal id does not name a known record."""
