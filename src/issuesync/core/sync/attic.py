"""
The attic: losing sides of resolved conflicts.

Last-writer-wins never discards data; the losing payload of every
conflict is archived here, keyed by (internal id, superseded version,
loser hash). Entries are immutable. Restoring one produces a new version
of the record and leaves the entry in place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from issuesync.core.records.hashing import ContentHasher
from issuesync.core.records.models import IssueRecord, utc_now
from issuesync.core.sync.errors import UnknownIdentifier
from issuesync.core.sync.models import ATTIC_HASH_CHARS, AtticEntry, ResolutionReason, Side

logger = logging.getLogger(__name__)


def _preferred(a: AtticEntry, b: AtticEntry) -> AtticEntry:
    """Of two entries for the same key, the one every replica keeps."""
    return min(a, b, key=lambda e: (e.resolved_at, e.loser_hash, e.entry_id))


class AtticArchiver:
    """
    Archive of superseded record versions.

    Operates on an in-memory map that belongs to a snapshot; the worktree
    manager persists it with the rest of the branch content.

    Example:
        >>> attic = AtticArchiver()
        >>> entry_id = attic.archive_record(loser, ResolutionReason.TIMESTAMP_TIEBREAK)
        >>> attic.restore(entry_id, current)
    """

    def __init__(
        self,
        entries: dict[tuple[str, int, str], AtticEntry] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.entries: dict[tuple[str, int, str], AtticEntry] = dict(entries or {})
        self._clock = clock

    def __len__(self) -> int:
        return len(self.entries)

    def archive(
        self,
        internal_id: str,
        superseded_version: int,
        payload: dict[str, Any],
        reason: ResolutionReason,
        *,
        loser_side: Side | None = None,
        winner_version: int | None = None,
        winner_hash: str | None = None,
        loser_hash: str | None = None,
        resolved_at: datetime | None = None,
    ) -> str:
        """
        Archive a superseded payload.

        Idempotent: archiving the same payload at the same version again
        returns the existing entry id and changes nothing. A different
        payload superseded at the same version gets its own entry.

        Returns:
            The entry id.
        """
        if loser_hash is None:
            loser_hash = ContentHasher.hash_payload(payload)
        entry_id = AtticEntry.make_id(internal_id, superseded_version, loser_hash)
        key = (internal_id, superseded_version, loser_hash[:ATTIC_HASH_CHARS])
        existing = self.entries.get(key)
        if existing is not None:
            logger.debug("Attic entry %s already exists", existing.entry_id)
            return existing.entry_id

        entry = AtticEntry(
            entry_id=entry_id,
            internal_id=internal_id,
            superseded_version=superseded_version,
            resolved_at=resolved_at or self._clock(),
            reason=reason,
            loser_side=loser_side,
            winner_version=winner_version,
            winner_hash=winner_hash,
            loser_hash=loser_hash,
            payload=payload,
        )
        self.entries[key] = entry
        logger.info("Archived %s (%s)", entry.entry_id, reason.value)
        return entry.entry_id

    def archive_record(
        self,
        loser: IssueRecord,
        reason: ResolutionReason,
        *,
        winner: IssueRecord | None = None,
        loser_side: Side | None = None,
    ) -> str:
        """Archive a losing record, keyed by its own version."""
        return self.archive(
            loser.id,
            loser.version,
            loser.model_dump(mode="json", exclude_none=True),
            reason,
            loser_side=loser_side,
            winner_version=winner.version if winner else None,
            winner_hash=winner.content_hash() if winner else None,
            loser_hash=loser.content_hash(),
        )

    def get(self, entry_id: str) -> AtticEntry:
        """
        Look up an entry by id.

        Raises:
            UnknownIdentifier: If no such entry exists.
        """
        for entry in self.entries.values():
            if entry.entry_id == entry_id:
                return entry
        raise UnknownIdentifier(f"No attic entry {entry_id}", source=entry_id)

    def list(self, internal_id: str | None = None) -> list[AtticEntry]:
        """Entries, oldest first, optionally for one record."""
        entries = [
            e for e in self.entries.values() if internal_id is None or e.internal_id == internal_id
        ]
        return sorted(entries, key=lambda e: (e.resolved_at, e.entry_id))

    def restore(self, entry_id: str, current: IssueRecord | None) -> IssueRecord:
        """
        Build a new version of a record from an archived payload.

        The payload is restored as-is, ``updated_at`` included, at version
        ``current.version + 1`` so it supersedes whatever is current. The
        entry itself is not modified.

        Raises:
            UnknownIdentifier: If no such entry exists.
        """
        entry = self.get(entry_id)
        if current is not None and current.id != entry.internal_id:
            raise ValueError(f"{entry_id} does not belong to {current.id}")

        if current is not None:
            version = current.version + 1
        else:
            version = max(entry.superseded_version, entry.winner_version or 0) + 1
        restored = entry.record().with_version(version)
        logger.info("Restored %s as version %d", entry_id, version)
        return restored

    def merge(self, other: AtticArchiver) -> AtticArchiver:
        """
        Union of two attics.

        For a key present on both sides the entry with the earlier
        ``resolved_at`` is kept, so the result is the same on every
        replica.
        """
        merged = dict(self.entries)
        for key, entry in other.entries.items():
            mine = merged.get(key)
            merged[key] = entry if mine is None else _preferred(mine, entry)
        return AtticArchiver(merged, clock=self._clock)
