"""
Deterministic whole-record conflict resolution.

When both sides changed the same record, one side wins outright. The
winner is picked by a fixed chain of rules, each consulted only when the
previous one ties:

1. identical content hash: nothing to resolve
2. higher version (``version-skew``)
3. later ``updated_at`` (``timestamp-tiebreak``)
4. lexicographically greater content hash (``hash-tiebreak``)

The chain depends only on the two records, never on which side is local,
so every replica picks the same winner. The winner's payload is kept at
a version above both inputs and the loser goes to the attic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from issuesync.core.records.models import IssueRecord
from issuesync.core.sync.attic import AtticArchiver
from issuesync.core.sync.models import ResolutionReason, Side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """
    Outcome of resolving one divergent record.

    Attributes:
        merged: Record to keep
        winner: Which side's payload was kept
        reason: Rule that decided
        loser: Losing record (None when the contents were identical)
        attic_entry_id: Attic entry holding the loser, once archived
    """

    merged: IssueRecord
    winner: Side
    reason: ResolutionReason
    loser: IssueRecord | None = None
    attic_entry_id: str | None = None

    @property
    def is_conflict(self) -> bool:
        return self.reason is not ResolutionReason.IDENTICAL


def _pick(local: IssueRecord, remote: IssueRecord) -> tuple[Side, ResolutionReason]:
    local_hash, remote_hash = local.content_hash(), remote.content_hash()

    if local_hash == remote_hash:
        side = Side.LOCAL if local.version >= remote.version else Side.REMOTE
        return side, ResolutionReason.IDENTICAL
    if local.version != remote.version:
        side = Side.LOCAL if local.version > remote.version else Side.REMOTE
        return side, ResolutionReason.VERSION_SKEW
    if local.updated_at != remote.updated_at:
        side = Side.LOCAL if local.updated_at > remote.updated_at else Side.REMOTE
        return side, ResolutionReason.TIMESTAMP_TIEBREAK
    side = Side.LOCAL if local_hash > remote_hash else Side.REMOTE
    return side, ResolutionReason.HASH_TIEBREAK


class ConflictResolver:
    """
    Resolves divergent records with the last-writer-wins chain.

    With an archiver attached, every loser is archived as part of
    ``resolve``; without one, ``resolve`` is pure.

    Example:
        >>> resolver = ConflictResolver(AtticArchiver())
        >>> result = resolver.resolve(local, remote)
        >>> result.reason
        <ResolutionReason.TIMESTAMP_TIEBREAK: 'timestamp-tiebreak'>
    """

    def __init__(self, archiver: AtticArchiver | None = None):
        self.archiver = archiver

    def resolve(self, local: IssueRecord, remote: IssueRecord) -> Resolution:
        """
        Resolve two versions of the same record.

        Raises:
            ValueError: If the records have different ids.
        """
        if local.id != remote.id:
            raise ValueError(f"Cannot resolve different records: {local.id} vs {remote.id}")

        side, reason = _pick(local, remote)
        winner, loser = (local, remote) if side is Side.LOCAL else (remote, local)

        if reason is ResolutionReason.IDENTICAL:
            return Resolution(merged=winner, winner=side, reason=reason)

        merged = winner.with_version(max(local.version, remote.version) + 1)
        entry_id = None
        if self.archiver is not None:
            loser_side = Side.REMOTE if side is Side.LOCAL else Side.LOCAL
            entry_id = self.archiver.archive_record(
                loser, reason, winner=merged, loser_side=loser_side
            )

        logger.info(
            "Resolved %s: %s wins by %s (v%d)", local.id, side.value, reason.value, merged.version
        )
        return Resolution(
            merged=merged,
            winner=side,
            reason=reason,
            loser=loser,
            attic_entry_id=entry_id,
        )
