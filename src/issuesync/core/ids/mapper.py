"""
Display id mapping.

Internal ids are long and unfriendly, so every record also gets a short
display id (``bd-a1b2``). The table lives on the sync branch in
``mappings/ids.yml`` and is committed together with the records it maps.

Short ids are derived from a SHA-256 digest of the internal id rather
than drawn at random. Two replicas that learn about the same record
independently therefore allocate the same short id for it, and merging
their tables is usually a no-op. When two internal ids collide on a
prefix, the pairing already present in the merge base keeps it; between
two new pairings the one whose internal id sorts later (ULIDs sort by
creation time) moves to a longer prefix of its own digest.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from pathlib import Path

import yaml

from issuesync.core.records.models import INTERNAL_ID_PATTERN
from issuesync.core.sync.errors import IdentifierExhausted, UnknownIdentifier

logger = logging.getLogger(__name__)

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
MIN_SHORT_LENGTH = 4
# A 256-bit integer needs at most 50 base36 digits
DIGEST_LENGTH = 50
DEFAULT_PREFIX = "bd"


def _base36_digest(internal_id: str) -> str:
    value = int.from_bytes(hashlib.sha256(internal_id.encode("utf-8")).digest(), "big")
    chars = []
    while value:
        value, rem = divmod(value, 36)
        chars.append(BASE36_ALPHABET[rem])
    return "".join(reversed(chars)).rjust(DIGEST_LENGTH, "0")


class IDMapper:
    """
    Bidirectional display id <-> internal id table.

    Example:
        >>> mapper = IDMapper(prefix="bd")
        >>> short = mapper.allocate("is-01hx5zzkbkactav9wevgemmvrz")
        >>> mapper.resolve(f"bd-{short}")
        'is-01hx5zzkbkactav9wevgemmvrz'
    """

    def __init__(self, mapping: dict[str, str] | None = None, prefix: str = DEFAULT_PREFIX):
        self.prefix = prefix
        self._short_to_internal: dict[str, str] = {}
        self._internal_to_short: dict[str, str] = {}
        for short, internal in sorted((mapping or {}).items()):
            self._put(short, internal)

    def _put(self, short: str, internal: str) -> None:
        self._short_to_internal[short] = internal
        self._internal_to_short[internal] = short

    def __len__(self) -> int:
        return len(self._short_to_internal)

    def __contains__(self, internal_id: object) -> bool:
        return internal_id in self._internal_to_short

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IDMapper):
            return NotImplemented
        return self._short_to_internal == other._short_to_internal

    def as_dict(self) -> dict[str, str]:
        """The table as a sorted ``short -> internal`` dict."""
        return dict(sorted(self._short_to_internal.items()))

    def _derive(self, internal_id: str) -> str:
        digest = _base36_digest(internal_id)
        for length in range(MIN_SHORT_LENGTH, DIGEST_LENGTH + 1):
            candidate = digest[:length]
            owner = self._short_to_internal.get(candidate)
            if owner is None or owner == internal_id:
                return candidate
        raise IdentifierExhausted(
            f"Cannot derive a unique display id for {internal_id}", source=internal_id
        )

    def allocate(self, internal_id: str) -> str:
        """
        Return the short id for ``internal_id``, allocating one if needed.

        Raises:
            ValueError: If ``internal_id`` is not a well-formed internal id.
            IdentifierExhausted: If every prefix of the digest is taken.
        """
        if not INTERNAL_ID_PATTERN.match(internal_id):
            raise ValueError(f"Not an internal id: {internal_id!r}")
        existing = self._internal_to_short.get(internal_id)
        if existing is not None:
            return existing
        short = self._derive(internal_id)
        self._put(short, internal_id)
        logger.debug("Allocated display id %s for %s", short, internal_id)
        return short

    def display(self, internal_id: str) -> str:
        """Prefixed display id, e.g. ``bd-a1b2``."""
        short = self._internal_to_short.get(internal_id)
        if short is None:
            raise UnknownIdentifier(f"No display id for {internal_id}", source=internal_id)
        return f"{self.prefix}-{short}" if self.prefix else short

    def resolve(self, identifier: str) -> str:
        """
        Resolve a display id (prefixed or bare) or an internal id.

        Raises:
            UnknownIdentifier: If nothing matches.
        """
        text = identifier.strip().lower()
        if INTERNAL_ID_PATTERN.match(text):
            if text in self._internal_to_short:
                return text
            raise UnknownIdentifier(f"Unknown issue id: {identifier}", source=identifier)

        if self.prefix and text.startswith(f"{self.prefix}-"):
            text = text[len(self.prefix) + 1 :]
        internal = self._short_to_internal.get(text)
        if internal is None:
            raise UnknownIdentifier(f"Unknown issue id: {identifier}", source=identifier)
        return internal

    def reconcile(self, internal_ids: Iterable[str]) -> list[str]:
        """
        Allocate short ids for records that have none.

        Ids are processed in sorted order so replicas agree.

        Returns:
            The internal ids that were newly mapped.
        """
        added = []
        for internal_id in sorted(set(internal_ids)):
            if internal_id not in self._internal_to_short:
                self.allocate(internal_id)
                added.append(internal_id)
        return added

    def merge(self, other: IDMapper, base: IDMapper | None = None) -> IDMapper:
        """
        Union of two tables.

        The result does not depend on argument order. A pairing that is in
        ``base`` and still in either table was registered first and keeps its
        short id. Every other internal id keeps one of the short ids it
        already had (shortest first) unless an earlier-sorting internal id
        claims it; ids left without a short id are then re-derived at a
        longer length.

        Args:
            other: The table to merge with
            base: The table both sides started from, if known
        """
        candidates: dict[str, set[str]] = {}
        for table in (self, other):
            for short, internal in table._short_to_internal.items():
                candidates.setdefault(internal, set()).add(short)

        merged = IDMapper(prefix=self.prefix)
        if base is not None:
            for short, internal in sorted(base._short_to_internal.items()):
                if short in candidates.get(internal, ()):
                    merged._put(short, internal)

        unplaced = []
        for internal in sorted(candidates):
            if internal in merged._internal_to_short:
                continue
            for short in sorted(candidates[internal], key=lambda s: (len(s), s)):
                if short not in merged._short_to_internal:
                    merged._put(short, internal)
                    break
            else:
                unplaced.append(internal)

        for internal in unplaced:
            new_short = merged._derive(internal)
            logger.info(
                "Display id collision: %s re-allocated as %s", internal, new_short
            )
            merged._put(new_short, internal)
        return merged

    # Serialization

    def dumps(self) -> str:
        """YAML form of the table, keys sorted."""
        return yaml.safe_dump(self.as_dict(), sort_keys=True, default_flow_style=False)

    @classmethod
    def loads(cls, text: str, prefix: str = DEFAULT_PREFIX) -> IDMapper:
        """
        Parse a table from YAML.

        Raises:
            ValueError: If the YAML is not a mapping of strings.
        """
        data = yaml.safe_load(text) if text.strip() else {}
        if data is None:
            data = {}
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise ValueError("ID mapping must be a mapping of short id to internal id")
        return cls(data, prefix=prefix)

    @classmethod
    def load(cls, path: Path, prefix: str = DEFAULT_PREFIX) -> IDMapper:
        """Load a table from disk; a missing file is an empty table."""
        if not path.exists():
            return cls(prefix=prefix)
        return cls.loads(path.read_text(encoding="utf-8"), prefix=prefix)

    def save(self, path: Path) -> None:
        """Write the table to disk."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps(), encoding="utf-8")
