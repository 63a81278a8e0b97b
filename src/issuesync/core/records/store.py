"""
Record storage in the private sync checkout.

The store is the surface issue commands use to read and change records.
It writes straight into the checkout's working files; the next sync
picks the changes up by comparing content hashes, so the store never
talks to git itself.

Every mutation bumps the record's version and is reported to the
registered mutation hooks (the sync service uses one to track dirty
records).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from issuesync.core.ids.generator import new_internal_id
from issuesync.core.ids.mapper import DEFAULT_PREFIX, IDMapper
from issuesync.core.records import codec
from issuesync.core.records.models import IssueRecord, utc_now
from issuesync.core.sync.errors import CorruptRecord, UnknownIdentifier
from issuesync.core.worktree.snapshot import ISSUES_DIR, MAPPINGS_FILE

logger = logging.getLogger(__name__)

MutationHook = Callable[[IssueRecord], None]


class RecordStore:
    """
    Read/write access to the records in a sync checkout.

    Example:
        >>> store = RecordStore(checkout_path)
        >>> record = store.create("Fix login bug", priority=1)
        >>> store.display_id(record.id)
        'bd-3k9x'
        >>> store.write(record.model_copy(update={"priority": 0}))
    """

    def __init__(
        self,
        root: Path,
        id_prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize store with a checkout directory.

        Args:
            root: Root of the sync checkout
            id_prefix: Display id prefix
            clock: Source of ``updated_at`` timestamps
        """
        self.root = Path(root)
        self.id_prefix = id_prefix
        self._clock = clock
        self._hooks: list[MutationHook] = []

    @property
    def issues_dir(self) -> Path:
        return self.root / ISSUES_DIR

    @property
    def mappings_path(self) -> Path:
        return self.root / MAPPINGS_FILE

    def on_mutation(self, hook: MutationHook) -> None:
        """Register a callback run after every create or write."""
        self._hooks.append(hook)

    def path_for(self, internal_id: str) -> Path:
        return self.issues_dir / f"{internal_id}.md"

    def mappings(self) -> IDMapper:
        return IDMapper.load(self.mappings_path, prefix=self.id_prefix)

    def resolve(self, identifier: str) -> str:
        """
        Resolve a display id or internal id to an internal id.

        Raises:
            UnknownIdentifier: If nothing matches.
        """
        try:
            return self.mappings().resolve(identifier)
        except UnknownIdentifier:
            candidate = identifier.strip().lower()
            if self.path_for(candidate).is_file():
                return candidate
            raise

    def display_id(self, internal_id: str) -> str:
        return self.mappings().display(internal_id)

    def read(self, identifier: str) -> IssueRecord:
        """
        Read one record by display or internal id.

        Raises:
            UnknownIdentifier: If no such record exists.
            CorruptRecord: If the record file is unreadable.
        """
        internal_id = self.resolve(identifier)
        path = self.path_for(internal_id)
        if not path.is_file():
            raise UnknownIdentifier(f"Issue not found: {identifier}", source=identifier)
        return codec.load(path)

    def list(self) -> list[IssueRecord]:
        """All readable records, ordered by id (creation order)."""
        records: list[IssueRecord] = []
        if not self.issues_dir.exists():
            return records
        for path in sorted(self.issues_dir.glob("*.md")):
            try:
                records.append(codec.load(path))
            except CorruptRecord as e:
                logger.warning("Skipping unreadable record %s: %s", path.name, e)
        return records

    def _save(self, record: IssueRecord) -> None:
        path = self.path_for(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(codec.dumps(record), encoding="utf-8")
            os.replace(temp_path, path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        for hook in self._hooks:
            hook(record)

    def create(self, title: str, **fields: Any) -> IssueRecord:
        """
        Create a new record at version 1 and allocate its display id.

        Args:
            title: Issue title
            **fields: Any other IssueRecord payload fields
        """
        now = self._clock()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        record = IssueRecord(id=new_internal_id(), version=1, title=title, **fields)

        mapper = self.mappings()
        mapper.allocate(record.id)
        mapper.save(self.mappings_path)

        self._save(record)
        logger.info("Created %s (%s)", mapper.display(record.id), record.id)
        return record

    def write(self, record: IssueRecord, touch: bool = True) -> IssueRecord:
        """
        Write a changed record, bumping its version past the stored one.

        Args:
            record: The record with its new payload
            touch: Whether to set ``updated_at`` to now

        Returns:
            The record as written.
        """
        path = self.path_for(record.id)
        version = record.version
        if path.is_file():
            try:
                version = max(version, codec.load(path).version)
            except CorruptRecord:
                logger.warning("Overwriting unreadable record %s", path.name)
        update: dict[str, Any] = {"version": version + 1}
        if touch:
            update["updated_at"] = self._clock()
        written = record.model_copy(update=update)
        self._save(written)
        logger.debug("Wrote %s v%d", written.id, written.version)
        return written
