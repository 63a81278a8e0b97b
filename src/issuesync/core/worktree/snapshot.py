"""
In-memory view of the sync branch content.

A Snapshot is what the worktree manager reads from a commit or from the
private checkout, and what it writes back as one commit. It parses the
branch layout:

    meta.yml
    issues/<internal_id>.md
    mappings/ids.yml
    attic/<internal_id>/v<version>-<hash8>.yml

Files that fail to parse are not dropped: their raw bytes are kept in
``raw`` and a RecordFailure is recorded, so a corrupt file is carried
forward untouched instead of being lost.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import yaml
from pydantic import ValidationError

from issuesync.core.ids.mapper import DEFAULT_PREFIX, IDMapper
from issuesync.core.records import codec
from issuesync.core.records.models import IssueRecord
from issuesync.core.sync.errors import CorruptRecord
from issuesync.core.sync.models import AtticEntry, RecordFailure

logger = logging.getLogger(__name__)

META_FILE = "meta.yml"
ISSUES_DIR = "issues"
MAPPINGS_FILE = "mappings/ids.yml"
ATTIC_DIR = "attic"

LAYOUT_VERSION = 1

_ISSUE_PATH = re.compile(r"^issues/(is-[0-9a-z]{26})\.md$")
_ATTIC_PATH = re.compile(r"^attic/(is-[0-9a-z]{26})/v(\d+)-([0-9a-f]{8})\.yml$")


def issue_path(internal_id: str) -> str:
    return f"{ISSUES_DIR}/{internal_id}.md"


def default_meta() -> dict[str, Any]:
    return {"layout_version": LAYOUT_VERSION}


def dump_attic_entry(entry: AtticEntry) -> bytes:
    data = entry.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump(data, sort_keys=True, allow_unicode=True).encode("utf-8")


def load_attic_entry(data: bytes, path: str) -> AtticEntry:
    """
    Parse an attic entry.

    Raises:
        CorruptRecord: If the entry cannot be parsed or does not match its path.
    """
    try:
        entry = AtticEntry.model_validate(yaml.safe_load(data.decode("utf-8")))
    except (yaml.YAMLError, UnicodeDecodeError, ValidationError) as e:
        raise CorruptRecord(f"Invalid attic entry {path}: {e}", source=path) from e
    if entry.path != path:
        raise CorruptRecord(
            f"Attic entry {entry.entry_id} stored at unexpected path {path}", source=path
        )
    return entry


@dataclass
class Snapshot:
    """
    Parsed content of one state of the sync branch.

    Attributes:
        commit: Commit the snapshot was read from (None for working files
            or an empty branch)
        records: Valid records by internal id
        attic: Attic entries by (internal id, superseded version, hash8)
        mappings: Display id table
        meta: Contents of meta.yml
        raw: Raw bytes of files that failed to parse, by path
        failures: Parse failures, one per file in ``raw``
    """

    commit: str | None = None
    records: dict[str, IssueRecord] = field(default_factory=dict)
    attic: dict[tuple[str, int, str], AtticEntry] = field(default_factory=dict)
    mappings: IDMapper = field(default_factory=IDMapper)
    meta: dict[str, Any] = field(default_factory=default_meta)
    raw: dict[str, bytes] = field(default_factory=dict)
    failures: list[RecordFailure] = field(default_factory=list)

    @classmethod
    def empty(cls, prefix: str = DEFAULT_PREFIX) -> Snapshot:
        return cls(mappings=IDMapper(prefix=prefix))

    @classmethod
    def from_files(
        cls,
        files: dict[str, bytes],
        commit: str | None = None,
        side: str = "local",
        prefix: str = DEFAULT_PREFIX,
    ) -> Snapshot:
        """
        Parse a ``path -> bytes`` map into a snapshot.

        Unknown paths are ignored. Parse errors never raise; they are
        recorded in ``failures`` with the bytes kept in ``raw``.
        """
        snapshot = cls(commit=commit, mappings=IDMapper(prefix=prefix))

        def fail(path: str, message: str, internal_id: str | None = None) -> None:
            logger.warning("Skipping corrupt %s file %s: %s", side, path, message)
            snapshot.raw[path] = files[path]
            snapshot.failures.append(
                RecordFailure(internal_id=internal_id, path=path, side=side, message=message)
            )

        for path in sorted(files):
            data = files[path]
            if path == META_FILE:
                try:
                    meta = yaml.safe_load(data.decode("utf-8")) or {}
                except (yaml.YAMLError, UnicodeDecodeError) as e:
                    fail(path, f"Invalid meta file: {e}")
                    continue
                if isinstance(meta, dict):
                    snapshot.meta = meta
                else:
                    fail(path, "meta.yml is not a mapping")
            elif path == MAPPINGS_FILE:
                try:
                    snapshot.mappings = IDMapper.loads(data.decode("utf-8"), prefix=prefix)
                except (yaml.YAMLError, UnicodeDecodeError, ValueError) as e:
                    fail(path, f"Invalid id mapping: {e}")
            elif match := _ISSUE_PATH.match(path):
                internal_id = match.group(1)
                try:
                    record = codec.loads(data.decode("utf-8"), source=path)
                except UnicodeDecodeError:
                    fail(path, "Record file is not UTF-8", internal_id)
                    continue
                except CorruptRecord as e:
                    fail(path, str(e), internal_id)
                    continue
                if record.id != internal_id:
                    fail(path, f"Record id {record.id} does not match its path", internal_id)
                    continue
                snapshot.records[internal_id] = record
            elif _ATTIC_PATH.match(path):
                try:
                    entry = load_attic_entry(data, path)
                except CorruptRecord as e:
                    fail(path, str(e))
                    continue
                snapshot.attic[entry.key] = entry

        return snapshot

    def to_files(self) -> dict[str, bytes]:
        """Serialize to a ``path -> bytes`` map ready to commit."""
        files: dict[str, bytes] = dict(self.raw)
        files[META_FILE] = yaml.safe_dump(self.meta, sort_keys=True).encode("utf-8")
        if len(self.mappings):
            files[MAPPINGS_FILE] = self.mappings.dumps().encode("utf-8")
        for internal_id, record in self.records.items():
            files[issue_path(internal_id)] = codec.dumps(record).encode("utf-8")
        for entry in self.attic.values():
            files[entry.path] = dump_attic_entry(entry)
        return dict(sorted(files.items()))

    def corrupt_ids(self) -> set[str]:
        """Ids whose record file is present but unreadable."""
        return {f.internal_id for f in self.failures if f.internal_id is not None}
