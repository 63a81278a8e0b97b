"""
Record serialization.

Each record is a Markdown file with YAML frontmatter. The frontmatter
holds every structured field; ``description`` forms the body and
``notes`` follow under a ``## Notes`` heading.

Body text is written as-is, so text the body cannot carry exactly
(surrounding whitespace, carriage returns, an empty string, or a
description containing a ``## Notes`` line) is kept in the frontmatter
instead, where YAML quoting preserves it.

Uses python-frontmatter for the file format and PyYAML (through
frontmatter's handler) with sorted keys so equal records always
serialize to identical bytes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import frontmatter  # type: ignore[import-untyped]
import yaml
from pydantic import ValidationError

from issuesync.core.records.models import IssueRecord, migrate_payload
from issuesync.core.sync.errors import CorruptRecord

NOTES_HEADING = "## Notes"
BODY_FIELDS = ("description", "notes")


def _has_heading(text: str) -> bool:
    return any(line.strip() == NOTES_HEADING for line in text.split("\n"))


def fits_body(key: str, text: str) -> bool:
    """Whether ``text`` survives a trip through the Markdown body unchanged."""
    if not text or text != text.strip() or "\r" in text:
        return False
    return key != "description" or not _has_heading(text)


def _split_body(body: str) -> tuple[str | None, str | None]:
    lines = body.split("\n")
    for index, line in enumerate(lines):
        if line.strip() == NOTES_HEADING:
            description = "\n".join(lines[:index]).strip("\n")
            notes = "\n".join(lines[index + 1 :]).strip("\n")
            return description or None, notes or None
    text = body.strip("\n")
    return text or None, None


def _join_body(description: str | None, notes: str | None) -> str:
    parts: list[str] = []
    if description:
        parts.append(description)
    if notes:
        parts.append(f"{NOTES_HEADING}\n\n{notes}")
    return "\n\n".join(parts)


def record_to_metadata(record: IssueRecord) -> dict[str, Any]:
    """Frontmatter dict for a record (body text and nulls removed)."""
    data = record.model_dump(mode="json", exclude_none=True)
    for key in BODY_FIELDS:
        if key in data and fits_body(key, data[key]):
            del data[key]
    return data


def dumps(record: IssueRecord) -> str:
    """Serialize a record to Markdown with YAML frontmatter."""
    body = {
        key: value
        for key in BODY_FIELDS
        if (value := getattr(record, key)) is not None and fits_body(key, value)
    }
    post = frontmatter.Post(_join_body(body.get("description"), body.get("notes")))
    post.metadata = record_to_metadata(record)
    return frontmatter.dumps(post, sort_keys=True) + "\n"


def loads(text: str, source: str = "<string>") -> IssueRecord:
    """
    Parse a record from its serialized form.

    Legacy payloads are migrated to the current schema before
    validation.

    Raises:
        CorruptRecord: If the text cannot be parsed or fails validation.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    try:
        post = frontmatter.loads(text)
    except yaml.YAMLError as e:
        raise CorruptRecord(f"Invalid frontmatter in {source}: {e}", source=source) from e

    if not isinstance(post.metadata, dict) or not post.metadata:
        raise CorruptRecord(f"Missing frontmatter in {source}", source=source)

    data = dict(post.metadata)
    body = dict(zip(BODY_FIELDS, _split_body(post.content)))
    for key, value in body.items():
        if value is None:
            continue
        if key in data:
            raise CorruptRecord(
                f"Field {key!r} is in both the frontmatter and the body ({source})",
                source=source,
            )
        data[key] = value

    try:
        return IssueRecord.model_validate(migrate_payload(data))
    except (ValidationError, ValueError) as e:
        raise CorruptRecord(f"Invalid record in {source}: {e}", source=source) from e


def load(path: Path) -> IssueRecord:
    """Read and parse a record file."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise CorruptRecord(f"Record file is not UTF-8: {path}", source=str(path)) from e
    return loads(text, source=str(path))
