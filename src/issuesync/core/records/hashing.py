"""
Content hashing for change detection and conflict tie-breaking.

The digest is SHA-256 over a canonical JSON rendering of a record's
payload. The canonical form does not depend on:

- field ordering in the source file
- label and dependency ordering
- line-ending style or trailing whitespace in text fields
- whether an optional field is omitted or written out as null

The version counter is bookkeeping and is excluded. ``updated_at`` is
payload: it is the last-writer-wins signal, so two payloads that differ
only in it must hash differently.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from issuesync.core.records.models import IssueRecord, migrate_payload

HASH_EXCLUDED_FIELDS = frozenset({"version"})


def _normalize_text(value: str) -> str:
    text = value.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip("\n")


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_timestamp(value)
    if isinstance(value, str):
        return _normalize_text(value)
    if isinstance(value, dict):
        return {k: _canonical_value(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    if hasattr(value, "value"):
        # Enum members
        return value.value
    return value


class ContentHasher:
    """
    Computes canonical content hashes for issue records.

    Stateless; all methods are static so callers can use the class
    directly.

    Example:
        >>> digest = ContentHasher.hash(record)
        >>> len(digest)
        64
    """

    @staticmethod
    def canonicalize(record: IssueRecord) -> str:
        """Return the canonical serialization that gets hashed."""
        data: dict[str, Any] = {}
        for key, value in record.model_dump(mode="python").items():
            if key in HASH_EXCLUDED_FIELDS or value is None:
                continue
            data[key] = _canonical_value(value)

        # Empty body text is the same as no body text
        for key in ("description", "notes"):
            if data.get(key) == "":
                del data[key]

        data["labels"] = sorted(data.get("labels", []))
        data["dependencies"] = sorted(
            data.get("dependencies", []),
            key=lambda dep: (dep["target"], dep["type"]),
        )

        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def hash(record: IssueRecord) -> str:
        """SHA-256 hex digest of the record's canonical payload."""
        canonical = ContentHasher.canonicalize(record)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def hash_payload(payload: dict[str, Any]) -> str:
        """
        Hash a raw payload dict.

        The payload is migrated and validated first, so a legacy or
        re-serialized payload hashes the same as its model form.

        Raises:
            pydantic.ValidationError: If the payload is not a valid record.
        """
        record = IssueRecord.model_validate(migrate_payload(payload))
        return ContentHasher.hash(record)
