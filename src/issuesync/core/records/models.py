"""
Issue record data models.

Defines the IssueRecord model and its enums. Records are the unit of
synchronization: one record per file on the sync branch, compared and
resolved as a whole.

The schema is closed (unknown fields are rejected) and versioned. Raw
payloads written by older releases are upgraded through
``migrate_payload`` before validation, so the content hasher never has
to deal with fields it does not know.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

CURRENT_SCHEMA_VERSION = 2

INTERNAL_ID_PATTERN = re.compile(r"^is-[0-9a-z]{26}$")


class IssueStatus(str, Enum):
    """Issue status values."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class IssueKind(str, Enum):
    """Issue kind values."""

    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


class Dependency(BaseModel):
    """A 'blocks' relationship to another issue."""

    type: Literal["blocks"] = "blocks"
    target: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        if not INTERNAL_ID_PATTERN.match(v):
            raise ValueError(f"Dependency target must be an internal id: {v!r}")
        return v


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class IssueRecord(BaseModel):
    """
    A synchronized issue record.

    ``version`` is bookkeeping: it is bumped on every committed mutation
    and is not part of the content hash. Everything else, including
    ``updated_at``, is payload.

    Example:
        >>> record = IssueRecord(
        ...     id="is-01hx5zzkbkactav9wevgemmvrz",
        ...     title="Fix bug",
        ...     version=1,
        ... )
        >>> record.status
        <IssueStatus.OPEN: 'open'>
    """

    type: Literal["is"] = "is"
    id: str = Field(..., description="Internal id (is-{ulid})")
    version: int = Field(default=1, ge=0, description="Edit counter, bumped per mutation")
    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, description="Record schema")

    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(default=None, max_length=50000)
    notes: str | None = Field(default=None, max_length=50000)

    kind: IssueKind = Field(default=IssueKind.TASK)
    status: IssueStatus = Field(default=IssueStatus.OPEN)
    priority: int = Field(default=2, ge=0, le=4, description="0 = critical, 4 = backlog")

    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    parent_id: str | None = None

    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    closed_at: datetime | None = None
    close_reason: str | None = None
    due_date: datetime | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate the internal id shape."""
        if not INTERNAL_ID_PATTERN.match(v):
            raise ValueError(f"Invalid internal id: {v!r}")
        return v

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        if v != CURRENT_SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported schema_version {v} (expected {CURRENT_SCHEMA_VERSION}); "
                "run the payload through migrate_payload() first"
            )
        return v

    @field_validator("created_at", "updated_at", "closed_at", "due_date")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are taken to be UTC."""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def content_hash(self) -> str:
        """Canonical content hash of this record's payload."""
        from issuesync.core.records.hashing import ContentHasher

        return ContentHasher.hash(self)

    def with_version(self, version: int) -> IssueRecord:
        """Copy of this record carrying a different version counter."""
        return self.model_copy(update={"version": version})


# Migrations: each entry upgrades a raw payload from version N to N + 1.


def _migrate_1_to_2(data: dict[str, Any]) -> dict[str, Any]:
    """Legacy (unversioned) payloads: normalize loose fields."""
    result = dict(data)

    priority = result.get("priority")
    if isinstance(priority, str):
        text = priority.strip().upper()
        if text.startswith("P"):
            text = text[1:]
        if not text.isdigit():
            raise ValueError(f"Unrecognized legacy priority: {priority!r}")
        result["priority"] = int(text)

    for key in ("labels", "dependencies"):
        if key in result and result[key] is None:
            result[key] = []

    if "extensions" in result:
        extensions = result.pop("extensions")
        if extensions:
            raise ValueError(
                "Legacy 'extensions' data is not supported by the record schema"
            )

    result["schema_version"] = 2
    return result


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_1_to_2,
}


def migrate_payload(data: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade a raw record payload to the current schema version.

    Payloads without a ``schema_version`` key are schema 1.

    Raises:
        ValueError: If the payload is newer than this release understands
            or a migration step rejects it.
    """
    version = data.get("schema_version", 1)
    if not isinstance(version, int):
        raise ValueError(f"Invalid schema_version: {version!r}")
    if version > CURRENT_SCHEMA_VERSION:
        raise ValueError(
            f"Record schema_version {version} is newer than supported "
            f"({CURRENT_SCHEMA_VERSION})"
        )

    result = dict(data)
    while version < CURRENT_SCHEMA_VERSION:
        result = MIGRATIONS[version](result)
        version = result["schema_version"]
    return result
