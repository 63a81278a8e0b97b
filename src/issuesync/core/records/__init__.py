"""
Issue records: the model, its canonical hash, and its file format.

Example:
    >>> from issuesync.core.records import IssueRecord, ContentHasher
    >>> record = IssueRecord(id="is-01hx5zzkbkactav9wevgemmvrz", title="Fix bug")
    >>> ContentHasher.hash(record) == record.content_hash()
    True
"""

from .hashing import ContentHasher
from .models import (
    CURRENT_SCHEMA_VERSION,
    Dependency,
    IssueKind,
    IssueRecord,
    IssueStatus,
    migrate_payload,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "ContentHasher",
    "Dependency",
    "IssueKind",
    "IssueRecord",
    "IssueStatus",
    "migrate_payload",
]
