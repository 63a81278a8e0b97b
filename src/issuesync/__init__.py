"""
issuesync - peer-to-peer issue record synchronization over git.

Keeps independent clones of a repository converging on one set of issue
records stored on a dedicated branch, resolving concurrent edits with a
deterministic last-writer-wins rule and archiving every losing edit.
"""

__version__ = "0.3.0"

# Re-export core models for convenience
from issuesync.core.config.models import IssueSyncConfig
from issuesync.core.records.models import IssueKind, IssueRecord, IssueStatus

__all__ = ["IssueSyncConfig", "IssueRecord", "IssueStatus", "IssueKind", "__version__"]
