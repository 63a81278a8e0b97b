"""
Record identifiers.

Public API:
    - new_internal_id: Generate a time-sortable internal id (is-{ulid})
    - IDMapper: Short display id <-> internal id table

Example:
    >>> from issuesync.core.ids import IDMapper, new_internal_id
    >>> mapper = IDMapper(prefix="bd")
    >>> internal_id = new_internal_id()
    >>> mapper.allocate(internal_id)
    'k3x9'
"""

from .generator import new_internal_id, new_ulid
from .mapper import IDMapper

__all__ = ["IDMapper", "new_internal_id", "new_ulid"]
