"""
Tests for canonical content hashing.

Tests cover:
- Stability across field, label and dependency ordering
- Text normalization (line endings, trailing whitespace)
- Omitted vs null optional fields
- Version exclusion and updated_at inclusion
- Raw payload hashing
"""

from datetime import timedelta, timezone

from conftest import OTHER_ID, T0

from issuesync.core.records.hashing import ContentHasher
from issuesync.core.records.models import Dependency, IssueRecord


class TestCanonicalForm:
    """Tests for what does and does not change the hash."""

    def test_hash_is_sha256_hex(self, sample_record):
        """Digest is a 64 character hex string."""
        digest = ContentHasher.hash(sample_record)

        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_hash_is_deterministic(self, sample_record):
        """Hashing the same record twice gives the same digest."""
        assert ContentHasher.hash(sample_record) == ContentHasher.hash(sample_record.model_copy())

    def test_label_order_does_not_matter(self, sample_record):
        """Labels are a set as far as the hash is concerned."""
        reordered = sample_record.model_copy(update={"labels": ["auth", "frontend"]})

        assert ContentHasher.hash(reordered) == ContentHasher.hash(sample_record)

    def test_dependency_order_does_not_matter(self, sample_record):
        """Dependencies are sorted before hashing."""
        a = Dependency(target=OTHER_ID)
        b = Dependency(target="is-01hx5zzkbkactav9wevgemmvs1")
        first = sample_record.model_copy(update={"dependencies": [a, b]})
        second = sample_record.model_copy(update={"dependencies": [b, a]})

        assert ContentHasher.hash(first) == ContentHasher.hash(second)

    def test_line_endings_do_not_matter(self, sample_record):
        """CRLF and LF bodies hash the same."""
        lf = sample_record.model_copy(update={"description": "line one\nline two"})
        crlf = sample_record.model_copy(update={"description": "line one\r\nline two"})

        assert ContentHasher.hash(lf) == ContentHasher.hash(crlf)

    def test_trailing_whitespace_does_not_matter(self, sample_record):
        """Trailing spaces and surrounding blank lines are ignored."""
        clean = sample_record.model_copy(update={"description": "line one\nline two"})
        messy = sample_record.model_copy(update={"description": "\nline one   \nline two\n\n"})

        assert ContentHasher.hash(clean) == ContentHasher.hash(messy)

    def test_omitted_and_null_fields_hash_the_same(self, sample_record):
        """An optional field set to None is the same as not setting it."""
        explicit = sample_record.model_copy(update={"assignee": None, "notes": None})

        assert ContentHasher.hash(explicit) == ContentHasher.hash(sample_record)

    def test_empty_body_is_same_as_missing(self, sample_record):
        """Empty description is the same as no description."""
        empty = sample_record.model_copy(update={"description": ""})
        missing = sample_record.model_copy(update={"description": None})

        assert ContentHasher.hash(empty) == ContentHasher.hash(missing)

    def test_version_is_excluded(self, sample_record):
        """Bumping only the version does not change the hash."""
        bumped = sample_record.with_version(7)

        assert ContentHasher.hash(bumped) == ContentHasher.hash(sample_record)

    def test_updated_at_is_included(self, sample_record):
        """updated_at is payload: changing it changes the hash."""
        touched = sample_record.model_copy(update={"updated_at": T0 + timedelta(seconds=1)})

        assert ContentHasher.hash(touched) != ContentHasher.hash(sample_record)

    def test_payload_change_changes_hash(self, sample_record):
        """Any payload field change produces a different digest."""
        changed = sample_record.model_copy(update={"title": "Fix another bug"})

        assert ContentHasher.hash(changed) != ContentHasher.hash(sample_record)

    def test_timezone_representation_does_not_matter(self, sample_record):
        """The same instant in another timezone hashes the same."""
        shifted = T0.astimezone(timezone(timedelta(hours=5)))
        other = IssueRecord.model_validate(
            {**sample_record.model_dump(), "updated_at": shifted}
        )

        assert ContentHasher.hash(other) == ContentHasher.hash(sample_record)


class TestHashPayload:
    """Tests for hashing raw payload dicts."""

    def test_payload_hash_matches_model_hash(self, sample_record):
        """A JSON-mode dump hashes the same as the model."""
        payload = sample_record.model_dump(mode="json", exclude_none=True)

        assert ContentHasher.hash_payload(payload) == ContentHasher.hash(sample_record)

    def test_legacy_payload_is_migrated_first(self, sample_record):
        """A schema-1 payload with a string priority hashes like its migrated form."""
        payload = sample_record.model_dump(mode="json", exclude_none=True)
        payload.pop("schema_version")
        payload["priority"] = "P2"

        assert ContentHasher.hash_payload(payload) == ContentHasher.hash(sample_record)

    def test_record_content_hash_shortcut(self, sample_record):
        """IssueRecord.content_hash delegates to the hasher."""
        assert sample_record.content_hash() == ContentHasher.hash(sample_record)
