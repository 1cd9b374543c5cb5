"""Tests for the deterministic plaintext checksum."""

import hashlib

from bookvault.checksum import (
    build_checksum_meta,
    canonical_entry,
    canonical_json,
    compute_checksum,
    per_type_counts,
)


def _entries():
    return [
        canonical_entry("b2", "bookmark", {"url": "https://b.example", "tags": ["x"]}, 3),
        canonical_entry("b1", "bookmark", {"url": "https://a.example"}, 1),
        canonical_entry("s1", "space", {"name": "Work"}, 2),
    ]


class TestChecksum:
    def test_empty_set_hashes_empty_array(self):
        assert compute_checksum([]) == hashlib.sha256(b"[]").hexdigest()

    def test_independent_of_order(self):
        entries = _entries()
        assert compute_checksum(entries) == compute_checksum(list(reversed(entries)))

    def test_canonical_form_is_compact_and_sorted(self):
        text = canonical_json([canonical_entry("b1", "bookmark", {"z": 1, "a": 2}, 1)])
        assert text == '[{"data":{"a":2,"z":1},"recordId":"b1","recordType":"bookmark","version":1}]'

    def test_version_change_changes_checksum(self):
        entries = _entries()
        bumped = _entries()
        bumped[0]["version"] = 4
        assert compute_checksum(entries) != compute_checksum(bumped)

    def test_data_change_changes_checksum(self):
        entries = _entries()
        edited = _entries()
        edited[1]["data"]["url"] = "https://changed.example"
        assert compute_checksum(entries) != compute_checksum(edited)

    def test_missing_version_counts_as_zero(self):
        assert canonical_entry("b1", "bookmark", {}, None)["version"] == 0


class TestChecksumMeta:
    def test_per_type_counts_include_every_type(self):
        assert per_type_counts(_entries()) == {"bookmarks": 2, "spaces": 1, "pinnedViews": 0}

    def test_build_meta(self):
        meta = build_checksum_meta(_entries(), last_update="2024-01-01T00:00:00+00:00")
        assert meta.count == 3
        assert meta.checksum == compute_checksum(_entries())
        assert meta.last_update == "2024-01-01T00:00:00+00:00"
        assert meta.per_type_counts["bookmarks"] == 2
