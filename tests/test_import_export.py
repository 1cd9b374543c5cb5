"""Tests for bookmark export files and importing them back."""

import json

import pytest

from bookvault.transfer import normalize_url, parse_bookmarks, plan_import
from bookvault.types import RecordType


def _write(path, data):
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


def _bm(url, id=None, title=None):
    return {"id": id or url.rsplit("/", 1)[-1], "url": url, "title": title or url}


class TestParse:
    @pytest.mark.parametrize(
        "text,message",
        [
            ("", "empty"),
            ("   \n", "empty"),
            ("{not json", "Invalid JSON"),
            ('{"url": "https://a.example"}', "array"),
            ('[{"title": "no url"}, 3]', "No valid bookmarks"),
        ],
    )
    def test_rejects_unusable_files(self, text, message):
        with pytest.raises(ValueError, match=message):
            parse_bookmarks(text)

    def test_counts_invalid_entries(self):
        text = json.dumps([_bm("https://a.example/1"), {"title": "missing url"}, "junk"])
        valid, invalid = parse_bookmarks(text)
        assert [b["url"] for b in valid] == ["https://a.example/1"]
        assert invalid == 2

    def test_fills_id_and_title(self):
        valid, _ = parse_bookmarks(json.dumps([{"url": "https://a.example"}]))
        assert valid[0]["id"]
        assert valid[0]["title"] == "https://a.example"
        assert valid[0]["tags"] == []

    def test_url_key_ignores_case_and_whitespace(self):
        assert normalize_url("  HTTPS://A.example/Path ") == normalize_url("https://a.example/path")


class TestPlan:
    def test_merge_skips_known_urls(self):
        existing = [_bm("https://a.example/1")]
        incoming = [_bm("HTTPS://A.example/1 ", id="x"), _bm("https://a.example/2")]
        to_save, to_delete, summary = plan_import(existing, incoming)
        assert [b["url"] for b in to_save] == ["https://a.example/2"]
        assert to_delete == []
        assert (summary.imported, summary.skipped, summary.duplicates) == (1, 1, 1)

    def test_merge_keep_reissues_taken_ids(self):
        existing = [_bm("https://a.example/1")]
        incoming = [_bm("https://a.example/1")]
        to_save, _, summary = plan_import(existing, incoming, duplicates="keep")
        assert summary.duplicates == 1
        assert summary.skipped == 0
        assert len(to_save) == 1
        assert to_save[0]["id"] != existing[0]["id"]

    def test_replace_dedupes_and_removes_missing(self):
        existing = [_bm("https://a.example/1"), _bm("https://a.example/2")]
        incoming = [_bm("https://a.example/2"), _bm("https://a.example/2", id="dup"), _bm("https://a.example/3")]
        to_save, to_delete, summary = plan_import(existing, incoming, mode="replace")
        assert [b["id"] for b in to_save] == ["2", "3"]
        assert to_delete == ["1"]
        assert (summary.imported, summary.duplicates, summary.removed) == (2, 1, 1)

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="mode"):
            plan_import([], [_bm("https://a.example/1")], mode="upsert")


class TestBookvault:
    def test_export_writes_live_bookmarks(self, make_bookvault, tmp_path):
        bv = make_bookvault("a")
        bv.add_bookmark("https://a.example", title="A", tags=["x"])
        gone = bv.add_bookmark("https://b.example")
        bv.delete(RecordType.BOOKMARK, gone.record_id)

        path = tmp_path / "out.json"
        exported = bv.export_bookmarks(path)
        on_disk = json.loads(path.read_text())
        assert on_disk == exported
        assert [b["title"] for b in on_disk] == ["A"]

    def test_round_trip_into_another_device(self, make_bookvault, tmp_path):
        source = make_bookvault("a")
        source.add_bookmark("https://a.example", title="A")
        source.add_bookmark("https://b.example", title="B")
        path = tmp_path / "out.json"
        source.export_bookmarks(path)

        target = make_bookvault("b")
        target.add_bookmark("https://a.example", title="Mine")
        summary = target.import_bookmarks(path)

        assert (summary.imported, summary.skipped) == (1, 1)
        titles = sorted(b["title"] for b in target.bookmarks())
        assert titles == ["B", "Mine"]
        # Imported bookmarks are queued for sync like any local edit
        assert target.store.outbox.size() == 2

    def test_replace_tombstones_dropped_bookmarks(self, make_bookvault, tmp_path):
        bv = make_bookvault("a")
        old = bv.add_bookmark("https://old.example")
        path = _write(tmp_path / "in.json", [{"url": "https://new.example", "title": "New"}, {"bad": 1}])

        summary = bv.import_bookmarks(path, mode="replace")

        assert (summary.imported, summary.removed, summary.invalid) == (1, 1, 1)
        assert [b["url"] for b in bv.bookmarks()] == ["https://new.example"]
        assert bv.store.get_record(RecordType.BOOKMARK, old.record_id).deleted

    def test_invalid_file_leaves_store_untouched(self, make_bookvault, tmp_path):
        bv = make_bookvault("a")
        bv.add_bookmark("https://a.example")
        with pytest.raises(ValueError):
            bv.import_bookmarks(_write(tmp_path / "bad.json", "[]"), mode="replace")
        assert len(bv.bookmarks()) == 1
