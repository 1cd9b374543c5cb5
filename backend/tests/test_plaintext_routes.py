"""Tests for checksum, import and retire on the plaintext store."""

import hashlib

from app.database import RECORDS_TABLE

from bookvault.checksum import canonical_entry, compute_checksum


def import_records(client, headers, records):
    return client.post("/sync/plaintext/import", json={"records": records}, headers=headers)


def rec(record_id, record_type="bookmark", deleted=False, **data):
    return {
        "recordId": record_id,
        "recordType": record_type,
        "data": {"id": record_id, **data},
        "deleted": deleted,
    }


class TestChecksum:
    def test_empty_dataset(self, client, auth_headers):
        body = client.get("/sync/plaintext/checksum", headers=auth_headers).json()
        assert body["checksum"] == hashlib.sha256(b"[]").hexdigest()
        assert body["count"] == 0
        assert body["perTypeCounts"] == {"bookmarks": 0, "spaces": 0, "pinnedViews": 0}

    def test_matches_client_checksum(self, client, auth_headers):
        import_records(client, auth_headers, [rec("b2", title="two"), rec("b1", title="one")])
        body = client.get("/sync/plaintext/checksum", headers=auth_headers).json()
        expected = compute_checksum(
            [
                canonical_entry("b1", "bookmark", {"id": "b1", "title": "one"}, 1),
                canonical_entry("b2", "bookmark", {"id": "b2", "title": "two"}, 1),
            ]
        )
        assert body["checksum"] == expected
        assert body["count"] == 2
        assert body["lastUpdate"] is not None

    def test_independent_of_insertion_order(self, client, auth_headers, other_auth_headers):
        a = [rec("b1", title="x"), rec("b2", title="y"), rec("s1", "space", name="z")]
        import_records(client, auth_headers, a)
        import_records(client, other_auth_headers, list(reversed(a)))
        first = client.get("/sync/plaintext/checksum", headers=auth_headers).json()
        second = client.get("/sync/plaintext/checksum", headers=other_auth_headers).json()
        assert first["checksum"] == second["checksum"]

    def test_changes_when_a_record_changes(self, client, auth_headers):
        import_records(client, auth_headers, [rec("b1", title="x")])
        before = client.get("/sync/plaintext/checksum", headers=auth_headers).json()["checksum"]
        import_records(client, auth_headers, [rec("b1", title="changed")])
        after = client.get("/sync/plaintext/checksum", headers=auth_headers).json()["checksum"]
        assert before != after

    def test_deleted_records_are_excluded(self, client, auth_headers):
        import_records(client, auth_headers, [rec("b1"), rec("b2", deleted=True), rec("v1", "pinned-view")])
        body = client.get("/sync/plaintext/checksum", headers=auth_headers).json()
        assert body["count"] == 2
        assert body["perTypeCounts"] == {"bookmarks": 1, "spaces": 0, "pinnedViews": 1}


class TestImport:
    def test_import_assigns_versions(self, client, auth_headers):
        body = import_records(client, auth_headers, [rec("b1"), rec("b2")]).json()
        assert body["imported"] == 2
        assert {r["recordId"]: r["version"] for r in body["results"]} == {"b1": 1, "b2": 1}

    def test_reimport_is_idempotent(self, client, auth_headers, fake_db):
        import_records(client, auth_headers, [rec("b1", title="same")])
        body = import_records(client, auth_headers, [rec("b1", title="same")]).json()
        assert body["results"][0]["version"] == 1
        assert len(fake_db.rows(RECORDS_TABLE, record_id="b1")) == 1

    def test_changed_content_bumps_version(self, client, auth_headers):
        import_records(client, auth_headers, [rec("b1", title="old")])
        body = import_records(client, auth_headers, [rec("b1", title="new")]).json()
        assert body["results"][0]["version"] == 2

    def test_batch_over_100_is_rejected(self, client, auth_headers):
        response = import_records(client, auth_headers, [rec(f"b{i}") for i in range(101)])
        assert response.status_code == 400


class TestRetire:
    def test_retire_tombstones_live_plaintext_rows(self, client, auth_headers, fake_db):
        import_records(client, auth_headers, [rec("b1"), rec("b2"), rec("b3", deleted=True)])
        body = client.post("/sync/plaintext/retire", headers=auth_headers).json()
        assert body["retired"] == 2
        rows = fake_db.rows(RECORDS_TABLE, encrypted=False)
        assert all(r["deleted"] for r in rows)
        assert {r["record_id"]: r["version"] for r in rows} == {"b1": 2, "b2": 2, "b3": 1}
        assert client.get("/sync/plaintext/checksum", headers=auth_headers).json()["count"] == 0

    def test_retired_rows_reach_other_devices_via_pull(self, client, auth_headers):
        import_records(client, auth_headers, [rec("b1")])
        cursor = client.get("/sync/plaintext/pull", headers=auth_headers).json()["nextCursor"]
        client.post("/sync/plaintext/retire", headers=auth_headers)
        body = client.get("/sync/plaintext/pull", params={"cursor": cursor}, headers=auth_headers).json()
        assert [(r["recordId"], r["deleted"]) for r in body["records"]] == [("b1", True)]


class TestSettings:
    def test_defaults(self, client, auth_headers):
        body = client.get("/sync/settings", headers=auth_headers).json()
        assert body == {"syncEnabled": False, "syncMode": "off", "lastSyncAt": None}

    def test_update(self, client, auth_headers):
        body = client.put(
            "/sync/settings", json={"syncEnabled": True, "syncMode": "plaintext"}, headers=auth_headers
        ).json()
        assert body["syncEnabled"] is True
        assert body["syncMode"] == "plaintext"
        assert client.get("/sync/settings", headers=auth_headers).json()["syncMode"] == "plaintext"

    def test_partial_update_keeps_other_fields(self, client, auth_headers):
        client.put("/sync/settings", json={"syncMode": "plaintext"}, headers=auth_headers)
        body = client.put("/sync/settings", json={"syncEnabled": True}, headers=auth_headers).json()
        assert body["syncMode"] == "plaintext"

    def test_invalid_mode_rejected(self, client, auth_headers):
        response = client.put("/sync/settings", json={"syncMode": "cloud"}, headers=auth_headers)
        assert response.status_code == 422
