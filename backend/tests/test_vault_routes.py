"""Tests for vault envelope storage, the disable steps and encrypted backup."""

from app.database import RECORDS_TABLE, VAULTS_TABLE

ENVELOPE = {
    "version": 1,
    "wrappedKey": "d3JhcHBlZA==",
    "salt": "c2FsdHNhbHRzYWx0c2FsdA==",
    "kdfParams": {"algorithm": "scrypt", "n": 1024, "r": 8, "p": 1, "saltLength": 16, "keyLength": 32},
    "recoveryWrappers": [
        {
            "codeHash": "abc",
            "salt": "c2FsdA==",
            "wrappedKey": "cmVj",
            "kdfParams": {"algorithm": "scrypt", "n": 1024, "r": 8, "p": 1},
            "usedAt": None,
        },
        {
            "codeHash": "def",
            "salt": "c2FsdA==",
            "wrappedKey": "cmVj",
            "kdfParams": {"algorithm": "scrypt", "n": 1024, "r": 8, "p": 1},
            "usedAt": "2024-01-01T00:00:00+00:00",
        },
    ],
}


def enable(client, headers, envelope=None):
    return client.post("/vault/enable", json=envelope or ENVELOPE, headers=headers)


def push_encrypted(client, headers, ids):
    ops = [{"recordId": i, "recordType": "bookmark", "baseVersion": None, "ciphertext": f"Y3Q{i}"} for i in ids]
    return client.post("/sync/push", json={"operations": ops}, headers=headers)


def import_plaintext(client, headers, ids):
    records = [{"recordId": i, "recordType": "bookmark", "data": {"id": i}} for i in ids]
    return client.post("/sync/plaintext/import", json={"records": records}, headers=headers)


class TestVaultEnable:
    def test_status_without_vault(self, client, auth_headers):
        body = client.get("/vault", headers=auth_headers).json()
        assert body["enabled"] is False
        assert body.get("vault") is None

    def test_enable_stores_envelope(self, client, auth_headers):
        response = enable(client, auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["vaultId"]

        envelope = client.get("/vault/envelope", headers=auth_headers).json()["envelope"]
        assert envelope["wrappedKey"] == ENVELOPE["wrappedKey"]
        assert envelope["kdfParams"]["n"] == 1024
        assert len(envelope["recoveryWrappers"]) == 2

    def test_enable_sets_sync_mode(self, client, auth_headers):
        enable(client, auth_headers)
        settings = client.get("/sync/settings", headers=auth_headers).json()
        assert settings["syncMode"] == "e2e"
        assert settings["syncEnabled"] is True

    def test_second_enable_conflicts(self, client, auth_headers):
        enable(client, auth_headers)
        response = enable(client, auth_headers)
        assert response.status_code == 409

    def test_status_counts_recovery_codes(self, client, auth_headers):
        enable(client, auth_headers)
        body = client.get("/vault", headers=auth_headers).json()
        assert body["enabled"] is True
        assert body["vault"]["recoveryCodesTotal"] == 2
        assert body["vault"]["recoveryCodesRemaining"] == 1

    def test_envelope_missing_is_404(self, client, auth_headers):
        assert client.get("/vault/envelope", headers=auth_headers).status_code == 404

    def test_malformed_envelope_rejected(self, client, auth_headers):
        bad = dict(ENVELOPE, kdfParams={"algorithm": "md5"})
        assert enable(client, auth_headers, bad).status_code == 422

    def test_put_envelope_replaces_it(self, client, auth_headers):
        enable(client, auth_headers)
        updated = dict(ENVELOPE, wrappedKey="bmV3LXdyYXA=", recoveryWrappers=[])
        response = client.put("/vault/envelope", json=updated, headers=auth_headers)
        assert response.status_code == 200
        envelope = client.get("/vault/envelope", headers=auth_headers).json()["envelope"]
        assert envelope["wrappedKey"] == "bmV3LXdyYXA="
        assert envelope["recoveryWrappers"] == []

    def test_put_envelope_without_vault_is_404(self, client, auth_headers):
        assert client.put("/vault/envelope", json=ENVELOPE, headers=auth_headers).status_code == 404


class TestVaultDisable:
    def test_verify_plaintext_counts_live_rows(self, client, auth_headers):
        import_plaintext(client, auth_headers, [f"b{i}" for i in range(10)])
        body = client.get(
            "/vault/disable/verify-plaintext", params={"expectedCount": 10}, headers=auth_headers
        ).json()
        assert body["verified"] is True
        assert body["serverCount"] == 10
        assert body["expectedCount"] == 10
        assert body["serverChecksum"]

    def test_verify_plaintext_mismatch(self, client, auth_headers):
        import_plaintext(client, auth_headers, [f"b{i}" for i in range(9)])
        body = client.get(
            "/vault/disable/verify-plaintext", params={"expectedCount": 10}, headers=auth_headers
        ).json()
        assert body["verified"] is False
        assert body["serverCount"] == 9

    def test_verify_plaintext_requires_expected_count(self, client, auth_headers):
        response = client.get("/vault/disable/verify-plaintext", headers=auth_headers)
        assert response.status_code == 400
        response = client.get(
            "/vault/disable/verify-plaintext", params={"expectedCount": -1}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_verify_action_reports_both_stores(self, client, auth_headers):
        push_encrypted(client, auth_headers, ["b1", "b2"])
        import_plaintext(client, auth_headers, ["b1"])
        body = client.post("/vault/disable", json={"action": "verify"}, headers=auth_headers).json()
        assert body["encryptedCount"] == 2
        assert body["plaintextCount"] == 1

    def test_delete_encrypted_only_removes_encrypted_rows(self, client, auth_headers, other_auth_headers, fake_db):
        push_encrypted(client, auth_headers, ["b1", "b2"])
        push_encrypted(client, other_auth_headers, ["b1"])
        import_plaintext(client, auth_headers, ["b1", "b2"])
        body = client.post("/vault/disable", json={"action": "delete-encrypted"}, headers=auth_headers).json()
        assert body["deleted"] == 2
        assert fake_db.rows(RECORDS_TABLE, owner_id="own_TEST_ONLY_000000", encrypted=True) == []
        assert len(fake_db.rows(RECORDS_TABLE, owner_id="own_TEST_ONLY_000000", encrypted=False)) == 2
        assert len(fake_db.rows(RECORDS_TABLE, owner_id="own_TEST_ONLY_111111", encrypted=True)) == 1

    def test_delete_vault_flips_mode_and_is_idempotent(self, client, auth_headers, fake_db):
        enable(client, auth_headers)
        first = client.post("/vault/disable", json={"action": "delete-vault"}, headers=auth_headers)
        assert first.status_code == 200
        assert fake_db.rows(VAULTS_TABLE) == []
        assert client.get("/sync/settings", headers=auth_headers).json()["syncMode"] == "plaintext"

        second = client.post("/vault/disable", json={"action": "delete-vault"}, headers=auth_headers)
        assert second.status_code == 200
        assert second.json()["deleted"] is False

    def test_unknown_action_rejected(self, client, auth_headers):
        response = client.post("/vault/disable", json={"action": "purge-everything"}, headers=auth_headers)
        assert response.status_code == 422


class TestExportImport:
    def test_export_requires_vault(self, client, auth_headers):
        assert client.get("/vault/export", headers=auth_headers).status_code == 404

    def test_export_contains_envelope_and_records(self, client, auth_headers):
        enable(client, auth_headers)
        push_encrypted(client, auth_headers, ["b1", "b2"])
        body = client.get("/vault/export", headers=auth_headers).json()
        assert body["envelope"]["wrappedKey"] == ENVELOPE["wrappedKey"]
        assert sorted(r["recordId"] for r in body["records"]) == ["b1", "b2"]
        assert all("ciphertext" in r for r in body["records"])

    def _import(self, client, headers, records, mode):
        return client.post("/vault/import", json={"records": records, "mode": mode}, headers=headers)

    def test_merge_keeps_existing_records(self, client, auth_headers, fake_db):
        enable(client, auth_headers)
        push_encrypted(client, auth_headers, ["b1"])
        records = [
            {"recordId": "b1", "recordType": "bookmark", "ciphertext": "b3RoZXI="},
            {"recordId": "b9", "recordType": "bookmark", "ciphertext": "bmV3"},
        ]
        body = self._import(client, auth_headers, records, "merge").json()
        assert body == {"imported": 1, "skipped": 1, "mode": "merge"}
        assert fake_db.rows(RECORDS_TABLE, record_id="b1")[0]["ciphertext"] == "Y3Qb1"

    def test_replace_overwrites_and_tombstones_the_rest(self, client, auth_headers, fake_db):
        enable(client, auth_headers)
        push_encrypted(client, auth_headers, ["b1", "b2"])
        records = [{"recordId": "b1", "recordType": "bookmark", "ciphertext": "cmVwbGFjZWQ="}]
        body = self._import(client, auth_headers, records, "replace").json()
        assert body["imported"] == 1
        b1 = fake_db.rows(RECORDS_TABLE, record_id="b1")[0]
        b2 = fake_db.rows(RECORDS_TABLE, record_id="b2")[0]
        assert (b1["ciphertext"], b1["version"], b1["deleted"]) == ("cmVwbGFjZWQ=", 2, False)
        assert (b2["version"], b2["deleted"]) == (2, True)

    def test_keep_both_adds_a_copy(self, client, auth_headers, fake_db):
        enable(client, auth_headers)
        push_encrypted(client, auth_headers, ["b1"])
        records = [{"recordId": "b1", "recordType": "bookmark", "ciphertext": "Y29weQ=="}]
        self._import(client, auth_headers, records, "keep-both")
        rows = fake_db.rows(RECORDS_TABLE, encrypted=True)
        assert len(rows) == 2
        copy_row = next(r for r in rows if r["record_id"] != "b1")
        assert copy_row["record_id"].startswith("b1-")
        assert copy_row["version"] == 1
