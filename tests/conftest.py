"""
Pytest fixtures and test configuration for bookvault client tests.
"""

import copy
import itertools
from typing import Any, Dict, List, Optional

import pytest

from bookvault.checksum import build_checksum_meta, canonical_entry
from bookvault.core import Bookvault
from bookvault.storage.sqlite import LocalRecordStore
from bookvault.storage.sync_engine import SyncEngine
from bookvault.types import (
    NetworkError,
    PullPage,
    PushAck,
    PushConflict,
    PushResult,
    Record,
    RemoteConflictError,
    SyncConfig,
    SyncMode,
    VerificationReport,
)
from bookvault.vault.envelope import KdfParams, VaultKeyEnvelope

# Small scrypt cost so envelope tests stay fast
CHEAP_KDF = KdfParams.scrypt(n=2**10)


class FakeRemote:
    """In-memory stand-in for RemoteClient with the server's CAS rules.

    Rows are keyed by ``(encrypted, record_type, record_id)`` so a plaintext
    and an encrypted copy of one record can coexist, as on the server.
    Set ``offline = True`` to make every call raise NetworkError.
    """

    def __init__(self):
        self.rows: Dict[tuple, Dict[str, Any]] = {}
        self.envelope: Optional[Dict[str, Any]] = None
        self.settings = {"syncEnabled": False, "syncMode": "plaintext", "lastSyncAt": None}
        self.offline = False
        self.calls: List[str] = []
        self._clock = itertools.count(1)

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.offline:
            raise NetworkError(f"{name}: backend unreachable")

    def _timestamp(self) -> str:
        n = next(self._clock)
        return f"2024-01-01T00:00:00.{n:06d}+00:00"

    def _write(self, encrypted, record_type, record_id, version, deleted, data=None, ciphertext=None):
        row = {
            "recordId": record_id,
            "recordType": record_type,
            "version": version,
            "deleted": deleted,
            "data": None if encrypted else copy.deepcopy(data),
            "ciphertext": ciphertext if encrypted else None,
            "updatedAt": self._timestamp(),
        }
        self.rows[(encrypted, record_type, record_id)] = row
        return row

    # --- helpers for tests ---

    def live(self, encrypted: bool) -> List[Dict[str, Any]]:
        return [r for (enc, _, _), r in self.rows.items() if enc == encrypted and not r["deleted"]]

    def seed(self, record_type, record_id, data=None, ciphertext=None, deleted=False, version=1):
        """Place a row as if another device had pushed it."""
        encrypted = ciphertext is not None
        return self._write(encrypted, record_type, record_id, version, deleted, data, ciphertext)

    # --- RemoteClient API ---

    def health(self) -> bool:
        self.calls.append("health")
        return not self.offline

    def push(self, operations, mode) -> PushResult:
        self._call("push")
        encrypted = SyncMode(mode) is SyncMode.E2E
        result = PushResult()
        for op in operations:
            key = (encrypted, op["recordType"], op["recordId"])
            existing = self.rows.get(key)
            if existing is None:
                version = 1
            elif existing["version"] == (op.get("baseVersion") or 0):
                version = existing["version"] + 1
            else:
                result.conflicts.append(
                    PushConflict(
                        record_id=op["recordId"],
                        record_type=op["recordType"],
                        server_version=existing["version"],
                        server_payload=copy.deepcopy(existing["data"]),
                        server_ciphertext=existing["ciphertext"],
                        server_deleted=existing["deleted"],
                    )
                )
                continue
            self._write(
                encrypted,
                op["recordType"],
                op["recordId"],
                version,
                bool(op.get("deleted", False)),
                op.get("data"),
                op.get("ciphertext"),
            )
            result.results.append(PushAck(op["recordId"], op["recordType"], version))
        return result

    def pull(self, mode, cursor=None, record_type=None, limit=100) -> PullPage:
        self._call("pull")
        encrypted = SyncMode(mode) is SyncMode.E2E
        rows = sorted(
            (
                r
                for (enc, rt, _), r in self.rows.items()
                if enc == encrypted
                and (record_type is None or rt == record_type)
                and (cursor is None or r["updatedAt"] > cursor)
            ),
            key=lambda r: (r["updatedAt"], r["recordId"]),
        )[:limit]
        records = [
            Record(
                record_id=r["recordId"],
                record_type=r["recordType"],
                payload=copy.deepcopy(r["data"]),
                ciphertext=r["ciphertext"],
                version=r["version"],
                deleted=r["deleted"],
                updated_at=r["updatedAt"],
            )
            for r in rows
        ]
        return PullPage(
            records=records,
            next_cursor=records[-1].updated_at if records else cursor,
            has_more=len(records) == limit,
        )

    def fetch_checksum(self):
        self._call("fetch_checksum")
        rows = self.live(encrypted=False)
        entries = [
            canonical_entry(r["recordId"], r["recordType"], r["data"], r["version"]) for r in rows
        ]
        return build_checksum_meta(entries, max((r["updatedAt"] for r in rows), default=None))

    def import_plaintext(self, records) -> List[PushAck]:
        self._call("import_plaintext")
        acks = []
        for rec in records:
            key = (False, rec["recordType"], rec["recordId"])
            deleted = bool(rec.get("deleted", False))
            existing = self.rows.get(key)
            if existing is None:
                row = self._write(False, rec["recordType"], rec["recordId"], 1, deleted, rec["data"])
            elif existing["data"] == rec["data"] and existing["deleted"] == deleted:
                row = existing
            else:
                row = self._write(
                    False, rec["recordType"], rec["recordId"], existing["version"] + 1, deleted, rec["data"]
                )
            acks.append(PushAck(row["recordId"], row["recordType"], row["version"]))
        return acks

    def retire_plaintext(self) -> int:
        self._call("retire_plaintext")
        live = self.live(encrypted=False)
        for r in live:
            self._write(False, r["recordType"], r["recordId"], r["version"] + 1, True, r["data"])
        return len(live)

    def get_settings(self):
        self._call("get_settings")
        return dict(self.settings)

    def update_settings(self, sync_enabled=None, sync_mode=None):
        self._call("update_settings")
        if sync_enabled is not None:
            self.settings["syncEnabled"] = sync_enabled
        if sync_mode is not None:
            self.settings["syncMode"] = SyncMode(sync_mode).value
        return dict(self.settings)

    def get_vault_status(self):
        self._call("get_vault_status")
        if self.envelope is None:
            return {"enabled": False}
        wrappers = self.envelope.get("recoveryWrappers") or []
        return {
            "enabled": True,
            "vault": {
                "vaultId": "vault-1",
                "recoveryCodesTotal": len(wrappers),
                "recoveryCodesRemaining": sum(1 for w in wrappers if not w.get("usedAt")),
            },
        }

    def create_vault(self, envelope: VaultKeyEnvelope) -> str:
        self._call("create_vault")
        if self.envelope is not None:
            raise RemoteConflictError(409, "Vault already exists")
        self.envelope = envelope.to_dict()
        self.settings.update(syncEnabled=True, syncMode="e2e")
        return "vault-1"

    def get_envelope(self) -> Optional[VaultKeyEnvelope]:
        self._call("get_envelope")
        return VaultKeyEnvelope.from_dict(self.envelope) if self.envelope else None

    def update_envelope(self, envelope: VaultKeyEnvelope) -> None:
        self._call("update_envelope")
        self.envelope = envelope.to_dict()

    def vault_disable(self, action: str):
        self._call(f"vault_disable:{action}")
        if action == "verify":
            return {"plaintextCount": len(self.live(False)), "encryptedCount": len(self.live(True))}
        if action == "delete-encrypted":
            doomed = [k for k in self.rows if k[0]]
            for key in doomed:
                del self.rows[key]
            return {"success": True, "deleted": len(doomed)}
        existed = self.envelope is not None
        self.envelope = None
        self.settings["syncMode"] = "plaintext"
        return {"success": True, "deleted": existed}

    def verify_plaintext(self, expected_count: int) -> VerificationReport:
        self._call("verify_plaintext")
        meta = self.fetch_checksum()
        return VerificationReport(
            verified=meta.count == expected_count,
            server_count=meta.count,
            expected_count=expected_count,
            server_checksum=meta.checksum,
        )

    def export_vault(self):
        self._call("export_vault")
        return {
            "version": 1,
            "envelope": self.envelope,
            "records": [dict(r) for (enc, _, _), r in self.rows.items() if enc],
        }

    def import_vault(self, records, mode="merge"):
        self._call("import_vault")
        imported = skipped = 0
        for rec in records:
            key = (True, rec["recordType"], rec["recordId"])
            if key in self.rows and mode == "merge":
                skipped += 1
                continue
            self.seed(rec["recordType"], rec["recordId"], ciphertext=rec["ciphertext"])
            imported += 1
        return {"imported": imported, "skipped": skipped, "mode": mode}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def bookvault_home(tmp_path, monkeypatch):
    """Keep credentials and stores out of the real home directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("BOOKVAULT_DATA_DIR", str(home))
    for var in ("BOOKVAULT_BACKEND_URL", "BOOKVAULT_AUTH_TOKEN", "BOOKVAULT_OWNER_ID", "BOOKVAULT_PASSPHRASE"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def config():
    return SyncConfig(debounce_seconds=0.01, periodic_interval=60.0, online_check_ttl=0.0)


@pytest.fixture
def store(tmp_path):
    """A plaintext-mode local store."""
    store = LocalRecordStore("test-owner", db_path=tmp_path / "store.db")
    store.set_sync_mode(SyncMode.PLAINTEXT)
    yield store
    store.close()


@pytest.fixture
def engine(store, remote, config):
    return SyncEngine(store, remote, config=config)


@pytest.fixture
def make_bookvault(tmp_path, remote, config):
    """Factory for Bookvault instances (devices) sharing one FakeRemote."""
    opened = []

    def _make(name="device", mode=SyncMode.PLAINTEXT, **kwargs):
        kwargs.setdefault("remote", remote)
        kwargs.setdefault("config", config)
        bv = Bookvault(owner_id="test-owner", db_path=tmp_path / f"{name}.db", **kwargs)
        bv.store.set_sync_mode(mode)
        opened.append(bv)
        return bv

    yield _make
    for bv in opened:
        bv.store.close()


@pytest.fixture
def bookmark_payload():
    return {"url": "https://example.com", "title": "Example", "tags": ["news", "daily"]}


@pytest.fixture
def cheap_kdf():
    return CHEAP_KDF
