"""
Local record store backed by SQLite.

One database file per owner. Local mutations write the record row and
enqueue an outbox entry in the same transaction, so a crash can never
leave a change that is stored but not queued (or vice versa).

In e2e mode the store keeps only ciphertext on disk; decrypted payloads
live in a volatile in-memory cache that is dropped when the vault locks.
Derived state (tag index, per-type counts) is cached and rebuilt only
after ``invalidate()``.
"""

import contextlib
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from bookvault.records import HANDLERS, get_handler, new_record_id
from bookvault.types import Record, RecordType, SyncMode, utc_now
from bookvault.utils import get_bookvault_home, safe_filename
from bookvault.vault.session import VaultSession

from .outbox import Outbox
from .schema import init_db

logger = logging.getLogger(__name__)

SYNC_MODE_KEY = "sync_mode"


class LocalRecordStore:
    """Offline-first store of bookmarks, spaces and pinned views.

    Args:
        owner_id: Identity of the signed-in user; selects the database file.
        db_path: Explicit database path (defaults to ~/.bookvault/stores/<owner>.db).
        session: Vault session used to encrypt/decrypt in e2e mode.
    """

    def __init__(
        self,
        owner_id: str,
        db_path: Optional[Path] = None,
        session: Optional[VaultSession] = None,
    ):
        self.owner_id = owner_id
        if db_path is None:
            db_path = get_bookvault_home() / "stores" / f"{safe_filename(owner_id)}.db"
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.session = session or VaultSession()
        self.outbox = Outbox(self)

        self._cache_lock = threading.RLock()
        self._tag_index: Optional[Dict[str, List[str]]] = None
        self._counts: Optional[Dict[str, int]] = None
        self._decrypted: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._invalidation_listeners: List[Callable[[], None]] = []
        self._mutation_listeners: List[Callable[[], None]] = []

        self.session.on_lock(self.clear_decrypted_cache)

        with self._connect() as conn:
            init_db(conn)

    # === Connection handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        Commits on success, rolls back on exception, always closes.
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _now(self) -> str:
        return utc_now()

    def _to_json(self, data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data, sort_keys=True)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    # === Sync metadata ===

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: Optional[str], conn: Optional[sqlite3.Connection] = None) -> None:
        """Set (or with ``value=None`` delete) a sync_meta entry."""
        if conn is None:
            with self._connect() as own_conn:
                self.set_meta(key, value, conn=own_conn)
            return
        if value is None:
            conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
        else:
            conn.execute(
                """INSERT INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, value, self._now()),
            )

    def get_meta_json(self, key: str) -> Any:
        return self._from_json(self.get_meta(key))

    def set_meta_json(self, key: str, value: Any) -> None:
        self.set_meta(key, self._to_json(value))

    @property
    def sync_mode(self) -> SyncMode:
        return SyncMode(self.get_meta(SYNC_MODE_KEY, SyncMode.OFF.value))

    def set_sync_mode(self, mode: SyncMode) -> None:
        self.set_meta(SYNC_MODE_KEY, SyncMode(mode).value)
        logger.info(f"Sync mode set to {SyncMode(mode).value}")

    # === Row helpers ===

    def _payload_for_row(self, row: sqlite3.Row) -> Optional[Dict[str, Any]]:
        """Plaintext payload of a row, decrypting (and caching) if needed.

        Raises:
            VaultLockedError: Row is ciphertext-only and the session is locked.
        """
        if row["payload"] is not None:
            return self._from_json(row["payload"])
        if row["ciphertext"] is None:
            return None
        cache_key = (row["record_type"], row["record_id"])
        with self._cache_lock:
            cached = self._decrypted.get(cache_key)
        if cached is not None:
            return dict(cached)
        payload = self.session.decrypt(row["ciphertext"])
        with self._cache_lock:
            self._decrypted[cache_key] = payload
        return dict(payload)

    def _row_to_record(self, row: sqlite3.Row, decrypt: bool = True) -> Record:
        payload = self._payload_for_row(row) if decrypt else self._from_json(row["payload"])
        return Record(
            record_id=row["record_id"],
            record_type=row["record_type"],
            payload=payload,
            ciphertext=row["ciphertext"],
            version=row["version"],
            deleted=bool(row["deleted"]),
            updated_at=row["updated_at"],
        )

    def _write_remote(self, conn: sqlite3.Connection, remote: Record) -> None:
        conn.execute(
            """INSERT INTO records
               (record_type, record_id, version, deleted, payload, ciphertext,
                updated_at, local_updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(record_type, record_id) DO UPDATE SET
                   version = excluded.version,
                   deleted = excluded.deleted,
                   payload = excluded.payload,
                   ciphertext = excluded.ciphertext,
                   updated_at = excluded.updated_at,
                   local_updated_at = excluded.local_updated_at""",
            (
                remote.record_type,
                remote.record_id,
                remote.version,
                1 if remote.deleted else 0,
                self._to_json(remote.payload),
                remote.ciphertext,
                remote.updated_at,
                self._now(),
            ),
        )
        self.forget_decrypted(remote.record_type, remote.record_id)

    # === Local mutations ===

    def save_record(
        self, record_type, payload: Dict[str, Any], record_id: Optional[str] = None
    ) -> Record:
        """Create or update a record and queue it for sync.

        In e2e mode the record is encrypted before anything touches disk and
        no plaintext is persisted.

        Raises:
            ValueError: Invalid payload for the record type.
            VaultLockedError: e2e mode with a locked session.
        """
        handler = get_handler(record_type)
        rt = handler.record_type.value
        payload = dict(payload)
        record_id = record_id or payload.get("id") or new_record_id()
        now = self._now()
        payload["id"] = record_id
        payload.setdefault("createdAt", now)
        payload["updatedAt"] = now
        payload = handler.normalize(payload)

        encrypted = self.sync_mode is SyncMode.E2E
        ciphertext = self.session.encrypt(payload) if encrypted else None
        stored_payload = None if encrypted else self._to_json(payload)

        with self._connect() as conn:
            existing = conn.execute(
                "SELECT version FROM records WHERE record_type = ? AND record_id = ?",
                (rt, record_id),
            ).fetchone()
            version = existing["version"] if existing else None
            conn.execute(
                """INSERT INTO records
                   (record_type, record_id, version, deleted, payload, ciphertext, local_updated_at)
                   VALUES (?, ?, NULL, 0, ?, ?, ?)
                   ON CONFLICT(record_type, record_id) DO UPDATE SET
                       deleted = 0,
                       payload = excluded.payload,
                       ciphertext = excluded.ciphertext,
                       local_updated_at = excluded.local_updated_at""",
                (rt, record_id, stored_payload, ciphertext, now),
            )
            self.outbox.enqueue(
                rt,
                record_id,
                version,
                payload=None if encrypted else payload,
                ciphertext=ciphertext,
                conn=conn,
            )

        if encrypted:
            with self._cache_lock:
                self._decrypted[(rt, record_id)] = payload
        self._after_mutation()
        return Record(
            record_id=record_id,
            record_type=rt,
            payload=payload,
            ciphertext=ciphertext,
            version=version,
        )

    def delete_record(self, record_type, record_id: str) -> bool:
        """Tombstone a record and queue the deletion. Returns False if absent."""
        handler = get_handler(record_type)
        rt = handler.record_type.value
        current = self.get_record(rt, record_id)
        if current is None or current.deleted:
            return False

        tombstone = handler.apply_tombstone(current.payload, record_id)
        encrypted = self.sync_mode is SyncMode.E2E
        ciphertext = self.session.encrypt(tombstone) if encrypted else None

        with self._connect() as conn:
            conn.execute(
                """UPDATE records SET deleted = 1, payload = ?, ciphertext = ?, local_updated_at = ?
                   WHERE record_type = ? AND record_id = ?""",
                (None if encrypted else self._to_json(tombstone), ciphertext, self._now(), rt, record_id),
            )
            self.outbox.enqueue(
                rt,
                record_id,
                current.version,
                payload=None if encrypted else tombstone,
                ciphertext=ciphertext,
                deleted=True,
                conn=conn,
            )

        with self._cache_lock:
            self._decrypted.pop((rt, record_id), None)
        self._after_mutation()
        return True

    # === Reads ===

    def get_record(self, record_type, record_id: str, decrypt: bool = True) -> Optional[Record]:
        rt = get_handler(record_type).record_type.value
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE record_type = ? AND record_id = ?", (rt, record_id)
            ).fetchone()
        return self._row_to_record(row, decrypt=decrypt) if row else None

    def get_records(
        self, record_type=None, include_deleted: bool = False, decrypt: bool = True
    ) -> List[Record]:
        query = "SELECT * FROM records WHERE 1 = 1"
        params: List[Any] = []
        if record_type is not None:
            query += " AND record_type = ?"
            params.append(get_handler(record_type).record_type.value)
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY record_type, record_id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row, decrypt=decrypt) for row in rows]

    def get_payloads(self, record_type) -> List[Dict[str, Any]]:
        """Decrypted payloads of the live records of one type."""
        return [r.payload for r in self.get_records(record_type) if r.payload is not None]

    def count_records(self, include_deleted: bool = False) -> int:
        with self._connect() as conn:
            if include_deleted:
                return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM records WHERE deleted = 0").fetchone()[0]

    # === Remote state ===

    def apply(self, remote: Record) -> bool:
        """Apply a pulled record if it is newer than what we hold.

        Overwrites unconditionally when the remote version is higher (or the
        row is absent). A pending local change for the record stays queued and
        will surface as a push conflict.

        Returns:
            True if the record was written.
        """
        if remote.version is None:
            raise ValueError("Remote records must carry a version")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version FROM records WHERE record_type = ? AND record_id = ?",
                (remote.record_type, remote.record_id),
            ).fetchone()
            local_version = row["version"] if row and row["version"] is not None else 0
            if row is not None and remote.version <= local_version:
                return False
            self._write_remote(conn, remote)
        return True

    def adopt(self, remote: Record) -> None:
        """Overwrite the local row with server state regardless of version."""
        with self._connect() as conn:
            self._write_remote(conn, remote)

    def bulk_set(self, records: Iterable[Record]) -> int:
        """Write many server-state records in one transaction.

        Derived state is not rebuilt; call ``invalidate()`` afterwards.
        """
        count = 0
        with self._connect() as conn:
            for record in records:
                self._write_remote(conn, record)
                count += 1
        return count

    def set_version(self, record_type: str, record_id: str, version: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE records SET version = ? WHERE record_type = ? AND record_id = ?",
                (version, record_type, record_id),
            )

    def get_versions(self) -> Dict[Tuple[str, str], Optional[int]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT record_type, record_id, version FROM records").fetchall()
        return {(row["record_type"], row["record_id"]): row["version"] for row in rows}

    def set_versions(self, items: Dict[Tuple[str, str], Optional[int]]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "UPDATE records SET version = ? WHERE record_type = ? AND record_id = ?",
                [(version, rt, rid) for (rt, rid), version in items.items()],
            )

    def delete_all(self) -> int:
        """Physically remove every local record and queued change."""
        with self._connect() as conn:
            count = conn.execute("DELETE FROM records").rowcount
            conn.execute("DELETE FROM sync_queue")
        self.clear_decrypted_cache()
        return count

    # === Column swaps used by vault transitions ===

    def set_ciphertexts(self, items: Dict[Tuple[str, str], str]) -> None:
        """Store ciphertext alongside existing plaintext for each (type, id)."""
        with self._connect() as conn:
            conn.executemany(
                "UPDATE records SET ciphertext = ? WHERE record_type = ? AND record_id = ?",
                [(blob, rt, rid) for (rt, rid), blob in items.items()],
            )

    def set_payloads(self, items: Dict[Tuple[str, str], Dict[str, Any]]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "UPDATE records SET payload = ? WHERE record_type = ? AND record_id = ?",
                [(self._to_json(payload), rt, rid) for (rt, rid), payload in items.items()],
            )

    def clear_ciphertexts(self) -> None:
        """Drop ciphertext from rows that still hold plaintext."""
        with self._connect() as conn:
            conn.execute("UPDATE records SET ciphertext = NULL WHERE payload IS NOT NULL")

    def clear_payloads(self) -> None:
        """Drop plaintext from rows that hold ciphertext."""
        with self._connect() as conn:
            conn.execute("UPDATE records SET payload = NULL WHERE ciphertext IS NOT NULL")

    # === Derived state ===

    def record_counts(self) -> Dict[str, int]:
        """Live record counts keyed by plural type name (bookmarks, spaces, pinnedViews)."""
        with self._cache_lock:
            if self._counts is None:
                counts = {handler.plural: 0 for handler in HANDLERS.values()}
                with self._connect() as conn:
                    rows = conn.execute(
                        """SELECT record_type, COUNT(*) AS n FROM records
                           WHERE deleted = 0 GROUP BY record_type"""
                    ).fetchall()
                for row in rows:
                    counts[get_handler(row["record_type"]).plural] = row["n"]
                self._counts = counts
            return dict(self._counts)

    def tag_index(self) -> Dict[str, List[str]]:
        """Map of tag -> bookmark ids carrying it."""
        with self._cache_lock:
            if self._tag_index is None:
                index: Dict[str, List[str]] = {}
                for payload in self.get_payloads(RecordType.BOOKMARK):
                    for tag in payload.get("tags") or []:
                        index.setdefault(tag, []).append(payload["id"])
                self._tag_index = index
            return {tag: list(ids) for tag, ids in self._tag_index.items()}

    def invalidate(self) -> None:
        """Drop derived caches and notify listeners."""
        with self._cache_lock:
            self._tag_index = None
            self._counts = None
        for listener in list(self._invalidation_listeners):
            listener()

    def add_invalidation_listener(self, listener: Callable[[], None]) -> None:
        self._invalidation_listeners.append(listener)

    def add_mutation_listener(self, listener: Callable[[], None]) -> None:
        """Called after every local save/delete (e.g. to debounce a push)."""
        self._mutation_listeners.append(listener)

    def forget_decrypted(self, record_type: str, record_id: str) -> None:
        """Drop one cached plaintext, e.g. after another handle rewrote the row."""
        with self._cache_lock:
            self._decrypted.pop((record_type, record_id), None)

    def clear_decrypted_cache(self) -> None:
        with self._cache_lock:
            self._decrypted.clear()
            self._tag_index = None

    def _after_mutation(self) -> None:
        self.invalidate()
        for listener in list(self._mutation_listeners):
            listener()

    def close(self):
        """Release resources. Connections are per-operation, so only caches are dropped."""
        self.clear_decrypted_cache()
