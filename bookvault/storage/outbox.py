"""Durable outbox of local mutations awaiting push.

Entries live in the ``sync_queue`` table of the host store. There is at
most one entry per record: a later mutation supersedes the earlier one
and bumps its ``revision``. Draining does not remove entries; only an
acknowledgement for the revision that was actually sent does.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from bookvault.types import SYNC_CONFLICT, SYNC_DEAD_LETTER, SYNC_PENDING, OutboxEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


class Outbox:
    """Outbox queue operations.

    Args:
        host: The LocalRecordStore providing DB access.
    """

    def __init__(self, host):
        self._host = host

    def _row_to_entry(self, row: sqlite3.Row) -> OutboxEntry:
        return OutboxEntry(
            id=row["id"],
            record_id=row["record_id"],
            record_type=row["record_type"],
            base_version=row["base_version"],
            payload=self._host._from_json(row["payload"]),
            ciphertext=row["ciphertext"],
            deleted=bool(row["deleted"]),
            enqueued_at=row["enqueued_at"],
            revision=row["revision"],
            status=row["synced"],
            server_snapshot=self._host._from_json(row["server_snapshot"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
        )

    def enqueue(
        self,
        record_type: str,
        record_id: str,
        base_version: Optional[int],
        payload: Optional[Dict[str, Any]] = None,
        ciphertext: Optional[str] = None,
        deleted: bool = False,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Queue a change, superseding any live entry for the same record.

        Pass ``conn`` to enqueue inside the caller's transaction.
        """
        if conn is None:
            with self._host._connect() as own_conn:
                self.enqueue(record_type, record_id, base_version, payload, ciphertext, deleted, own_conn)
            return

        # Atomic UPSERT keyed on the unique (record_type, record_id) index
        conn.execute(
            """INSERT INTO sync_queue
               (record_type, record_id, base_version, payload, ciphertext, deleted,
                revision, synced, enqueued_at)
               VALUES (?, ?, ?, ?, ?, ?, 1, 0, ?)
               ON CONFLICT(record_type, record_id) DO UPDATE SET
                   base_version = excluded.base_version,
                   payload = excluded.payload,
                   ciphertext = excluded.ciphertext,
                   deleted = excluded.deleted,
                   revision = sync_queue.revision + 1,
                   synced = 0,
                   server_snapshot = NULL,
                   retry_count = 0,
                   last_error = NULL""",
            (
                record_type,
                record_id,
                base_version,
                self._host._to_json(payload),
                ciphertext,
                1 if deleted else 0,
                self._host._now(),
            ),
        )

    def drain(self, limit: int = 100) -> List[OutboxEntry]:
        """Up to ``limit`` pending entries, oldest first. Entries stay queued."""
        with self._host._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue WHERE synced = ?
                   ORDER BY id LIMIT ?""",
                (SYNC_PENDING, limit),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_entry(self, record_type: str, record_id: str) -> Optional[OutboxEntry]:
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE record_type = ? AND record_id = ?",
                (record_type, record_id),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def ack(self, record_type: str, record_id: str, new_version: int, revision: int) -> bool:
        """Acknowledge a pushed entry.

        If the entry was superseded while the push was in flight, it is kept
        and rebased onto ``new_version`` instead of being removed.

        Returns:
            True if the entry was removed, False if it was rebased or absent.
        """
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT revision FROM sync_queue WHERE record_type = ? AND record_id = ?",
                (record_type, record_id),
            ).fetchone()
            if row is None:
                return False
            if row["revision"] == revision:
                conn.execute(
                    "DELETE FROM sync_queue WHERE record_type = ? AND record_id = ?",
                    (record_type, record_id),
                )
                return True
            conn.execute(
                """UPDATE sync_queue SET base_version = ?
                   WHERE record_type = ? AND record_id = ?""",
                (new_version, record_type, record_id),
            )
        logger.debug(f"Rebased superseded entry {record_type}/{record_id} onto v{new_version}")
        return False

    def requeue_as_conflict(
        self, record_type: str, record_id: str, server_snapshot: Dict[str, Any]
    ) -> None:
        """Park an entry until its conflict is resolved."""
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue SET synced = ?, server_snapshot = ?
                   WHERE record_type = ? AND record_id = ?""",
                (SYNC_CONFLICT, json.dumps(server_snapshot), record_type, record_id),
            )

    def rebase(self, record_type: str, record_id: str, base_version: int) -> None:
        """Make an entry pending again against a new base version."""
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue SET base_version = ?, synced = ?, server_snapshot = NULL,
                                         revision = revision + 1
                   WHERE record_type = ? AND record_id = ?""",
                (base_version, SYNC_PENDING, record_type, record_id),
            )

    def discard(self, record_type: str, record_id: str) -> None:
        with self._host._connect() as conn:
            conn.execute(
                "DELETE FROM sync_queue WHERE record_type = ? AND record_id = ?",
                (record_type, record_id),
            )

    def clear(self) -> int:
        with self._host._connect() as conn:
            return conn.execute("DELETE FROM sync_queue").rowcount

    def get_conflicts(self) -> List[OutboxEntry]:
        with self._host._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE synced = ? ORDER BY id", (SYNC_CONFLICT,)
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    # === Failure tracking ===

    def record_failure(
        self,
        record_type: str,
        record_id: str,
        error: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> int:
        """Record a failed push attempt; dead-letter the entry after ``max_retries``.

        Returns:
            The new retry count.
        """
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = retry_count + 1, last_error = ?, last_attempt_at = ?
                   WHERE record_type = ? AND record_id = ?""",
                (error[:500], self._host._now(), record_type, record_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE record_type = ? AND record_id = ?",
                (record_type, record_id),
            ).fetchone()
            if row is None:
                return 0
            if row["retry_count"] >= max_retries:
                conn.execute(
                    "UPDATE sync_queue SET synced = ? WHERE record_type = ? AND record_id = ?",
                    (SYNC_DEAD_LETTER, record_type, record_id),
                )
                logger.warning(
                    f"Dead-lettered {record_type}/{record_id} after {row['retry_count']} failures"
                )
            return row["retry_count"]

    def get_dead_letters(self) -> List[OutboxEntry]:
        with self._host._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE synced = ? ORDER BY id", (SYNC_DEAD_LETTER,)
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def requeue_dead_letters(self) -> int:
        with self._host._connect() as conn:
            return conn.execute(
                """UPDATE sync_queue SET synced = ?, retry_count = 0, last_error = NULL
                   WHERE synced = ?""",
                (SYNC_PENDING, SYNC_DEAD_LETTER),
            ).rowcount

    # === Counts ===

    def pending_count(self) -> int:
        with self._host._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE synced = ?", (SYNC_PENDING,)
            ).fetchone()[0]

    def size(self) -> int:
        """All live entries, including parked conflicts and dead letters."""
        with self._host._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]
