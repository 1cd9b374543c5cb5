"""
Conflict resolution.

Two kinds of conflict:

- Per-record push conflicts: the server rejected a push because the
  entry's base version is stale. The entry is parked in the outbox with
  the server snapshot and resolved local-wins, remote-wins or keep-both.
  Background sync resolves remote-wins by default.
- Whole-dataset migration: on first sign-in in plaintext mode, when the
  device and the cloud both already hold data, sync is blocked until the
  user picks merge or cloud-wins.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from bookvault.records import payload_timestamp
from bookvault.types import (
    SYNC_CONFLICT,
    BookvaultError,
    MergeStrategy,
    MigrationSummary,
    OutboxEntry,
    PushConflict,
    Record,
    Resolution,
    SyncConflict,
    SyncMode,
)

logger = logging.getLogger(__name__)

MIGRATION_PENDING_KEY = "migration_pending"
MIGRATION_RESOLVED_KEY = "migration_resolved"


def _snapshot_from_conflict(conflict: PushConflict) -> Dict[str, Any]:
    return {
        "recordId": conflict.record_id,
        "recordType": conflict.record_type,
        "version": conflict.server_version,
        "data": conflict.server_payload,
        "ciphertext": conflict.server_ciphertext,
        "deleted": conflict.server_deleted,
    }


def _record_from_snapshot(snapshot: Dict[str, Any]) -> Record:
    return Record(
        record_id=snapshot["recordId"],
        record_type=snapshot["recordType"],
        payload=snapshot.get("data"),
        ciphertext=snapshot.get("ciphertext"),
        version=snapshot["version"],
        deleted=bool(snapshot.get("deleted", False)),
    )


def _snapshot_from_entry(entry: OutboxEntry) -> Dict[str, Any]:
    return {
        "recordId": entry.record_id,
        "recordType": entry.record_type,
        "baseVersion": entry.base_version,
        "data": entry.payload,
        "ciphertext": entry.ciphertext,
        "deleted": entry.deleted,
    }


class ConflictResolver:
    """Resolves push conflicts and first-sign-in migrations against a local store.

    Args:
        store: The LocalRecordStore.
        default_resolution: Applied automatically to background push conflicts.
            ``None`` parks conflicts for the user to resolve.
        clock: Returns the current time in seconds (used for keep-both ids).
    """

    def __init__(
        self,
        store,
        default_resolution: Optional[Resolution] = Resolution.REMOTE_WINS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_resolution = default_resolution
        self._clock = clock

    # === Per-record conflicts ===

    def handle_push_conflict(
        self, entry: OutboxEntry, conflict: PushConflict
    ) -> Optional[SyncConflict]:
        """Park a rejected entry and apply the default resolution, if any."""
        self.store.outbox.requeue_as_conflict(
            entry.record_type, entry.record_id, _snapshot_from_conflict(conflict)
        )
        logger.info(
            f"Conflict on {entry.record_type}/{entry.record_id}: "
            f"base v{entry.base_version}, server v{conflict.server_version}"
        )
        if self.default_resolution is None:
            return None
        return self.resolve(entry.record_type, entry.record_id, self.default_resolution)

    def pending(self) -> List[OutboxEntry]:
        return self.store.outbox.get_conflicts()

    def resolve(self, record_type: str, record_id: str, resolution: Resolution) -> SyncConflict:
        """Resolve a parked conflict.

        - local-wins: resend the local change based on the server version.
        - remote-wins: adopt the server state and drop the local change.
        - keep-both: adopt the server state and re-create the local change
          as a new record (``<id>-<epoch ms>``) that will be pushed at version 1.

        Raises:
            BookvaultError: No parked conflict exists for the record.
        """
        resolution = Resolution(resolution)
        outbox = self.store.outbox
        entry = outbox.get_entry(record_type, record_id)
        if entry is None or entry.status != SYNC_CONFLICT or not entry.server_snapshot:
            raise BookvaultError(f"No pending conflict for {record_type}/{record_id}")

        server = _record_from_snapshot(entry.server_snapshot)
        new_record_id = None

        if resolution is Resolution.LOCAL_WINS:
            outbox.rebase(record_type, record_id, server.version)
            # Keep the pending local content from being overwritten by the next pull
            self.store.set_version(record_type, record_id, server.version)
        elif resolution is Resolution.REMOTE_WINS:
            outbox.discard(record_type, record_id)
            self.store.adopt(server)
        else:
            local_payload = entry.payload
            if local_payload is None and entry.ciphertext is not None:
                local_payload = self.store.session.decrypt(entry.ciphertext)
            outbox.discard(record_type, record_id)
            self.store.adopt(server)
            if not entry.deleted and local_payload is not None:
                new_record_id = f"{record_id}-{int(self._clock() * 1000)}"
                clone = dict(local_payload)
                clone["id"] = new_record_id
                clone.pop("createdAt", None)
                self.store.save_record(record_type, clone, record_id=new_record_id)

        self.store.invalidate()

        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            record_type=record_type,
            record_id=record_id,
            local_version=_snapshot_from_entry(entry),
            cloud_version=entry.server_snapshot,
            resolution=resolution.value,
            resolved_at=datetime.now(timezone.utc),
            new_record_id=new_record_id,
        )
        self.save_conflict(conflict)
        logger.info(f"Resolved {record_type}/{record_id} as {resolution.value}")
        return conflict

    # === Conflict history ===

    def save_conflict(self, conflict: SyncConflict) -> None:
        with self.store._connect() as conn:
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, record_type, record_id, local_version, cloud_version,
                    resolution, resolved_at, new_record_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.record_type,
                    conflict.record_id,
                    self.store._to_json(conflict.local_version),
                    self.store._to_json(conflict.cloud_version),
                    conflict.resolution,
                    conflict.resolved_at.isoformat(),
                    conflict.new_record_id,
                ),
            )

    def get_history(self, limit: int = 50) -> List[SyncConflict]:
        with self.store._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY resolved_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                record_type=row["record_type"],
                record_id=row["record_id"],
                local_version=self.store._from_json(row["local_version"]) or {},
                cloud_version=self.store._from_json(row["cloud_version"]) or {},
                resolution=row["resolution"],
                resolved_at=datetime.fromisoformat(row["resolved_at"]),
                new_record_id=row["new_record_id"],
            )
            for row in rows
        ]

    def clear_history(self, before: Optional[datetime] = None) -> int:
        with self.store._connect() as conn:
            if before is None:
                return conn.execute("DELETE FROM sync_conflicts").rowcount
            return conn.execute(
                "DELETE FROM sync_conflicts WHERE resolved_at < ?", (before.isoformat(),)
            ).rowcount

    # === First sign-in migration ===

    def migration_pending(self) -> Optional[MigrationSummary]:
        data = self.store.get_meta_json(MIGRATION_PENDING_KEY)
        if not data:
            return None
        return MigrationSummary(local_counts=data["local"], cloud_counts=data["cloud"])

    def detect_migration(self, remote) -> Optional[MigrationSummary]:
        """Check whether local and cloud datasets both exist before first sync.

        Only applies in plaintext mode and only until resolved once. When
        one side is empty there is nothing to decide and the check is
        marked resolved.
        """
        if self.store.sync_mode is not SyncMode.PLAINTEXT:
            return None
        if self.store.get_meta(MIGRATION_RESOLVED_KEY):
            return None
        pending = self.migration_pending()
        if pending is not None:
            return pending

        local_counts = self.store.record_counts()
        if sum(local_counts.values()) == 0:
            self.store.set_meta(MIGRATION_RESOLVED_KEY, "empty-local")
            return None
        meta = remote.fetch_checksum()
        if meta.count == 0:
            self.store.set_meta(MIGRATION_RESOLVED_KEY, "empty-cloud")
            return None

        summary = MigrationSummary(local_counts=local_counts, cloud_counts=dict(meta.per_type_counts))
        self.store.set_meta_json(MIGRATION_PENDING_KEY, {"local": local_counts, "cloud": summary.cloud_counts})
        logger.info(
            f"Migration required: {summary.local_total} local vs {summary.cloud_total} cloud records"
        )
        return summary

    def _fetch_cloud(self, remote, page_size: int) -> Iterator[Record]:
        cursor = None
        while True:
            page = remote.pull(SyncMode.PLAINTEXT, cursor=cursor, limit=page_size)
            yield from page.records
            if not page.has_more or page.next_cursor is None:
                break
            cursor = page.next_cursor

    def resolve_migration(self, strategy: MergeStrategy, remote, page_size: int = 100) -> Optional[str]:
        """Combine local and cloud datasets and unblock sync.

        - merge: union by record id; when both sides hold a record the most
          recently updated copy wins (cloud on ties). Local winners are queued
          against the cloud version.
        - cloud-wins: local data is replaced by the cloud dataset.

        Returns:
            The highest cloud ``updated_at`` seen (the new pull watermark).
        """
        strategy = MergeStrategy(strategy)
        cloud = list(self._fetch_cloud(remote, page_size))
        watermark = max((r.updated_at for r in cloud if r.updated_at), default=None)
        outbox = self.store.outbox

        if strategy is MergeStrategy.CLOUD_WINS:
            self.store.delete_all()
            self.store.bulk_set(cloud)
        else:
            adopt = []
            kept_local = 0
            for remote_record in cloud:
                local = self.store.get_record(remote_record.record_type, remote_record.record_id)
                if local is None or payload_timestamp(remote_record.payload) >= payload_timestamp(
                    local.payload
                ):
                    outbox.discard(remote_record.record_type, remote_record.record_id)
                    adopt.append(remote_record)
                    continue
                kept_local += 1
                self.store.set_version(local.record_type, local.record_id, remote_record.version)
                outbox.enqueue(
                    local.record_type,
                    local.record_id,
                    remote_record.version,
                    payload=local.payload,
                    deleted=local.deleted,
                )
            self.store.bulk_set(adopt)
            logger.info(f"Merged migration: adopted {len(adopt)} cloud records, kept {kept_local} local")

        self.store.set_meta(MIGRATION_PENDING_KEY, None)
        self.store.set_meta(MIGRATION_RESOLVED_KEY, strategy.value)
        self.store.invalidate()
        return watermark
