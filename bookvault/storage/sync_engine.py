"""Sync engine for bookvault storage.

SyncEngine drains the outbox to the remote store, pulls remote changes
into the local store, and hands push conflicts to the ConflictResolver.
It receives the LocalRecordStore and a RemoteClient; it holds no global
state of its own beyond the per-cycle in-flight guards.

Push: batches of at most 100 operations. Every entry gets its own
outcome (ack, conflict, or failure); one bad entry never fails the batch.

Pull: cursor-paginated by server ``updated_at``. Pages are applied in
order and the cursor is persisted after each page. In plaintext mode
the pull is skipped entirely when the server checksum is unchanged.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from bookvault.broadcast import RECORD_RECEIVED, SYNC_COMPLETED, BroadcastChannel, BroadcastMessage
from bookvault.types import (
    AuthError,
    BookvaultError,
    MergeStrategy,
    MigrationPendingError,
    MigrationSummary,
    NetworkError,
    OutboxEntry,
    Record,
    RemoteError,
    SyncConfig,
    SyncMode,
    SyncResult,
    VaultLockedError,
    utc_now,
)

from .conflicts import ConflictResolver

logger = logging.getLogger(__name__)

LAST_CHECKSUM_KEY = "last_checksum"
LAST_SYNC_KEY = "last_sync_at"


def cursor_key(mode: SyncMode) -> str:
    return f"pull_cursor:{SyncMode(mode).value}"


class SyncEngine:
    """Push/pull coordinator for one local store.

    Args:
        store: The LocalRecordStore.
        remote: A RemoteClient (or compatible object).
        config: Batch sizes, retry limits and connectivity cache TTL.
        resolver: ConflictResolver; defaults to remote-wins.
        channel: Optional BroadcastChannel to share pulled records with peers.
    """

    def __init__(
        self,
        store,
        remote,
        config: Optional[SyncConfig] = None,
        resolver: Optional[ConflictResolver] = None,
        channel: Optional[BroadcastChannel] = None,
    ):
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.resolver = resolver or ConflictResolver(store)
        self.channel = channel
        self._push_lock = threading.Lock()
        self._pull_lock = threading.Lock()
        self._is_online_cached = False
        self._last_connectivity_check: Optional[float] = None

        if self.channel is not None:
            self.channel.on_message(self._on_broadcast)

    # === Connectivity ===

    def is_online(self) -> bool:
        """Check if the remote store is reachable (cached for ``online_check_ttl``)."""
        now = time.monotonic()
        if self._last_connectivity_check is not None:
            if now - self._last_connectivity_check < self.config.online_check_ttl:
                return self._is_online_cached
        try:
            self._is_online_cached = bool(self.remote.health())
        except Exception as e:
            logger.debug(f"Connectivity check failed: {e}", exc_info=True)
            self._is_online_cached = False
        self._last_connectivity_check = now
        return self._is_online_cached

    def mark_offline(self) -> None:
        self._is_online_cached = False
        self._last_connectivity_check = time.monotonic()

    # === Status ===

    @property
    def mode(self) -> SyncMode:
        return self.store.sync_mode

    def outbox_size(self) -> int:
        return self.store.outbox.pending_count()

    def status(self) -> Dict[str, Any]:
        outbox = self.store.outbox
        return {
            "mode": self.mode.value,
            "pending": outbox.pending_count(),
            "conflicts": len(outbox.get_conflicts()),
            "dead_letters": len(outbox.get_dead_letters()),
            "last_sync_at": self.store.get_meta(LAST_SYNC_KEY),
            "migration_pending": self.resolver.migration_pending() is not None,
            "vault_unlocked": self.store.session.is_unlocked,
        }

    # === Migration gate ===

    def check_migration(self) -> Optional[MigrationSummary]:
        return self.resolver.detect_migration(self.remote)

    def resolve_migration(self, strategy: MergeStrategy) -> SyncResult:
        """Apply the user's migration choice, then run a normal sync."""
        with self._pull_lock:
            watermark = self.resolver.resolve_migration(
                strategy, self.remote, page_size=self.config.page_size
            )
            if watermark:
                self.store.set_meta(cursor_key(SyncMode.PLAINTEXT), watermark)
            self.store.set_meta(LAST_CHECKSUM_KEY, None)
        return self.sync()

    def _ensure_not_blocked(self) -> None:
        if self.resolver.migration_pending() is not None:
            raise MigrationPendingError(
                "Local and cloud data both exist; choose merge or cloud-wins before syncing"
            )

    # === Push ===

    def _to_operation(self, entry: OutboxEntry, mode: SyncMode) -> Dict[str, Any]:
        """Wire form of an outbox entry for the current mode.

        Entries queued under the other mode are converted here (encrypted
        with the session key, or decrypted back to plaintext).
        """
        op: Dict[str, Any] = {
            "recordId": entry.record_id,
            "recordType": entry.record_type,
            "baseVersion": entry.base_version,
            "deleted": entry.deleted,
        }
        if mode is SyncMode.E2E:
            ciphertext = entry.ciphertext
            if ciphertext is None:
                ciphertext = self.store.session.encrypt(entry.payload or {})
            op["ciphertext"] = ciphertext
        else:
            payload = entry.payload
            if payload is None and entry.ciphertext is not None:
                payload = self.store.session.decrypt(entry.ciphertext)
            op["data"] = payload or {}
        return op

    def push(self) -> SyncResult:
        """Push pending outbox entries. Coalesces with an in-flight push."""
        result = SyncResult()
        mode = self.mode
        if mode is SyncMode.OFF:
            return result
        if not self._push_lock.acquire(blocking=False):
            logger.debug("Push already in flight; coalescing")
            return result
        try:
            self._ensure_not_blocked()
            self._push_batches(mode, result)
        finally:
            self._push_lock.release()
        return result

    def _push_batches(self, mode: SyncMode, result: SyncResult) -> None:
        outbox = self.store.outbox
        attempted = set()
        while True:
            entries = [
                e
                for e in outbox.drain(self.config.batch_size)
                if (e.record_type, e.record_id, e.revision) not in attempted
            ]
            if not entries:
                break

            operations = []
            sent: Dict[tuple, OutboxEntry] = {}
            for entry in entries:
                attempted.add((entry.record_type, entry.record_id, entry.revision))
                try:
                    operations.append(self._to_operation(entry, mode))
                    sent[(entry.record_type, entry.record_id)] = entry
                except VaultLockedError:
                    raise
                except BookvaultError as e:
                    outbox.record_failure(
                        entry.record_type, entry.record_id, str(e), self.config.max_retries
                    )
                    result.errors.append(f"{entry.record_type}/{entry.record_id}: {e}")
            if not operations:
                continue

            logger.debug(f"Pushing {len(operations)} operations ({mode.value})")
            try:
                push_result = self.remote.push(operations, mode)
            except AuthError:
                raise
            except NetworkError as e:
                self.mark_offline()
                result.errors.append(f"Push failed: {e}")
                logger.info(f"Offline during push; {len(operations)} changes stay queued")
                return
            except RemoteError as e:
                for entry in sent.values():
                    outbox.record_failure(
                        entry.record_type, entry.record_id, str(e), self.config.max_retries
                    )
                result.errors.append(f"Push rejected: {e}")
                return

            for ack in push_result.results:
                entry = sent.get((ack.record_type, ack.record_id))
                if entry is None:
                    continue
                self.store.set_version(ack.record_type, ack.record_id, ack.version)
                outbox.ack(ack.record_type, ack.record_id, ack.version, entry.revision)
                result.pushed += 1

            for conflict in push_result.conflicts:
                entry = sent.get((conflict.record_type, conflict.record_id))
                if entry is None:
                    continue
                resolved = self.resolver.handle_push_conflict(entry, conflict)
                if resolved is not None:
                    result.conflicts.append(resolved)

        if result.pushed:
            self.store.set_meta(LAST_SYNC_KEY, utc_now())
            self.store.invalidate()

    # === Pull ===

    def pull(self) -> SyncResult:
        """Pull remote changes. Coalesces with an in-flight pull."""
        result = SyncResult()
        mode = self.mode
        if mode is SyncMode.OFF:
            return result
        if not self._pull_lock.acquire(blocking=False):
            logger.debug("Pull already in flight; coalescing")
            return result
        try:
            self._ensure_not_blocked()
            self._pull_pages(mode, result)
        finally:
            self._pull_lock.release()
        return result

    def _pull_pages(self, mode: SyncMode, result: SyncResult) -> None:
        checksum = None
        try:
            if mode is SyncMode.PLAINTEXT:
                meta = self.remote.fetch_checksum()
                checksum = meta.checksum
                if checksum == self.store.get_meta(LAST_CHECKSUM_KEY):
                    logger.debug("Server checksum unchanged; skipping pull")
                    result.skipped = True
                    return

            key = cursor_key(mode)
            cursor = self.store.get_meta(key)
            received: List[Record] = []
            while True:
                page = self.remote.pull(mode, cursor=cursor, limit=self.config.page_size)
                for record in page.records:
                    if self.store.apply(record):
                        result.pulled += 1
                        received.append(record)
                if page.next_cursor:
                    cursor = page.next_cursor
                    self.store.set_meta(key, cursor)
                if not page.has_more:
                    break
        except AuthError:
            raise
        except NetworkError as e:
            self.mark_offline()
            result.errors.append(f"Pull failed: {e}")
            return
        except RemoteError as e:
            result.errors.append(f"Pull rejected: {e}")
            return
        finally:
            if result.pulled:
                self.store.invalidate()

        if checksum is not None:
            self.store.set_meta(LAST_CHECKSUM_KEY, checksum)
        self.store.set_meta(LAST_SYNC_KEY, utc_now())
        if received and mode is SyncMode.E2E:
            self._broadcast_received(received)

    # === Full cycle ===

    def sync(self) -> SyncResult:
        """Push then pull. Returns early (with an error) when offline."""
        if self.mode is SyncMode.OFF:
            return SyncResult()
        try:
            summary = self.resolver.detect_migration(self.remote)
        except NetworkError as e:
            self.mark_offline()
            logger.info("Offline - sync skipped, changes queued")
            return SyncResult(errors=[f"Offline - cannot reach backend: {e}"])
        if summary is not None:
            raise MigrationPendingError(
                "Local and cloud data both exist; choose merge or cloud-wins before syncing"
            )
        result = self.push()
        result = result.merge(self.pull())
        if self.channel is not None and result.success:
            self.channel.publish(SYNC_COMPLETED, {"pushed": result.pushed, "pulled": result.pulled})
        return result

    # === Cross-session propagation ===

    def _broadcast_received(self, records: List[Record]) -> None:
        if self.channel is None:
            return
        for record in records:
            self.channel.publish(
                RECORD_RECEIVED,
                {
                    "recordId": record.record_id,
                    "recordType": record.record_type,
                    "ciphertext": record.ciphertext,
                    "version": record.version,
                    "deleted": record.deleted,
                    "updatedAt": record.updated_at,
                },
            )

    def _on_broadcast(self, message: BroadcastMessage) -> None:
        if message.type != RECORD_RECEIVED:
            return
        payload = message.payload
        record = Record(
            record_id=payload["recordId"],
            record_type=payload["recordType"],
            ciphertext=payload.get("ciphertext"),
            version=payload["version"],
            deleted=bool(payload.get("deleted", False)),
            updated_at=payload.get("updatedAt"),
        )
        # A peer sharing our database may already have written this version,
        # in which case apply() is a no-op but our cached plaintext is stale
        self.store.apply(record)
        self.store.forget_decrypted(record.record_type, record.record_id)
        if self.store.session.is_unlocked and record.ciphertext:
            self.store.get_record(record.record_type, record.record_id)
        self.store.invalidate()
