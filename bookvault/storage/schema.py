"""SQLite schema for the local record store.

Table reference:
- records: one row per (record_type, record_id); payload XOR ciphertext
- sync_queue: the outbox, at most one live entry per record
- sync_meta: key/value sync state (mode, cursors, last checksum, ...)
- sync_conflicts: history of resolved conflicts for user review
- vault_transition: persisted phase marker of an in-progress enable/disable
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
-- Records: payload holds plaintext JSON, ciphertext the encrypted blob.
-- In e2e mode payload is NULL once the vault transition completes.
CREATE TABLE IF NOT EXISTS records (
    record_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    version INTEGER,  -- NULL until the first accepted push
    deleted INTEGER NOT NULL DEFAULT 0,
    payload TEXT,
    ciphertext TEXT,
    updated_at TEXT,  -- server watermark of the last applied remote state
    local_updated_at TEXT NOT NULL,
    PRIMARY KEY (record_type, record_id)
);
CREATE INDEX IF NOT EXISTS idx_records_deleted ON records(deleted);

-- Outbox of pending mutations
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    base_version INTEGER,  -- server version this change was made against
    payload TEXT,
    ciphertext TEXT,
    deleted INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 1,  -- bumped by every superseding mutation
    synced INTEGER NOT NULL DEFAULT 0,  -- 0 = pending, 2 = dead letter, 3 = conflict
    server_snapshot TEXT,  -- JSON server state when parked as a conflict
    enqueued_at TEXT NOT NULL,
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT
);
-- Acknowledged entries are deleted, so every row is live
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_record_unique
    ON sync_queue(record_type, record_id);
CREATE INDEX IF NOT EXISTS idx_sync_queue_synced ON sync_queue(synced);

-- Sync metadata (mode, pull cursors, last seen checksum, cached envelope)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Sync conflict history (tracks resolved conflicts for user visibility)
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    record_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version TEXT NOT NULL,   -- JSON snapshot of the local pending change
    cloud_version TEXT NOT NULL,   -- JSON snapshot of the server state
    resolution TEXT NOT NULL,      -- local-wins, remote-wins or keep-both
    resolved_at TEXT NOT NULL,
    new_record_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);

-- Vault transition phase marker (single row)
CREATE TABLE IF NOT EXISTS vault_transition (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    direction TEXT NOT NULL,  -- enable or disable
    phase TEXT NOT NULL,
    expected_count INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    started_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if needed and stamp the schema version."""
    current = conn.execute("PRAGMA user_version").fetchone()[0]
    conn.executescript(SCHEMA)
    if current < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug(f"Initialized local schema v{SCHEMA_VERSION} (was v{current})")
