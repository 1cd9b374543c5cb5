"""Database utilities for Supabase integration.

All record queries are scoped by ``owner_id`` and the ``encrypted`` flag:
a plaintext copy and an encrypted copy of the same record are separate
rows, which is what lets the vault-disable protocol hold both at once.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

from fastapi import Depends
from postgrest.exceptions import APIError

from supabase import Client, create_client

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("bookvault.database")

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> Client:
    """FastAPI dependency for Supabase client."""
    return get_supabase_client(settings)


# Type alias for dependency injection
Database = Annotated[Client, Depends(get_db)]


# =============================================================================
# Table Names
# =============================================================================

RECORDS_TABLE = "sync_records"
VAULTS_TABLE = "vaults"
SYNC_SETTINGS_TABLE = "sync_settings"

UNIQUE_VIOLATION = "23505"
PAGE_SIZE = 1000


# =============================================================================
# Timestamps
# =============================================================================

_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def next_timestamp() -> str:
    """Strictly increasing UTC timestamp for ``updated_at``.

    Pull cursors compare with ``>``; two rows sharing a timestamp across a
    page boundary would lose the second one.
    """
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(timezone.utc)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
    return now.strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _is_unique_violation(e: APIError) -> bool:
    return getattr(e, "code", None) == UNIQUE_VIOLATION


# =============================================================================
# Record Operations
# =============================================================================


async def get_record(
    db: Client, owner_id: str, record_type: str, record_id: str, encrypted: bool
) -> dict | None:
    result = (
        db.table(RECORDS_TABLE)
        .select("*")
        .eq("owner_id", owner_id)
        .eq("record_type", record_type)
        .eq("record_id", record_id)
        .eq("encrypted", encrypted)
        .execute()
    )
    return result.data[0] if result.data else None


def _body(encrypted: bool, data: dict | None, ciphertext: str | None) -> dict:
    if encrypted:
        return {"ciphertext": ciphertext, "data": None}
    return {"data": data, "ciphertext": None}


async def push_record(
    db: Client,
    owner_id: str,
    record_type: str,
    record_id: str,
    base_version: int | None,
    deleted: bool,
    encrypted: bool,
    data: dict | None = None,
    ciphertext: str | None = None,
) -> tuple[dict | None, dict | None]:
    """Apply one mutation under optimistic concurrency.

    - absent row: insert at version 1
    - ``version == base_version``: conditional update to ``version + 1``
    - otherwise: conflict

    Returns:
        ``(row, None)`` when accepted, ``(None, server_row)`` on conflict.
    """
    existing = await get_record(db, owner_id, record_type, record_id, encrypted)

    if existing is None:
        row = {
            "id": str(uuid.uuid4()),
            "owner_id": owner_id,
            "record_type": record_type,
            "record_id": record_id,
            "encrypted": encrypted,
            "version": 1,
            "deleted": deleted,
            "updated_at": next_timestamp(),
            **_body(encrypted, data, ciphertext),
        }
        try:
            result = db.table(RECORDS_TABLE).insert(row).execute()
        except APIError as e:
            if not _is_unique_violation(e):
                raise
            # Lost an insert race with another device
            return None, await get_record(db, owner_id, record_type, record_id, encrypted)
        return (result.data[0] if result.data else row), None

    if existing["version"] != (base_version or 0):
        return None, existing

    update = {
        "version": existing["version"] + 1,
        "deleted": deleted,
        "updated_at": next_timestamp(),
        **_body(encrypted, data, ciphertext),
    }
    result = (
        db.table(RECORDS_TABLE)
        .update(update)
        .eq("id", existing["id"])
        .eq("version", existing["version"])
        .execute()
    )
    if not result.data:
        # Row moved between read and conditional update
        return None, await get_record(db, owner_id, record_type, record_id, encrypted)
    return result.data[0], None


async def pull_records(
    db: Client,
    owner_id: str,
    encrypted: bool,
    cursor: str | None = None,
    record_type: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Records changed after ``cursor``, oldest first."""
    query = (
        db.table(RECORDS_TABLE)
        .select("*")
        .eq("owner_id", owner_id)
        .eq("encrypted", encrypted)
    )
    if record_type:
        query = query.eq("record_type", record_type)
    if cursor:
        query = query.gt("updated_at", cursor)
    result = query.order("updated_at").order("record_id").limit(limit).execute()
    return result.data


async def list_records(
    db: Client, owner_id: str, encrypted: bool, include_deleted: bool = False
) -> list[dict]:
    """Every record for the owner in one storage mode (paged past the API row cap)."""
    rows: list[dict] = []
    offset = 0
    while True:
        query = (
            db.table(RECORDS_TABLE)
            .select("*")
            .eq("owner_id", owner_id)
            .eq("encrypted", encrypted)
        )
        if not include_deleted:
            query = query.eq("deleted", False)
        result = query.order("record_id").range(offset, offset + PAGE_SIZE - 1).execute()
        rows.extend(result.data)
        if len(result.data) < PAGE_SIZE:
            return rows
        offset += PAGE_SIZE


async def count_records(db: Client, owner_id: str, encrypted: bool, deleted: bool = False) -> int:
    result = (
        db.table(RECORDS_TABLE)
        .select("id", count="exact")
        .eq("owner_id", owner_id)
        .eq("encrypted", encrypted)
        .eq("deleted", deleted)
        .execute()
    )
    return result.count or 0


async def import_plaintext(db: Client, owner_id: str, records: list[dict]) -> list[dict]:
    """Idempotent upsert of plaintext records.

    Re-importing identical content keeps the stored version; changed
    content is written at ``version + 1``; new rows start at 1.
    """
    acks = []
    for record in records:
        record_type, record_id = record["record_type"], record["record_id"]
        deleted = record.get("deleted", False)
        row = None
        existing = await get_record(db, owner_id, record_type, record_id, False)
        if existing is None:
            row, existing = await push_record(
                db, owner_id, record_type, record_id, None, deleted, encrypted=False, data=record["data"]
            )

        if row is None:
            if existing.get("data") == record["data"] and existing["deleted"] == deleted:
                row = existing
            else:
                result = (
                    db.table(RECORDS_TABLE)
                    .update(
                        {
                            "data": record["data"],
                            "deleted": deleted,
                            "version": existing["version"] + 1,
                            "updated_at": next_timestamp(),
                        }
                    )
                    .eq("id", existing["id"])
                    .execute()
                )
                row = result.data[0]
        acks.append(
            {"record_id": row["record_id"], "record_type": row["record_type"], "version": row["version"]}
        )
    return acks


async def tombstone_row(db: Client, row: dict) -> None:
    db.table(RECORDS_TABLE).update(
        {"deleted": True, "version": row["version"] + 1, "updated_at": next_timestamp()}
    ).eq("id", row["id"]).execute()


async def tombstone_records(db: Client, owner_id: str, encrypted: bool) -> int:
    """Soft-delete every live record in one storage mode, bumping versions."""
    rows = await list_records(db, owner_id, encrypted)
    for row in rows:
        await tombstone_row(db, row)
    return len(rows)


async def delete_encrypted_records(db: Client, owner_id: str) -> int:
    """Physically delete the owner's encrypted rows (vault disable, phase 2 only)."""
    result = (
        db.table(RECORDS_TABLE)
        .delete()
        .eq("owner_id", owner_id)
        .eq("encrypted", True)
        .execute()
    )
    return len(result.data)


# =============================================================================
# Vault Operations
# =============================================================================


async def get_vault(db: Client, owner_id: str) -> dict | None:
    result = db.table(VAULTS_TABLE).select("*").eq("owner_id", owner_id).execute()
    return result.data[0] if result.data else None


async def create_vault(db: Client, owner_id: str, envelope: dict) -> dict | None:
    """Insert the owner's envelope. Returns None if a vault already exists."""
    now = datetime.now(timezone.utc).isoformat()
    row = {
        "id": str(uuid.uuid4()),
        "owner_id": owner_id,
        "envelope": envelope,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = db.table(VAULTS_TABLE).insert(row).execute()
    except APIError as e:
        if _is_unique_violation(e):
            return None
        raise
    return result.data[0] if result.data else row


async def update_vault_envelope(db: Client, owner_id: str, envelope: dict) -> bool:
    result = (
        db.table(VAULTS_TABLE)
        .update({"envelope": envelope, "updated_at": datetime.now(timezone.utc).isoformat()})
        .eq("owner_id", owner_id)
        .execute()
    )
    return len(result.data) > 0


async def delete_vault(db: Client, owner_id: str) -> bool:
    result = db.table(VAULTS_TABLE).delete().eq("owner_id", owner_id).execute()
    return len(result.data) > 0


# =============================================================================
# Sync Settings
# =============================================================================


async def get_sync_settings(db: Client, owner_id: str) -> dict:
    result = db.table(SYNC_SETTINGS_TABLE).select("*").eq("owner_id", owner_id).execute()
    if result.data:
        return result.data[0]
    return {"owner_id": owner_id, "sync_enabled": False, "sync_mode": "off", "last_sync_at": None}


async def update_sync_settings(db: Client, owner_id: str, changes: dict[str, Any]) -> dict:
    current = await get_sync_settings(db, owner_id)
    row = {**current, **changes, "owner_id": owner_id}
    result = db.table(SYNC_SETTINGS_TABLE).upsert(row, on_conflict="owner_id").execute()
    return result.data[0] if result.data else row


async def touch_last_sync(db: Client, owner_id: str) -> None:
    """Record a push on the owner's settings row."""
    await update_sync_settings(db, owner_id, {"last_sync_at": datetime.now(timezone.utc).isoformat()})
