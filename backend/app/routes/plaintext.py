"""Sync routes for plaintext record synchronization."""

from typing import Annotated

from fastapi import APIRouter, Query, Request

from bookvault.checksum import build_checksum_meta, canonical_entry

from ..auth import CurrentOwner
from ..database import Database, import_plaintext, list_records, tombstone_records
from ..logging_config import get_logger
from ..models import (
    ChecksumResponse,
    ImportRequest,
    ImportResponse,
    PlaintextPushRequest,
    PullResponse,
    PushAck,
    PushResponse,
    RetireResponse,
)
from ..rate_limit import IMPORT_LIMIT, PUSH_LIMIT, limiter
from .sync import AppSettings, check_batch_size, process_pull, process_push

logger = get_logger("bookvault.sync.plaintext")
router = APIRouter(prefix="/sync/plaintext", tags=["sync"])


async def plaintext_checksum(db, owner_id: str):
    """ChecksumMeta over the owner's live plaintext rows."""
    rows = await list_records(db, owner_id, encrypted=False)
    entries = [
        canonical_entry(row["record_id"], row["record_type"], row.get("data"), row["version"])
        for row in rows
    ]
    last_update = max((str(row["updated_at"]) for row in rows), default=None)
    return build_checksum_meta(entries, last_update)


@router.post("/push", response_model=PushResponse, response_model_exclude_none=True)
@limiter.limit(PUSH_LIMIT)
async def push_plaintext(
    request: Request,
    body: PlaintextPushRequest,
    auth: CurrentOwner,
    db: Database,
    settings: AppSettings,
):
    """Push plaintext record mutations (same CAS rules as encrypted push)."""
    check_batch_size(len(body.operations), settings)
    return await process_push(db, auth, body.operations, encrypted=False)


@router.get("/pull", response_model=PullResponse, response_model_exclude_none=True)
async def pull_plaintext(
    auth: CurrentOwner,
    db: Database,
    settings: AppSettings,
    cursor: str | None = None,
    record_type: Annotated[str | None, Query(alias="recordType")] = None,
    limit: Annotated[int, Query(ge=1)] = 100,
):
    return await process_pull(db, auth, False, cursor, record_type, min(limit, settings.max_pull_limit))


@router.get("/checksum", response_model=ChecksumResponse)
async def checksum(auth: CurrentOwner, db: Database):
    """
    Checksum of the live plaintext dataset.

    Clients compare it with the last value they saw and skip the pull when
    nothing changed.
    """
    meta = await plaintext_checksum(db, auth.owner_id)
    return ChecksumResponse(
        checksum=meta.checksum,
        count=meta.count,
        last_update=meta.last_update,
        per_type_counts=meta.per_type_counts,
    )


@router.post("/import", response_model=ImportResponse)
@limiter.limit(IMPORT_LIMIT)
async def import_records(
    request: Request,
    body: ImportRequest,
    auth: CurrentOwner,
    db: Database,
    settings: AppSettings,
):
    """Idempotent bulk upsert used by vault disable (phase 0)."""
    check_batch_size(len(body.records), settings, "records")
    acks = await import_plaintext(
        db, auth.owner_id, [r.model_dump() for r in body.records]
    )
    logger.info(f"IMPORT | {auth.owner_id} | {len(acks)} records")
    return ImportResponse(imported=len(acks), results=[PushAck(**ack) for ack in acks])


@router.post("/retire", response_model=RetireResponse)
async def retire(auth: CurrentOwner, db: Database):
    """Soft-tombstone every live plaintext row (after vault enable)."""
    retired = await tombstone_records(db, auth.owner_id, encrypted=False)
    logger.info(f"RETIRE | {auth.owner_id} | {retired} plaintext records")
    return RetireResponse(retired=retired)
