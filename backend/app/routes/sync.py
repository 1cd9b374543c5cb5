"""Sync routes for encrypted (end-to-end) record synchronization."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..auth import AuthContext, CurrentOwner
from ..config import Settings, get_settings
from ..database import Database, pull_records, push_record, touch_last_sync
from ..logging_config import get_logger, log_sync_operation
from ..models import (
    PullResponse,
    PushAck,
    PushConflict,
    PushRequest,
    PushResponse,
    SyncRecord,
)
from ..rate_limit import PUSH_LIMIT, limiter

logger = get_logger("bookvault.sync")
router = APIRouter(prefix="/sync", tags=["sync"])

AppSettings = Annotated[Settings, Depends(get_settings)]


def check_batch_size(
    count: int, settings: Settings, what: str = "operations", limit: int | None = None
) -> None:
    limit = limit or settings.max_batch_size
    if count > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Too many {what}: {count} (max {limit})",
        )


def to_sync_record(row: dict) -> SyncRecord:
    return SyncRecord(
        record_id=row["record_id"],
        record_type=row["record_type"],
        version=row["version"],
        deleted=row["deleted"],
        updated_at=str(row["updated_at"]),
        ciphertext=row.get("ciphertext") if row["encrypted"] else None,
        data=None if row["encrypted"] else row.get("data"),
    )


async def process_push(db, auth: AuthContext, operations: list, encrypted: bool) -> JSONResponse | PushResponse:
    """Apply each operation independently; mixed results are normal.

    Responds 409 (with the same body shape) when any operation conflicted.
    """
    owner = auth.owner_id
    kind = "e2e" if encrypted else "plaintext"
    logger.info(f"PUSH | {owner} | {len(operations)} operations ({kind})")
    results: list[PushAck] = []
    conflicts: list[PushConflict] = []

    for op in operations:
        try:
            row, server = await push_record(
                db,
                owner,
                op.record_type,
                op.record_id,
                op.base_version,
                op.deleted,
                encrypted=encrypted,
                data=None if encrypted else op.data,
                ciphertext=op.ciphertext if encrypted else None,
            )
        except Exception as e:
            # Log full error server-side; generic message to the client
            logger.error(f"Database error during push of {op.record_type}/{op.record_id}: {e}")
            log_sync_operation(owner, "push", op.record_type, op.record_id, False, str(e))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Database error: push failed",
            )

        if row is not None:
            results.append(PushAck(record_id=op.record_id, record_type=op.record_type, version=row["version"]))
            log_sync_operation(owner, "push", op.record_type, op.record_id, True)
        else:
            conflicts.append(
                PushConflict(
                    record_id=op.record_id,
                    record_type=op.record_type,
                    server_version=server["version"],
                    server_ciphertext=server.get("ciphertext") if encrypted else None,
                    server_data=None if encrypted else server.get("data"),
                    server_deleted=server["deleted"],
                )
            )
            log_sync_operation(
                owner, "push", op.record_type, op.record_id, False,
                f"conflict: base v{op.base_version}, server v{server['version']}",
            )

    if results:
        await touch_last_sync(db, owner)

    logger.info(f"PUSH COMPLETE | {owner} | accepted={len(results)} conflicts={len(conflicts)}")
    response = PushResponse(success=not conflicts, results=results, conflicts=conflicts)
    if conflicts:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=response.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
    return response


async def process_pull(
    db, auth: AuthContext, encrypted: bool, cursor: str | None, record_type: str | None, limit: int
) -> PullResponse:
    owner = auth.owner_id
    logger.info(f"PULL | {owner} | cursor={cursor} type={record_type} limit={limit}")
    rows = await pull_records(db, owner, encrypted, cursor=cursor, record_type=record_type, limit=limit)
    records = [to_sync_record(row) for row in rows]
    logger.info(f"PULL COMPLETE | {owner} | {len(records)} records")
    return PullResponse(
        records=records,
        next_cursor=records[-1].updated_at if records else cursor,
        has_more=len(records) == limit,
    )


@router.post("/push", response_model=PushResponse, response_model_exclude_none=True)
@limiter.limit(PUSH_LIMIT)
async def push_encrypted(
    request: Request,
    body: PushRequest,
    auth: CurrentOwner,
    db: Database,
    settings: AppSettings,
):
    """
    Push encrypted record mutations.

    Per operation: absent -> insert at version 1; matching base version ->
    version + 1; otherwise a conflict carrying the server's ciphertext.
    """
    check_batch_size(len(body.operations), settings)
    return await process_push(db, auth, body.operations, encrypted=True)


@router.get("/pull", response_model=PullResponse, response_model_exclude_none=True)
async def pull_encrypted(
    auth: CurrentOwner,
    db: Database,
    settings: AppSettings,
    cursor: str | None = None,
    record_type: Annotated[str | None, Query(alias="recordType")] = None,
    limit: Annotated[int, Query(ge=1)] = 100,
):
    """Encrypted records changed after ``cursor`` (ascending ``updatedAt``)."""
    return await process_pull(db, auth, True, cursor, record_type, min(limit, settings.max_pull_limit))
