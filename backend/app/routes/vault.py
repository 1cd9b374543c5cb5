"""Vault routes: envelope storage, disable protocol, encrypted backup."""

import time
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from ..auth import CurrentOwner
from ..database import (
    Database,
    count_records,
    create_vault,
    delete_encrypted_records,
    delete_vault,
    get_record,
    get_vault,
    list_records,
    push_record,
    tombstone_row,
    update_sync_settings,
    update_vault_envelope,
)
from ..logging_config import get_logger
from ..models import (
    EnvelopeModel,
    EnvelopeResponse,
    VaultDisableRequest,
    VaultEnableResponse,
    VaultExport,
    VaultImportRequest,
    VaultImportResponse,
    VaultInfo,
    VaultStatusResponse,
    VerifyPlaintextResponse,
)
from .plaintext import plaintext_checksum
from .sync import AppSettings, check_batch_size, to_sync_record

logger = get_logger("bookvault.vault")
router = APIRouter(prefix="/vault", tags=["vault"])


def _vault_info(vault: dict) -> VaultInfo:
    wrappers = (vault.get("envelope") or {}).get("recoveryWrappers") or []
    return VaultInfo(
        vault_id=str(vault["id"]),
        created_at=vault.get("created_at"),
        updated_at=vault.get("updated_at"),
        recovery_codes_total=len(wrappers),
        recovery_codes_remaining=sum(1 for w in wrappers if not w.get("usedAt")),
    )


async def _require_vault(db, owner_id: str) -> dict:
    vault = await get_vault(db, owner_id)
    if vault is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No vault for this account")
    return vault


@router.get("", response_model=VaultStatusResponse)
async def vault_status(auth: CurrentOwner, db: Database):
    vault = await get_vault(db, auth.owner_id)
    if vault is None:
        return VaultStatusResponse(enabled=False)
    return VaultStatusResponse(enabled=True, vault=_vault_info(vault))


@router.post("/enable", response_model=VaultEnableResponse)
async def enable_vault(envelope: EnvelopeModel, auth: CurrentOwner, db: Database):
    """
    Register the owner's key envelope.

    The server only ever sees the wrapped key. 409 if a vault exists.
    """
    env = envelope.model_dump(by_alias=True, exclude_none=True)
    vault = await create_vault(db, auth.owner_id, env)
    if vault is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Vault already exists")
    await update_sync_settings(db, auth.owner_id, {"sync_enabled": True, "sync_mode": "e2e"})
    logger.info(f"VAULT ENABLE | {auth.owner_id} | vault={vault['id']}")
    return VaultEnableResponse(success=True, vault_id=str(vault["id"]))


@router.get("/envelope", response_model=EnvelopeResponse, response_model_exclude_none=True)
async def get_envelope(auth: CurrentOwner, db: Database):
    vault = await _require_vault(db, auth.owner_id)
    return EnvelopeResponse(envelope=EnvelopeModel.model_validate(vault["envelope"]))


@router.put("/envelope", response_model=EnvelopeResponse, response_model_exclude_none=True)
async def put_envelope(envelope: EnvelopeModel, auth: CurrentOwner, db: Database):
    """Replace the envelope (passphrase change, recovery code consumed)."""
    await _require_vault(db, auth.owner_id)
    await update_vault_envelope(db, auth.owner_id, envelope.model_dump(by_alias=True, exclude_none=True))
    logger.info(f"VAULT ENVELOPE | {auth.owner_id} | updated")
    return EnvelopeResponse(envelope=envelope)


@router.post("/disable")
async def disable_vault(body: VaultDisableRequest, auth: CurrentOwner, db: Database):
    """
    One step of the server side of vault disable.

    - verify: report plaintext and encrypted counts
    - delete-encrypted: physically remove encrypted rows
    - delete-vault: remove the envelope and flip sync mode to plaintext
      (idempotent; succeeds when no vault exists)
    """
    owner = auth.owner_id
    if body.action == "verify":
        return {
            "success": True,
            "plaintextCount": await count_records(db, owner, encrypted=False),
            "encryptedCount": await count_records(db, owner, encrypted=True),
        }

    if body.action == "delete-encrypted":
        deleted = await delete_encrypted_records(db, owner)
        logger.info(f"VAULT DISABLE | {owner} | deleted {deleted} encrypted records")
        return {"success": True, "deleted": deleted}

    existed = await delete_vault(db, owner)
    await update_sync_settings(db, owner, {"sync_mode": "plaintext"})
    logger.info(f"VAULT DISABLE | {owner} | vault deleted (existed={existed})")
    return {"success": True, "deleted": existed}


@router.get("/disable/verify-plaintext", response_model=VerifyPlaintextResponse)
async def verify_plaintext(
    auth: CurrentOwner,
    db: Database,
    expected_count: Annotated[int | None, Query(alias="expectedCount")] = None,
):
    """Does the plaintext store hold exactly ``expectedCount`` live records?"""
    if expected_count is None or expected_count < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="expectedCount must be a non-negative integer",
        )
    meta = await plaintext_checksum(db, auth.owner_id)
    verified = meta.count == expected_count
    logger.info(
        f"VAULT VERIFY | {auth.owner_id} | server={meta.count} expected={expected_count} verified={verified}"
    )
    return VerifyPlaintextResponse(
        verified=verified,
        server_count=meta.count,
        expected_count=expected_count,
        server_checksum=meta.checksum,
    )


@router.get("/export", response_model=VaultExport, response_model_exclude_none=True)
async def export_vault(auth: CurrentOwner, db: Database):
    """Encrypted backup: the envelope plus every encrypted row (tombstones included)."""
    vault = await _require_vault(db, auth.owner_id)
    rows = await list_records(db, auth.owner_id, encrypted=True, include_deleted=True)
    return VaultExport(
        exported_at=datetime.now(timezone.utc),
        envelope=EnvelopeModel.model_validate(vault["envelope"]),
        records=[to_sync_record(row) for row in rows],
    )


@router.post("/import", response_model=VaultImportResponse)
async def import_vault(body: VaultImportRequest, auth: CurrentOwner, db: Database, settings: AppSettings):
    """
    Restore encrypted records from a backup.

    - merge: add records that do not exist; keep existing ones
    - replace: overwrite existing records (version + 1), tombstone the rest
    - keep-both: records whose id exists are added under a new id
    """
    check_batch_size(len(body.records), settings, "records", limit=settings.max_import_records)
    owner = auth.owner_id
    await _require_vault(db, owner)
    imported = skipped = 0
    suffix = int(time.time() * 1000)

    for rec in body.records:
        existing = await get_record(db, owner, rec.record_type, rec.record_id, True)
        record_id = rec.record_id
        base_version = None
        if existing is not None:
            if body.mode == "merge":
                skipped += 1
                continue
            if body.mode == "keep-both":
                record_id = f"{rec.record_id}-{suffix}"
            else:
                base_version = existing["version"]
        row, _ = await push_record(
            db, owner, rec.record_type, record_id, base_version, rec.deleted,
            encrypted=True, ciphertext=rec.ciphertext,
        )
        if row is None:
            skipped += 1
        else:
            imported += 1

    if body.mode == "replace":
        keep = {(r.record_type, r.record_id) for r in body.records}
        for row in await list_records(db, owner, encrypted=True):
            if (row["record_type"], row["record_id"]) not in keep:
                await tombstone_row(db, row)

    logger.info(f"VAULT IMPORT | {owner} | mode={body.mode} imported={imported} skipped={skipped}")
    return VaultImportResponse(imported=imported, skipped=skipped, mode=body.mode)
