"""Per-owner sync settings."""

from fastapi import APIRouter

from ..auth import CurrentOwner
from ..database import Database, get_sync_settings, update_sync_settings
from ..models import SyncSettings, SyncSettingsUpdate

router = APIRouter(prefix="/sync/settings", tags=["sync"])


def _to_model(row: dict) -> SyncSettings:
    return SyncSettings(
        sync_enabled=row.get("sync_enabled", False),
        sync_mode=row.get("sync_mode", "off"),
        last_sync_at=row.get("last_sync_at"),
    )


@router.get("", response_model=SyncSettings)
async def read_settings(auth: CurrentOwner, db: Database):
    return _to_model(await get_sync_settings(db, auth.owner_id))


@router.put("", response_model=SyncSettings)
async def write_settings(body: SyncSettingsUpdate, auth: CurrentOwner, db: Database):
    changes = body.model_dump(exclude_none=True)
    row = await update_sync_settings(db, auth.owner_id, changes)
    return _to_model(row)
