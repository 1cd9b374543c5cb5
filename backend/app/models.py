"""Pydantic models for API requests and responses.

Wire names are camelCase; Python attributes are snake_case.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RecordTypeName = Literal["bookmark", "space", "pinned-view"]
SyncModeName = Literal["off", "plaintext", "e2e"]


class WireModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Sync Models
# =============================================================================


class PushOperation(WireModel):
    """A single encrypted record mutation."""

    record_id: str = Field(..., min_length=1, max_length=200)
    record_type: RecordTypeName = "bookmark"
    base_version: int | None = Field(default=None, ge=0)  # None/0 for a new record
    ciphertext: str = Field(..., min_length=1)
    deleted: bool = False


class PlaintextPushOperation(WireModel):
    """A single plaintext record mutation."""

    record_id: str = Field(..., min_length=1, max_length=200)
    record_type: RecordTypeName
    base_version: int | None = Field(default=None, ge=0)
    data: dict[str, Any]
    deleted: bool = False


class PushRequest(WireModel):
    operations: list[PushOperation]


class PlaintextPushRequest(WireModel):
    operations: list[PlaintextPushOperation]


class PushAck(WireModel):
    record_id: str
    record_type: RecordTypeName
    version: int


class PushConflict(WireModel):
    """Server state of a record whose base version was stale."""

    record_id: str
    record_type: RecordTypeName
    server_version: int
    server_ciphertext: str | None = None
    server_data: dict[str, Any] | None = None
    server_deleted: bool = False


class PushResponse(WireModel):
    success: bool
    results: list[PushAck] = []
    conflicts: list[PushConflict] = []


class SyncRecord(WireModel):
    """A record as returned by pull / export."""

    record_id: str
    record_type: RecordTypeName
    version: int
    deleted: bool = False
    updated_at: str
    ciphertext: str | None = None
    data: dict[str, Any] | None = None


class PullResponse(WireModel):
    records: list[SyncRecord]
    next_cursor: str | None = None
    has_more: bool = False


class ChecksumResponse(WireModel):
    checksum: str
    count: int
    last_update: str | None = None
    per_type_counts: dict[str, int]


class ImportRecord(WireModel):
    record_id: str = Field(..., min_length=1, max_length=200)
    record_type: RecordTypeName
    data: dict[str, Any]
    version: int | None = None
    deleted: bool = False


class ImportRequest(WireModel):
    records: list[ImportRecord]


class ImportResponse(WireModel):
    imported: int
    results: list[PushAck] = []


class RetireResponse(WireModel):
    retired: int


# =============================================================================
# Settings Models
# =============================================================================


class SyncSettings(WireModel):
    sync_enabled: bool = False
    sync_mode: SyncModeName = "off"
    last_sync_at: datetime | None = None


class SyncSettingsUpdate(WireModel):
    sync_enabled: bool | None = None
    sync_mode: SyncModeName | None = None


# =============================================================================
# Vault Models
# =============================================================================


class KdfParamsModel(WireModel):
    algorithm: Literal["scrypt", "PBKDF2-SHA256"]
    n: int | None = Field(default=None, gt=1)
    r: int | None = Field(default=None, ge=1)
    p: int | None = Field(default=None, ge=1)
    iterations: int | None = Field(default=None, ge=1)
    salt_length: int = 16
    key_length: int = 32


class RecoveryWrapperModel(WireModel):
    code_hash: str
    salt: str
    wrapped_key: str
    kdf_params: KdfParamsModel
    used_at: str | None = None


class EnvelopeModel(WireModel):
    version: int = 1
    wrapped_key: str = Field(..., min_length=1)
    salt: str = Field(..., min_length=1)
    kdf_params: KdfParamsModel
    recovery_wrappers: list[RecoveryWrapperModel] = []


class EnvelopeResponse(WireModel):
    envelope: EnvelopeModel


class VaultInfo(WireModel):
    vault_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    recovery_codes_total: int = 0
    recovery_codes_remaining: int = 0


class VaultStatusResponse(WireModel):
    enabled: bool
    vault: VaultInfo | None = None


class VaultEnableResponse(WireModel):
    success: bool
    vault_id: str


class VaultDisableRequest(WireModel):
    action: Literal["verify", "delete-encrypted", "delete-vault"]


class VerifyPlaintextResponse(WireModel):
    verified: bool
    server_count: int
    expected_count: int
    server_checksum: str | None = None


class VaultExport(WireModel):
    version: int = 1
    exported_at: datetime
    envelope: EnvelopeModel | None = None
    records: list[SyncRecord]


class VaultImportRecord(WireModel):
    record_id: str = Field(..., min_length=1, max_length=200)
    record_type: RecordTypeName
    ciphertext: str = Field(..., min_length=1)
    deleted: bool = False


class VaultImportRequest(WireModel):
    records: list[VaultImportRecord]
    mode: Literal["merge", "replace", "keep-both"] = "merge"


class VaultImportResponse(WireModel):
    imported: int
    skipped: int = 0
    mode: str
