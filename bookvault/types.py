"""
Shared types for bookvault.

Dataclasses and exceptions used across the local store, the sync engine,
the vault and the HTTP client. The local store and the remote store speak
in terms of these types; nothing here touches SQLite or the network.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None for empty or invalid input."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


# === Sync queue states ===

SYNC_PENDING = 0
SYNC_DEAD_LETTER = 2
SYNC_CONFLICT = 3

# Hard cap on operations per push/import request (server rejects larger batches)
MAX_BATCH_SIZE = 100


# === Enums ===


class RecordType(str, Enum):
    """Kinds of user data that sync as independent records."""

    BOOKMARK = "bookmark"
    SPACE = "space"
    PINNED_VIEW = "pinned-view"


class SyncMode(str, Enum):
    """How the local store is mirrored to the remote store."""

    OFF = "off"
    PLAINTEXT = "plaintext"
    E2E = "e2e"


class Resolution(str, Enum):
    """Per-record conflict resolution choices."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    KEEP_BOTH = "keep-both"


class MergeStrategy(str, Enum):
    """Whole-dataset migration choices on first sign-in."""

    MERGE = "merge"
    CLOUD_WINS = "cloud-wins"


# === Exceptions ===


class BookvaultError(Exception):
    """Base exception for bookvault."""

    pass


class AuthError(BookvaultError):
    """Credentials missing, invalid or expired."""

    pass


class NetworkError(BookvaultError):
    """Transport failure or timeout. Recoverable; queued changes are kept."""

    pass


class RemoteError(BookvaultError):
    """The remote store returned an unexpected error response."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Remote error {status_code}: {detail}")


class RemoteValidationError(RemoteError):
    """The remote store rejected the request as malformed."""

    pass


class NotFoundError(RemoteError):
    """The requested remote resource does not exist."""

    pass


class RemoteConflictError(RemoteError):
    """The remote resource already exists (e.g. a vault is already enabled)."""

    pass


class CryptoError(BookvaultError):
    """Base exception for vault crypto errors."""

    pass


class WrongPassphrase(CryptoError):
    """Unwrap failed: wrong passphrase, or a corrupted envelope."""

    pass


class DecryptionError(CryptoError):
    """A ciphertext blob is malformed, truncated, or fails authentication."""

    pass


class EnvelopeError(CryptoError):
    """An envelope failed its own round-trip check after construction."""

    pass


class RecoveryCodeError(CryptoError):
    """No unused recovery wrapper matches the supplied code."""

    pass


class VaultLockedError(BookvaultError):
    """An operation needs the vault key but the session is locked."""

    pass


class MigrationPendingError(BookvaultError):
    """Local and cloud data both exist and the user has not chosen how to combine them."""

    pass


class TransitionError(BookvaultError):
    """A vault enable/disable transition could not run or was rolled back."""

    pass


# === Records ===


@dataclass
class Record:
    """A syncable unit of user data.

    Exactly one of ``payload`` (plaintext mode) or ``ciphertext`` (e2e mode)
    is set when the record travels over the wire. ``version`` is None until
    the first successful push.
    """

    record_id: str
    record_type: str
    payload: Optional[Dict[str, Any]] = None
    ciphertext: Optional[str] = None
    version: Optional[int] = None
    deleted: bool = False
    updated_at: Optional[str] = None

    @property
    def is_encrypted(self) -> bool:
        return self.ciphertext is not None


@dataclass
class OutboxEntry:
    """A pending local mutation waiting to be pushed."""

    id: int
    record_id: str
    record_type: str
    base_version: Optional[int]
    payload: Optional[Dict[str, Any]] = None
    ciphertext: Optional[str] = None
    deleted: bool = False
    enqueued_at: Optional[str] = None
    revision: int = 1
    status: int = SYNC_PENDING
    server_snapshot: Optional[Dict[str, Any]] = None
    # Retry tracking for resilient sync
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None


@dataclass
class ChecksumMeta:
    """Summary of the remote plaintext dataset used to skip redundant pulls."""

    checksum: str
    count: int
    last_update: Optional[str] = None
    per_type_counts: Dict[str, int] = field(default_factory=dict)


# === Wire results ===


@dataclass
class PushAck:
    record_id: str
    record_type: str
    version: int


@dataclass
class PushConflict:
    """Server-side state of a record whose base version was stale."""

    record_id: str
    record_type: str
    server_version: int
    server_payload: Optional[Dict[str, Any]] = None
    server_ciphertext: Optional[str] = None
    server_deleted: bool = False

    def as_record(self) -> Record:
        return Record(
            record_id=self.record_id,
            record_type=self.record_type,
            payload=self.server_payload,
            ciphertext=self.server_ciphertext,
            version=self.server_version,
            deleted=self.server_deleted,
        )


@dataclass
class PushResult:
    results: List[PushAck] = field(default_factory=list)
    conflicts: List[PushConflict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.conflicts) == 0


@dataclass
class PullPage:
    records: List[Record]
    next_cursor: Optional[str]
    has_more: bool


@dataclass
class VerificationReport:
    """Server's answer to "do you hold the plaintext copy I just uploaded?"."""

    verified: bool
    server_count: int
    expected_count: int
    server_checksum: Optional[str] = None


# === Sync bookkeeping ===


@dataclass
class SyncConflict:
    """Details of a sync conflict that was resolved.

    Kept in the local conflict history so users can review what was
    overwritten.
    """

    id: str
    record_type: str
    record_id: str
    local_version: Dict[str, Any]  # Snapshot of the local pending change
    cloud_version: Dict[str, Any]  # Snapshot of the server state
    resolution: str  # One of Resolution values
    resolved_at: datetime
    new_record_id: Optional[str] = None  # Set for keep-both


@dataclass
class SyncResult:
    """Result of a sync operation."""

    pushed: int = 0  # Records acknowledged by the server
    pulled: int = 0  # Remote records applied locally
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False  # Pull short-circuited by an unchanged checksum

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        """Number of conflicts encountered."""
        return len(self.conflicts)

    def merge(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            pushed=self.pushed + other.pushed,
            pulled=self.pulled + other.pulled,
            conflicts=self.conflicts + other.conflicts,
            errors=self.errors + other.errors,
            skipped=self.skipped or other.skipped,
        )


@dataclass
class MigrationSummary:
    """Per-type record counts on each side of a first-sign-in migration."""

    local_counts: Dict[str, int]
    cloud_counts: Dict[str, int]

    @property
    def local_total(self) -> int:
        return sum(self.local_counts.values())

    @property
    def cloud_total(self) -> int:
        return sum(self.cloud_counts.values())


@dataclass
class ImportSummary:
    """Outcome of importing a bookmark export file."""

    imported: int = 0
    skipped: int = 0  # Duplicates left out under duplicates="skip"
    duplicates: int = 0  # URLs already present (or repeated in the file)
    invalid: int = 0  # Entries that failed validation
    removed: int = 0  # Existing bookmarks deleted by mode="replace"


@dataclass
class SyncConfig:
    """Timing and sizing knobs for the sync engine and scheduler."""

    debounce_seconds: float = 2.0
    periodic_interval: float = 300.0
    batch_size: int = MAX_BATCH_SIZE
    page_size: int = 100
    max_retries: int = 5
    online_check_ttl: float = 30.0
    verify_attempts: int = 3
