"""bookvault - offline-first bookmarks with end-to-end encrypted multi-device sync."""

from bookvault.core import Bookvault
from bookvault.types import (
    BookvaultError,
    ImportSummary,
    Record,
    RecordType,
    Resolution,
    SyncMode,
    SyncResult,
)

__version__ = "0.1.0"

__all__ = [
    "Bookvault",
    "BookvaultError",
    "ImportSummary",
    "Record",
    "RecordType",
    "Resolution",
    "SyncMode",
    "SyncResult",
]
