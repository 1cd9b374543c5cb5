"""Local storage and sync for bookvault."""

from .cloud import RemoteClient, load_credentials
from .conflicts import ConflictResolver
from .outbox import Outbox
from .scheduler import SyncScheduler
from .sqlite import LocalRecordStore
from .sync_engine import SyncEngine

__all__ = [
    "ConflictResolver",
    "LocalRecordStore",
    "Outbox",
    "RemoteClient",
    "SyncEngine",
    "SyncScheduler",
    "load_credentials",
]
