"""
Bookvault - one owner's local store wired to sync and the vault.

Bundles the session, local store, remote client, sync engine, conflict
resolver, vault transition and scheduler so callers (the CLI, embedding
applications) hold a single object.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from bookvault import transfer
from bookvault.broadcast import BroadcastChannel
from bookvault.records import new_record_id
from bookvault.storage.cloud import RemoteClient, load_credentials
from bookvault.storage.conflicts import ConflictResolver
from bookvault.storage.scheduler import SyncScheduler
from bookvault.storage.sqlite import LocalRecordStore
from bookvault.storage.sync_engine import SyncEngine
from bookvault.types import (
    AuthError,
    ImportSummary,
    Record,
    RecordType,
    Resolution,
    SyncConfig,
)
from bookvault.vault.session import VaultSession
from bookvault.vault.transition import VaultTransition

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "local"


class Bookvault:
    """Entry point for one owner's bookmarks.

    Args:
        owner_id: Account id (defaults to credentials/env, then ``local``).
        db_path: Override the local database path.
        remote: RemoteClient; loaded from credentials when omitted.
        config: Sync timing and sizing.
        channel: Broadcast channel shared with peer sessions.
        default_resolution: Background conflict policy (``None`` parks conflicts).
    """

    def __init__(
        self,
        owner_id: Optional[str] = None,
        db_path: Optional[Path] = None,
        remote: Optional[RemoteClient] = None,
        config: Optional[SyncConfig] = None,
        channel: Optional[BroadcastChannel] = None,
        default_resolution: Optional[Resolution] = Resolution.REMOTE_WINS,
    ):
        creds = load_credentials() if remote is None else None
        if remote is None and creds is not None:
            remote = RemoteClient(creds["backend_url"], creds["auth_token"])
        self.owner_id = (
            owner_id
            or (creds or {}).get("owner_id")
            or os.environ.get("BOOKVAULT_OWNER_ID")
            or DEFAULT_OWNER
        )
        self.config = config or SyncConfig()
        self.session = VaultSession()
        self.store = LocalRecordStore(self.owner_id, db_path=db_path, session=self.session)
        self.remote = remote
        self.resolver = ConflictResolver(self.store, default_resolution=default_resolution)
        self._engine: Optional[SyncEngine] = None
        self._vault: Optional[VaultTransition] = None
        self._channel = channel

    # === Wiring ===

    @property
    def engine(self) -> SyncEngine:
        if self.remote is None:
            raise AuthError(
                "Sync is not configured. Run `bookvault login` or set "
                "BOOKVAULT_BACKEND_URL and BOOKVAULT_AUTH_TOKEN."
            )
        if self._engine is None:
            self._engine = SyncEngine(
                self.store,
                self.remote,
                config=self.config,
                resolver=self.resolver,
                channel=self._channel,
            )
        return self._engine

    @property
    def vault(self) -> VaultTransition:
        if self._vault is None:
            self._vault = VaultTransition(self.store, self.remote, self.engine, config=self.config)
        return self._vault

    def scheduler(self) -> SyncScheduler:
        scheduler = SyncScheduler(self.engine, self.config)
        scheduler.attach(self.store)
        return scheduler

    # === Bookmarks ===

    def add_bookmark(
        self,
        url: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        space_id: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Record:
        payload: Dict[str, Any] = {
            "id": new_record_id(),
            "url": url,
            "title": title or url,
            "tags": sorted(set(tags or [])),
        }
        if description:
            payload["description"] = description
        if space_id:
            payload["spaceId"] = space_id
        if color:
            payload["color"] = color
        return self.store.save_record(RecordType.BOOKMARK, payload)

    def update_record(self, record_type, record_id: str, **changes) -> Record:
        current = self.store.get_record(record_type, record_id)
        if current is None or current.deleted:
            raise KeyError(f"{record_type}/{record_id} not found")
        payload = dict(current.payload or {})
        payload.update({k: v for k, v in changes.items() if v is not None})
        return self.store.save_record(record_type, payload, record_id=record_id)

    def add_space(self, name: str, color: Optional[str] = None) -> Record:
        payload: Dict[str, Any] = {"id": new_record_id(), "name": name}
        if color:
            payload["color"] = color
        return self.store.save_record(RecordType.SPACE, payload)

    def add_pinned_view(
        self,
        space_id: str,
        name: str,
        search_query: str = "",
        tag: Optional[str] = None,
        sort_key: str = "newest",
    ) -> Record:
        payload: Dict[str, Any] = {
            "id": new_record_id(),
            "spaceId": space_id,
            "name": name,
            "searchQuery": search_query,
            "sortKey": sort_key,
        }
        if tag:
            payload["tag"] = tag
        return self.store.save_record(RecordType.PINNED_VIEW, payload)

    def delete(self, record_type, record_id: str) -> bool:
        return self.store.delete_record(record_type, record_id)

    def bookmarks(self, tag: Optional[str] = None) -> List[Dict[str, Any]]:
        payloads = self.store.get_payloads(RecordType.BOOKMARK)
        if tag is not None:
            ids = set(self.store.tag_index().get(tag, []))
            payloads = [p for p in payloads if p["id"] in ids]
        return sorted(payloads, key=lambda p: p.get("createdAt", ""), reverse=True)

    def export_bookmarks(self, path) -> List[Dict[str, Any]]:
        """Write live bookmarks to ``path`` as a JSON array; returns them."""
        bookmarks = self.bookmarks()
        Path(path).write_text(transfer.dump_bookmarks(bookmarks) + "\n", encoding="utf-8")
        logger.info(f"Exported {len(bookmarks)} bookmarks to {path}")
        return bookmarks

    def import_bookmarks(self, path, mode: str = "merge", duplicates: str = "skip") -> ImportSummary:
        """Load an export file into the local store.

        Args:
            path: JSON array of bookmarks (as written by ``export_bookmarks``).
            mode: ``merge`` adds to what is here; ``replace`` deletes
                bookmarks the file does not contain.
            duplicates: For ``merge``, ``skip`` or ``keep`` bookmarks whose
                URL already exists.

        Raises:
            ValueError: Unreadable file contents or an unknown mode.
        """
        incoming, invalid = transfer.parse_bookmarks(Path(path).read_text(encoding="utf-8"))
        to_save, to_delete, summary = transfer.plan_import(
            self.bookmarks(), incoming, mode=mode, duplicates=duplicates
        )
        summary.invalid = invalid
        for record_id in to_delete:
            self.store.delete_record(RecordType.BOOKMARK, record_id)
        for payload in to_save:
            self.store.save_record(RecordType.BOOKMARK, payload)
        logger.info(
            f"Imported {summary.imported} bookmarks ({mode}): {summary.skipped} skipped, "
            f"{summary.invalid} invalid, {summary.removed} removed"
        )
        return summary

    def spaces(self) -> List[Dict[str, Any]]:
        return sorted(self.store.get_payloads(RecordType.SPACE), key=lambda p: p.get("name", ""))

    def pinned_views(self, space_id: Optional[str] = None) -> List[Dict[str, Any]]:
        views = self.store.get_payloads(RecordType.PINNED_VIEW)
        if space_id is not None:
            views = [v for v in views if v.get("spaceId") == space_id]
        return views
