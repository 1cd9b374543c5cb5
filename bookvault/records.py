"""
Record payload types and their per-type handlers.

Each syncable record type (bookmark, space, pinned view) registers a
``RecordHandler`` that knows how to validate/serialize its payload, build
a typed object from a payload, and strip a payload down to what a
tombstone keeps. Sync code never branches on record type directly; it
looks up the handler.

Payloads use the camelCase keys the remote store and other clients expect.
"""

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from bookvault.types import RecordType, utc_now

SORT_KEYS = ("newest", "oldest", "title")


@dataclass
class Bookmark:
    id: str
    title: str
    url: str
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    color: Optional[str] = None
    space_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None


@dataclass
class Space:
    id: str
    name: str
    color: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None


@dataclass
class PinnedView:
    id: str
    space_id: str
    name: str
    search_query: str = ""
    tag: Optional[str] = None
    sort_key: str = "newest"
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _validate_bookmark(obj: Bookmark) -> None:
    if not obj.url or not isinstance(obj.url, str):
        raise ValueError("bookmark url is required")
    if not isinstance(obj.tags, list) or not all(isinstance(t, str) for t in obj.tags):
        raise ValueError("bookmark tags must be a list of strings")


def _validate_space(obj: Space) -> None:
    if not obj.name or not isinstance(obj.name, str):
        raise ValueError("space name is required")


def _validate_pinned_view(obj: PinnedView) -> None:
    if not obj.space_id:
        raise ValueError("pinned view spaceId is required")
    if obj.sort_key not in SORT_KEYS:
        raise ValueError(f"pinned view sortKey must be one of {', '.join(SORT_KEYS)}")


class RecordHandler:
    """Serialize/deserialize/tombstone operations for one record type."""

    def __init__(
        self,
        record_type: RecordType,
        model: Type,
        validate: Callable[[Any], None],
        plural: str,
    ):
        self.record_type = record_type
        self.model = model
        self.plural = plural
        self._validate = validate
        self._fields = set(model.__dataclass_fields__)

    def deserialize(self, payload: Dict[str, Any]) -> Any:
        """Build a typed object from a camelCase payload.

        Unknown keys are ignored so newer clients can add fields.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"{self.record_type.value} payload must be an object")
        kwargs = {}
        for key, value in payload.items():
            name = _snake(key)
            if name in self._fields:
                kwargs[name] = value
        try:
            obj = self.model(**kwargs)
        except TypeError as e:
            raise ValueError(f"invalid {self.record_type.value} payload: {e}") from e
        self._validate(obj)
        return obj

    def serialize(self, obj: Any) -> Dict[str, Any]:
        """Typed object to camelCase payload. ``None`` fields are omitted."""
        return {_camel(k): v for k, v in asdict(obj).items() if v is not None}

    def normalize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a payload and return its canonical form."""
        return self.serialize(self.deserialize(payload))

    def apply_tombstone(self, payload: Optional[Dict[str, Any]], record_id: str) -> Dict[str, Any]:
        """Reduce a payload to what a deleted record retains.

        Tombstones keep identity and timestamps only; user content is dropped.
        """
        payload = payload or {}
        kept = {"id": payload.get("id", record_id)}
        for key in ("createdAt", "updatedAt"):
            if payload.get(key):
                kept[key] = payload[key]
        if self.record_type is RecordType.PINNED_VIEW and payload.get("spaceId"):
            kept["spaceId"] = payload["spaceId"]
        kept["updatedAt"] = utc_now()
        return kept


HANDLERS: Dict[RecordType, RecordHandler] = {
    RecordType.BOOKMARK: RecordHandler(RecordType.BOOKMARK, Bookmark, _validate_bookmark, "bookmarks"),
    RecordType.SPACE: RecordHandler(RecordType.SPACE, Space, _validate_space, "spaces"),
    RecordType.PINNED_VIEW: RecordHandler(
        RecordType.PINNED_VIEW, PinnedView, _validate_pinned_view, "pinnedViews"
    ),
}


def get_handler(record_type) -> RecordHandler:
    """Look up the handler for a record type (enum or wire string)."""
    try:
        return HANDLERS[RecordType(record_type)]
    except ValueError:
        raise ValueError(f"Unknown record type: {record_type!r}") from None


def new_record_id() -> str:
    return str(uuid.uuid4())


def payload_timestamp(payload: Optional[Dict[str, Any]]) -> str:
    """Most recent modification time recorded in a payload (ISO string, may be empty)."""
    if not payload:
        return ""
    return payload.get("updatedAt") or payload.get("createdAt") or ""
