"""Deterministic checksum over a plaintext record set.

Both the server (``GET /sync/plaintext/checksum``) and clients hash the
same canonical view: one ``{recordId, recordType, data, version}`` object
per live record, sorted by record id, serialized as JSON with sorted keys
and no whitespace. An empty set hashes the literal ``[]``.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

from bookvault.records import HANDLERS
from bookvault.types import ChecksumMeta


def canonical_entry(
    record_id: str, record_type: str, data: Optional[Mapping[str, Any]], version: Optional[int]
) -> Dict[str, Any]:
    return {
        "recordId": record_id,
        "recordType": record_type,
        "data": dict(data) if data is not None else None,
        "version": version or 0,
    }


def canonical_json(entries: Iterable[Mapping[str, Any]]) -> str:
    ordered = sorted(entries, key=lambda e: (e["recordId"], e["recordType"]))
    return json.dumps(ordered, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(entries: Iterable[Mapping[str, Any]]) -> str:
    """SHA-256 hex digest of the canonical view; independent of input order."""
    return hashlib.sha256(canonical_json(entries).encode("utf-8")).hexdigest()


def per_type_counts(entries: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = {handler.plural: 0 for handler in HANDLERS.values()}
    for entry in entries:
        for record_type, handler in HANDLERS.items():
            if entry["recordType"] == record_type.value:
                counts[handler.plural] += 1
                break
    return counts


def build_checksum_meta(
    entries: List[Mapping[str, Any]], last_update: Optional[str] = None
) -> ChecksumMeta:
    return ChecksumMeta(
        checksum=compute_checksum(entries),
        count=len(entries),
        last_update=last_update,
        per_type_counts=per_type_counts(entries),
    )
