"""Bookmark export files.

An export is a JSON array of bookmark payloads, the same camelCase shape
the sync layer stores. Importing validates every entry through the
bookmark handler and counts what it had to leave out instead of failing
the whole file.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Set, Tuple

from bookvault.records import get_handler, new_record_id
from bookvault.types import ImportSummary, RecordType

logger = logging.getLogger(__name__)

IMPORT_MODES = ("merge", "replace")
DUPLICATE_STRATEGIES = ("skip", "keep")


def normalize_url(url: str) -> str:
    """Key used to spot the same link saved twice."""
    return url.strip().lower()


def dump_bookmarks(bookmarks: List[Dict[str, Any]]) -> str:
    return json.dumps(bookmarks, indent=2, ensure_ascii=False)


def parse_bookmarks(text: str) -> Tuple[List[Dict[str, Any]], int]:
    """Parse an export file into normalized bookmark payloads.

    Entries without an ``id`` get a fresh one and a missing title falls
    back to the URL. Anything else the bookmark handler rejects is counted
    as invalid and dropped.

    Returns:
        Tuple of (valid payloads, invalid count).

    Raises:
        ValueError: Empty file, bad JSON, not an array, or nothing valid in it.
    """
    if not text.strip():
        raise ValueError("The selected file is empty.")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON file: {e.msg}") from e
    if not isinstance(parsed, list):
        raise ValueError("JSON must be an array of bookmarks.")

    handler = get_handler(RecordType.BOOKMARK)
    valid: List[Dict[str, Any]] = []
    invalid = 0
    for item in parsed:
        if not isinstance(item, dict):
            invalid += 1
            continue
        candidate = dict(item)
        candidate.setdefault("id", new_record_id())
        if isinstance(candidate.get("url"), str) and not candidate.get("title"):
            candidate["title"] = candidate["url"]
        try:
            valid.append(handler.normalize(candidate))
        except ValueError as e:
            logger.debug(f"Skipping invalid bookmark entry: {e}")
            invalid += 1

    if not valid:
        raise ValueError("No valid bookmarks found.")
    return valid, invalid


def dedupe(bookmarks: Iterable[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Keep the first bookmark per URL. Returns (unique, duplicates dropped)."""
    seen: Set[str] = set()
    unique = []
    duplicates = 0
    for bookmark in bookmarks:
        key = normalize_url(bookmark["url"])
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        unique.append(bookmark)
    return unique, duplicates


def plan_import(
    existing: List[Dict[str, Any]],
    incoming: List[Dict[str, Any]],
    mode: str = "merge",
    duplicates: str = "skip",
) -> Tuple[List[Dict[str, Any]], List[str], ImportSummary]:
    """Decide what an import writes.

    ``replace`` dedupes the file by URL and removes every existing bookmark
    the file does not carry (by id). ``merge`` keeps existing bookmarks and
    skips or keeps incoming ones whose URL is already present. A merged
    bookmark whose id is taken by a different existing bookmark gets a new id.

    Returns:
        Tuple of (payloads to save, existing ids to delete, summary).
    """
    if mode not in IMPORT_MODES:
        raise ValueError(f"mode must be one of {', '.join(IMPORT_MODES)}")
    if duplicates not in DUPLICATE_STRATEGIES:
        raise ValueError(f"duplicates must be one of {', '.join(DUPLICATE_STRATEGIES)}")

    summary = ImportSummary()
    if mode == "replace":
        to_save, dropped = dedupe(incoming)
        summary.duplicates = summary.skipped = dropped
        keep_ids = {b["id"] for b in to_save}
        to_delete = [b["id"] for b in existing if b["id"] not in keep_ids]
        summary.imported = len(to_save)
        summary.removed = len(to_delete)
        return to_save, to_delete, summary

    seen = {normalize_url(b["url"]) for b in existing}
    taken = {b["id"] for b in existing}
    to_save = []
    for bookmark in incoming:
        key = normalize_url(bookmark["url"])
        if key in seen:
            summary.duplicates += 1
            if duplicates == "skip":
                summary.skipped += 1
                continue
        if bookmark["id"] in taken:
            bookmark = {**bookmark, "id": new_record_id()}
        seen.add(key)
        taken.add(bookmark["id"])
        to_save.append(bookmark)
    summary.imported = len(to_save)
    return to_save, [], summary
