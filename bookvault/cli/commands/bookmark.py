"""Bookmark, space and pinned-view commands for bookvault CLI."""

import sys
from dataclasses import asdict
from typing import TYPE_CHECKING

from bookvault.records import SORT_KEYS
from bookvault.types import RecordType

from .helpers import ensure_unlocked, print_json

if TYPE_CHECKING:
    from bookvault import Bookvault


def _print_bookmark(b: dict) -> None:
    tags = f"  [{', '.join(b['tags'])}]" if b.get("tags") else ""
    print(f"  {b['id'][:8]}  {b.get('title') or b['url']}{tags}")
    if b.get("title") and b["title"] != b["url"]:
        print(f"            {b['url']}")


def cmd_bookmark(args, bv: "Bookvault"):
    """Handle bookmark subcommands."""
    ensure_unlocked(bv)

    if args.bookmark_action == "add":
        record = bv.add_bookmark(
            args.url,
            title=args.title,
            description=args.description,
            tags=args.tag,
            space_id=args.space,
            color=args.color,
        )
        if args.json:
            print_json(record.payload)
        else:
            print(f"✓ Bookmark saved: {record.record_id[:8]}...")

    elif args.bookmark_action == "list":
        bookmarks = bv.bookmarks(tag=args.tag)
        if args.space:
            bookmarks = [b for b in bookmarks if b.get("spaceId") == args.space]
        bookmarks = bookmarks[: args.limit]
        if args.json:
            print_json(bookmarks)
            return
        if not bookmarks:
            print("No bookmarks.")
            return
        print(f"Bookmarks ({len(bookmarks)})")
        print("=" * 50)
        for b in bookmarks:
            _print_bookmark(b)

    elif args.bookmark_action == "rm":
        if bv.delete(RecordType.BOOKMARK, args.id):
            print(f"✓ Bookmark {args.id[:8]}... deleted")
        else:
            print(f"✗ Bookmark {args.id} not found")
            sys.exit(1)

    elif args.bookmark_action == "tags":
        counts = {tag: len(ids) for tag, ids in bv.store.tag_index().items()}
        if args.json:
            print_json(counts)
            return
        for tag, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
            print(f"  {tag}: {count}")

    elif args.bookmark_action == "export":
        bookmarks = bv.export_bookmarks(args.output)
        print(f"✓ Exported {len(bookmarks)} bookmarks to {args.output}")

    elif args.bookmark_action == "import":
        summary = bv.import_bookmarks(args.input, mode=args.mode, duplicates=args.duplicates)
        if args.json:
            print_json(asdict(summary))
            return
        print(f"✓ Imported {summary.imported} bookmarks ({args.mode})")
        if summary.skipped:
            print(f"  {summary.skipped} duplicates skipped")
        if summary.invalid:
            print(f"  {summary.invalid} invalid entries ignored")
        if summary.removed:
            print(f"  {summary.removed} existing bookmarks removed")


def cmd_space(args, bv: "Bookvault"):
    """Handle space and pinned-view subcommands."""
    ensure_unlocked(bv)

    if args.space_action == "add":
        record = bv.add_space(args.name, color=args.color)
        print(f"✓ Space created: {args.name} ({record.record_id[:8]}...)")

    elif args.space_action == "list":
        spaces = bv.spaces()
        if args.json:
            print_json(spaces)
            return
        if not spaces:
            print("No spaces.")
            return
        for space in spaces:
            views = bv.pinned_views(space["id"])
            print(f"  {space['id'][:8]}  {space['name']}  ({len(views)} pinned views)")

    elif args.space_action == "rm":
        if bv.delete(RecordType.SPACE, args.id):
            print(f"✓ Space {args.id[:8]}... deleted")
        else:
            print(f"✗ Space {args.id} not found")
            sys.exit(1)

    elif args.space_action == "pin":
        if args.sort not in SORT_KEYS:
            print(f"✗ Unknown sort key: {args.sort}")
            sys.exit(1)
        record = bv.add_pinned_view(
            args.space_id, args.name, search_query=args.query or "", tag=args.tag, sort_key=args.sort
        )
        print(f"✓ Pinned view saved: {args.name} ({record.record_id[:8]}...)")
