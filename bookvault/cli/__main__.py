"""
bookvault CLI - local-first bookmarks with optional encrypted sync.

Usage:
    bookvault auth login URL TOKEN [--owner ID]
    bookvault bookmark add URL [--title T] [--tag T]...
    bookvault bookmark list [--tag T] [--json]
    bookvault bookmark export FILE
    bookvault bookmark import FILE [--mode merge|replace] [--duplicates skip|keep]
    bookvault space add NAME
    bookvault sync status|run|push|pull [--json]
    bookvault sync resolve TYPE ID local-wins|remote-wins|keep-both
    bookvault vault enable|unlock|disable|resume|recover
"""

import argparse
import logging
import os
import sys

from bookvault import Bookvault
from bookvault.cli.commands import cmd_auth, cmd_bookmark, cmd_space, cmd_sync, cmd_vault
from bookvault.records import SORT_KEYS
from bookvault.types import BookvaultError, MergeStrategy, RecordType, Resolution, SyncMode

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookvault",
        description="Local-first bookmarks with plaintext or end-to-end encrypted sync",
    )
    parser.add_argument("--owner", "-o", help="Owner/account ID", default=None)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # auth
    p_auth = subparsers.add_parser("auth", help="Backend credentials")
    auth_sub = p_auth.add_subparsers(dest="auth_action", required=True)
    auth_login = auth_sub.add_parser("login", help="Save backend URL and token")
    auth_login.add_argument("backend_url", help="Backend URL (https, or http on localhost)")
    auth_login.add_argument("token", help="Bearer token")
    auth_login.add_argument("--owner", dest="owner", help="Owner ID the token belongs to")
    auth_sub.add_parser("logout", help="Remove saved credentials")
    auth_status = auth_sub.add_parser("status", help="Show saved credentials")
    auth_status.add_argument("--json", "-j", action="store_true")

    # bookmark
    p_bookmark = subparsers.add_parser("bookmark", help="Bookmark operations")
    bm_sub = p_bookmark.add_subparsers(dest="bookmark_action", required=True)
    bm_add = bm_sub.add_parser("add", help="Save a bookmark")
    bm_add.add_argument("url", help="URL to save")
    bm_add.add_argument("--title", "-t", help="Title (defaults to the URL)")
    bm_add.add_argument("--description", "-d", help="Description")
    bm_add.add_argument("--tag", action="append", help="Tag (repeatable)")
    bm_add.add_argument("--space", "-s", help="Space ID")
    bm_add.add_argument("--color", help="Color label")
    bm_add.add_argument("--json", "-j", action="store_true")
    bm_list = bm_sub.add_parser("list", help="List bookmarks")
    bm_list.add_argument("--tag", help="Only bookmarks with this tag")
    bm_list.add_argument("--space", "-s", help="Only bookmarks in this space")
    bm_list.add_argument("--limit", "-l", type=int, default=50)
    bm_list.add_argument("--json", "-j", action="store_true")
    bm_rm = bm_sub.add_parser("rm", help="Delete a bookmark")
    bm_rm.add_argument("id", help="Bookmark ID")
    bm_tags = bm_sub.add_parser("tags", help="Tag counts")
    bm_tags.add_argument("--json", "-j", action="store_true")
    bm_export = bm_sub.add_parser("export", help="Write bookmarks to a JSON file")
    bm_export.add_argument("output", help="Output file")
    bm_import = bm_sub.add_parser("import", help="Load bookmarks from a JSON export")
    bm_import.add_argument("input", help="Export file to read")
    bm_import.add_argument("--mode", choices=["merge", "replace"], default="merge")
    bm_import.add_argument(
        "--duplicates",
        choices=["skip", "keep"],
        default="skip",
        help="What merge does with URLs you already have",
    )
    bm_import.add_argument("--json", "-j", action="store_true")

    # space
    p_space = subparsers.add_parser("space", help="Spaces and pinned views")
    sp_sub = p_space.add_subparsers(dest="space_action", required=True)
    sp_add = sp_sub.add_parser("add", help="Create a space")
    sp_add.add_argument("name", help="Space name")
    sp_add.add_argument("--color", help="Color label")
    sp_list = sp_sub.add_parser("list", help="List spaces")
    sp_list.add_argument("--json", "-j", action="store_true")
    sp_rm = sp_sub.add_parser("rm", help="Delete a space")
    sp_rm.add_argument("id", help="Space ID")
    sp_pin = sp_sub.add_parser("pin", help="Pin a saved view to a space")
    sp_pin.add_argument("space_id", help="Space ID")
    sp_pin.add_argument("name", help="View name")
    sp_pin.add_argument("--query", "-q", help="Search query")
    sp_pin.add_argument("--tag", help="Tag filter")
    sp_pin.add_argument("--sort", choices=SORT_KEYS, default="newest")

    # sync
    p_sync = subparsers.add_parser("sync", help="Local-to-cloud synchronization")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)
    for name, help_text in (
        ("status", "Show sync status"),
        ("run", "Push then pull"),
        ("push", "Push queued changes"),
        ("pull", "Pull remote changes"),
    ):
        p = sync_sub.add_parser(name, help=help_text)
        p.add_argument("--json", "-j", action="store_true")
    sync_mode = sync_sub.add_parser("mode", help="Set sync mode (off|plaintext)")
    sync_mode.add_argument("mode", choices=[m.value for m in SyncMode])
    sync_conflicts = sync_sub.add_parser("conflicts", help="List unresolved conflicts")
    sync_conflicts.add_argument("--history", action="store_true", help="Show resolved conflict history")
    sync_conflicts.add_argument("--limit", "-l", type=int, default=50)
    sync_conflicts.add_argument("--json", "-j", action="store_true")
    sync_resolve = sync_sub.add_parser("resolve", help="Resolve a conflict")
    sync_resolve.add_argument("record_type", choices=[t.value for t in RecordType])
    sync_resolve.add_argument("id", help="Record ID")
    sync_resolve.add_argument("resolution", choices=[r.value for r in Resolution])
    sync_migrate = sync_sub.add_parser("migrate", help="Merge local data with the cloud on first sign-in")
    sync_migrate.add_argument("strategy", choices=[s.value for s in MergeStrategy])
    sync_dead = sync_sub.add_parser("dead-letters", help="Show permanently failed entries")
    sync_dead.add_argument("--requeue", action="store_true", help="Move them back to the queue")
    sync_dead.add_argument("--json", "-j", action="store_true")

    # vault
    p_vault = subparsers.add_parser("vault", help="End-to-end encryption")
    vault_sub = p_vault.add_subparsers(dest="vault_action", required=True)
    vault_status = vault_sub.add_parser("status", help="Show vault status")
    vault_status.add_argument("--json", "-j", action="store_true")
    vault_enable = vault_sub.add_parser("enable", help="Encrypt all records and enable the vault")
    vault_enable.add_argument("--recovery-codes", type=int, default=8, help="Recovery codes to generate")
    vault_enable.add_argument("--kdf", choices=["scrypt", "pbkdf2"], default="scrypt")
    vault_sub.add_parser("unlock", help="Check the vault passphrase")
    vault_sub.add_parser("disable", help="Return to plaintext sync")
    vault_sub.add_parser("resume", help="Continue an interrupted enable/disable")
    vault_recover = vault_sub.add_parser("recover", help="Reset the passphrase with a recovery code")
    vault_recover.add_argument("code", help="Recovery code")
    vault_sub.add_parser("passphrase", help="Change the vault passphrase")
    vault_export = vault_sub.add_parser("export", help="Export encrypted records")
    vault_export.add_argument("output", help="Output JSON file")
    vault_import = vault_sub.add_parser("import", help="Import an encrypted export")
    vault_import.add_argument("input", help="Export JSON file")
    vault_import.add_argument("--mode", choices=["merge", "replace", "keep-both"], default="merge")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("bookvault").setLevel(logging.DEBUG)

    if args.command == "auth":
        cmd_auth(args)
        return

    try:
        bv = Bookvault(owner_id=args.owner or os.environ.get("BOOKVAULT_OWNER_ID"))
    except (ValueError, BookvaultError) as e:
        logger.error(f"Failed to initialize bookvault: {e}")
        sys.exit(1)

    try:
        if args.command == "bookmark":
            cmd_bookmark(args, bv)
        elif args.command == "space":
            cmd_space(args, bv)
        elif args.command == "sync":
            cmd_sync(args, bv)
        elif args.command == "vault":
            cmd_vault(args, bv)
    except (ValueError, KeyError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"File error: {e}")
        sys.exit(1)
    except BookvaultError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        bv.store.close()


if __name__ == "__main__":
    main()
