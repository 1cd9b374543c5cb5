"""Sync commands for bookvault CLI - local-to-cloud synchronization."""

import logging
import sys
from typing import TYPE_CHECKING

from bookvault.types import (
    AuthError,
    BookvaultError,
    MergeStrategy,
    MigrationPendingError,
    Resolution,
    SyncMode,
    SyncResult,
)

from .helpers import ensure_unlocked, print_json

if TYPE_CHECKING:
    from bookvault import Bookvault

logger = logging.getLogger(__name__)


def _report(result: SyncResult, verb: str) -> None:
    if result.skipped and not result.pushed:
        print("✓ Already up to date")
    else:
        print(f"✓ {verb}: {result.pushed} pushed, {result.pulled} pulled")
    if result.conflicts:
        print(f"⚠️  {result.conflict_count} conflicts resolved:")
        for c in result.conflicts:
            suffix = f" -> {c.new_record_id}" if c.new_record_id else ""
            print(f"   {c.record_type}/{c.record_id[:8]}... {c.resolution}{suffix}")
    for error in result.errors:
        print(f"✗ {error}")
    if result.errors:
        print("  Tip: changes stay queued locally and will be pushed on the next sync")


def _result_json(result: SyncResult) -> dict:
    return {
        "pushed": result.pushed,
        "pulled": result.pulled,
        "skipped": result.skipped,
        "conflicts": [
            {
                "recordType": c.record_type,
                "recordId": c.record_id,
                "resolution": c.resolution,
                "newRecordId": c.new_record_id,
            }
            for c in result.conflicts
        ],
        "errors": result.errors,
    }


def _print_status(bv: "Bookvault", as_json: bool) -> None:
    status = bv.engine.status()
    online = bv.engine.is_online()
    if as_json:
        print_json(dict(status, online=online))
        return

    print("Sync Status")
    print("=" * 50)
    print()
    print(f"🔐 Mode: {status['mode']}")
    print(f"{'🟢' if online else '🔴'} Backend: {'reachable' if online else 'offline'}")
    print(f"{'📤' if status['pending'] else '✓'} Pending operations: {status['pending']}")
    if status["conflicts"]:
        print(f"⚠️  Unresolved conflicts: {status['conflicts']}")
        print("   Run `bookvault sync conflicts` to review them")
    if status["dead_letters"]:
        print(f"🔴 Dead-lettered: {status['dead_letters']}")
        print("   These entries failed permanently. Use `bookvault sync dead-letters --requeue` to retry.")
    print(f"🕐 Last sync: {status['last_sync_at'] or 'Never'}")
    if status["migration_pending"]:
        print()
        print("💡 Local and cloud data differ. Run `bookvault sync migrate merge|cloud-wins`")


def cmd_sync(args, bv: "Bookvault"):
    """Handle sync subcommands."""
    action = args.sync_action

    if action == "mode":
        _set_mode(args, bv)
        return

    try:
        if action == "status":
            _print_status(bv, args.json)
            return

        ensure_unlocked(bv)

        if action in ("run", "push", "pull"):
            if action == "run":
                result = bv.engine.sync()
            elif action == "push":
                result = bv.engine.push()
            else:
                result = bv.engine.pull()
            if args.json:
                print_json(_result_json(result))
            else:
                _report(result, {"run": "Synced", "push": "Pushed", "pull": "Pulled"}[action])
            if not result.success:
                sys.exit(1)

        elif action == "conflicts":
            _show_conflicts(args, bv)

        elif action == "resolve":
            conflict = bv.resolver.resolve(args.record_type, args.id, Resolution(args.resolution))
            print(f"✓ Resolved {args.record_type}/{args.id[:8]}... as {conflict.resolution}")
            if conflict.new_record_id:
                print(f"  Local copy kept as {conflict.new_record_id}")

        elif action == "migrate":
            summary = bv.engine.check_migration()
            if summary is None:
                print("✓ No migration pending")
                return
            result = bv.engine.resolve_migration(MergeStrategy(args.strategy))
            _report(result, f"Migrated ({args.strategy})")

        elif action == "dead-letters":
            outbox = bv.store.outbox
            if args.requeue:
                count = outbox.requeue_dead_letters()
                print(f"✓ Requeued {count} dead-lettered entries")
                return
            entries = outbox.get_dead_letters()
            if args.json:
                print_json(
                    [
                        {
                            "recordType": e.record_type,
                            "recordId": e.record_id,
                            "retries": e.retry_count,
                            "lastError": e.last_error,
                        }
                        for e in entries
                    ]
                )
                return
            if not entries:
                print("✓ No dead-lettered entries")
                return
            for e in entries:
                print(f"  {e.record_type}/{e.record_id[:8]}...  retries={e.retry_count}  {e.last_error or ''}")

    except MigrationPendingError as e:
        print(f"✗ {e}")
        print("  Run `bookvault sync migrate merge` or `bookvault sync migrate cloud-wins`")
        sys.exit(1)
    except AuthError as e:
        print(f"✗ {e}")
        print("  Run `bookvault auth login` to re-authenticate")
        sys.exit(1)
    except BookvaultError as e:
        print(f"✗ Sync failed: {e}")
        sys.exit(1)


def _show_conflicts(args, bv: "Bookvault") -> None:
    if args.history:
        history = bv.resolver.get_history(limit=args.limit)
        if args.json:
            print_json(
                [
                    {
                        "recordType": c.record_type,
                        "recordId": c.record_id,
                        "resolution": c.resolution,
                        "resolvedAt": c.resolved_at,
                        "newRecordId": c.new_record_id,
                    }
                    for c in history
                ]
            )
            return
        if not history:
            print("No conflict history.")
            return
        for c in history:
            print(f"  {c.resolved_at.isoformat()[:19]}  {c.record_type}/{c.record_id[:8]}...  {c.resolution}")
        return

    pending = bv.resolver.pending()
    if args.json:
        print_json(
            [
                {
                    "recordType": e.record_type,
                    "recordId": e.record_id,
                    "baseVersion": e.base_version,
                    "server": e.server_snapshot,
                }
                for e in pending
            ]
        )
        return
    if not pending:
        print("✓ No unresolved conflicts")
        return
    print(f"Unresolved conflicts ({len(pending)})")
    for e in pending:
        server_version = (e.server_snapshot or {}).get("version")
        print(f"  {e.record_type}/{e.record_id}  local base v{e.base_version}, server v{server_version}")
    print()
    print("💡 Run `bookvault sync resolve TYPE ID local-wins|remote-wins|keep-both`")


def _set_mode(args, bv: "Bookvault") -> None:
    current = bv.store.sync_mode
    target = SyncMode(args.mode)
    if current is SyncMode.E2E:
        print("✗ Vault is enabled. Run `bookvault vault disable` first.")
        sys.exit(1)
    if target is SyncMode.E2E:
        print("✗ Use `bookvault vault enable` to turn on end-to-end encryption.")
        sys.exit(1)
    bv.store.set_sync_mode(target)
    if bv.remote is not None:
        try:
            bv.remote.update_settings(sync_enabled=target is not SyncMode.OFF, sync_mode=target)
        except BookvaultError as e:
            logger.debug(f"Could not update remote sync settings: {e}")
    print(f"✓ Sync mode: {target.value}")
