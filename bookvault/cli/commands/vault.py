"""Vault (end-to-end encryption) commands for bookvault CLI."""

import json
import logging
import sys
from getpass import getpass
from typing import TYPE_CHECKING

from bookvault.types import BookvaultError, CryptoError, SyncMode, TransitionError
from bookvault.vault.envelope import KdfParams

from .helpers import ensure_unlocked, print_json, read_passphrase

if TYPE_CHECKING:
    from bookvault import Bookvault

logger = logging.getLogger(__name__)


def _progress(stage: str, done: int, total: int) -> None:
    if total and (done == total or done % 100 == 0):
        print(f"  {stage}: {done}/{total}")


def _print_disable_result(result) -> None:
    if result.disabled:
        print(f"✓ Vault disabled. {result.expected_count} records restored to plaintext sync.")
        return
    report = result.report
    print(f"✗ Verification failed after {result.attempts} attempt(s)")
    if report is not None:
        print(f"  Server holds {report.server_count} of {report.expected_count} records")
    print("  Encrypted data was left untouched. Run `bookvault vault resume` to retry.")


def cmd_vault(args, bv: "Bookvault"):
    """Handle vault subcommands."""
    action = args.vault_action
    try:
        if action == "status":
            state = bv.vault.get_state()
            remote_status = None
            try:
                remote_status = bv.remote.get_vault_status()
            except BookvaultError as e:
                logger.debug(f"Vault status unavailable: {e}")
            if args.json:
                print_json(
                    {
                        "mode": bv.store.sync_mode.value,
                        "transition": state.__dict__ if state else None,
                        "remote": remote_status,
                    }
                )
                return
            print(f"🔐 Mode: {bv.store.sync_mode.value}")
            if remote_status is not None:
                enabled = remote_status.get("enabled")
                print(f"{'🟢' if enabled else '⚪'} Remote vault: {'enabled' if enabled else 'none'}")
                if enabled:
                    remaining = (remote_status.get("vault") or {}).get("recoveryCodesRemaining", 0)
                    print(f"   Recovery codes remaining: {remaining}")
            if state is not None:
                print(f"⚠️  Interrupted {state.direction} at phase {state.phase}")
                print("   Run `bookvault vault resume` to continue")

        elif action == "enable":
            if bv.store.sync_mode is SyncMode.E2E:
                print("✓ Vault already enabled")
                return
            passphrase = read_passphrase("New vault passphrase: ", confirm=True)
            kdf = KdfParams.pbkdf2() if args.kdf == "pbkdf2" else None
            bv.vault.progress = _progress
            print("Encrypting local records...")
            result = bv.vault.enable(passphrase, kdf_params=kdf, recovery_code_count=args.recovery_codes)
            print(f"✓ Vault enabled: {result.encrypted_count} records encrypted, {result.pushed} pushed")
            if not result.retired:
                print("⚠️  Server plaintext not yet retired. Run `bookvault vault resume` to finish.")
            if result.recovery_codes:
                print()
                print("Recovery codes (store these somewhere safe, each works once):")
                for code in result.recovery_codes:
                    print(f"   {code}")

        elif action == "unlock":
            bv.vault.unlock(read_passphrase())
            print("✓ Passphrase accepted")

        elif action == "disable":
            ensure_unlocked(bv)
            print("Uploading plaintext copies and verifying...")
            _print_disable_result(bv.vault.disable())

        elif action == "resume":
            state = bv.vault.get_state()
            if state is None:
                print("✓ No interrupted transition")
                return
            if state.direction == "disable":
                ensure_unlocked(bv)
            outcome = bv.vault.resume()
            if outcome is True:
                print("✓ Vault enable finished")
            elif outcome is False:
                print("✓ Interrupted vault enable rolled back")
            else:
                _print_disable_result(outcome)

        elif action == "recover":
            new_passphrase = read_passphrase("New vault passphrase: ", confirm=True)
            bv.vault.recover(args.code, new_passphrase)
            print("✓ Vault recovered and passphrase changed")

        elif action == "passphrase":
            bv.vault.unlock(read_passphrase("Current passphrase: "))
            new_passphrase = getpass("New passphrase: ")
            if not new_passphrase or getpass("Confirm passphrase: ") != new_passphrase:
                print("✗ Passphrases do not match")
                sys.exit(1)
            bv.vault.change_passphrase(new_passphrase)
            print("✓ Passphrase changed")

        elif action == "export":
            data = bv.remote.export_vault()
            with open(args.output, "w") as f:
                json.dump(data, f, indent=2)
            print(f"✓ Exported {len(data.get('records', []))} encrypted records to {args.output}")

        elif action == "import":
            with open(args.input) as f:
                data = json.load(f)
            body = bv.remote.import_vault(data.get("records", []), mode=args.mode)
            print(f"✓ Imported {body.get('imported', 0)} records ({args.mode})")

    except CryptoError as e:
        print(f"✗ {e}")
        sys.exit(1)
    except TransitionError as e:
        print(f"✗ Vault transition failed: {e}")
        sys.exit(1)
    except BookvaultError as e:
        print(f"✗ {e}")
        sys.exit(1)
