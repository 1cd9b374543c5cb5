"""Shared helpers for CLI command modules."""

import getpass
import json
import os
import sys
from typing import TYPE_CHECKING, Any

from bookvault.types import SyncMode

if TYPE_CHECKING:
    from bookvault import Bookvault

PASSPHRASE_ENV = "BOOKVAULT_PASSPHRASE"


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def read_passphrase(prompt: str = "Vault passphrase: ", confirm: bool = False) -> str:
    """Read a passphrase from BOOKVAULT_PASSPHRASE or the terminal."""
    env_value = os.environ.get(PASSPHRASE_ENV)
    if env_value:
        return env_value
    passphrase = getpass.getpass(prompt)
    if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
        print("✗ Passphrases do not match")
        sys.exit(1)
    if not passphrase:
        print("✗ Passphrase cannot be empty")
        sys.exit(1)
    return passphrase


def ensure_unlocked(bv: "Bookvault") -> None:
    """Unlock the vault for this process when the store is end-to-end encrypted."""
    if bv.store.sync_mode is not SyncMode.E2E or bv.session.is_unlocked:
        return
    bv.vault.unlock(read_passphrase())
