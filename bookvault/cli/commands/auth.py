"""Login/logout commands for bookvault CLI."""

import logging
import sys
from typing import TYPE_CHECKING

from bookvault.storage.cloud import load_credentials, save_credentials
from bookvault.utils import get_bookvault_home

from .helpers import print_json

if TYPE_CHECKING:
    from bookvault import Bookvault

logger = logging.getLogger(__name__)


def _mask_token(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


def cmd_auth(args, bv: "Bookvault" = None):
    """Handle auth subcommands."""
    if args.auth_action == "login":
        try:
            save_credentials(args.backend_url, args.token, owner_id=args.owner)
        except ValueError as e:
            print(f"✗ {e}")
            sys.exit(1)
        print("✓ Credentials saved")
        print(f"  Backend: {args.backend_url}")
        if args.owner:
            print(f"  Owner: {args.owner}")

    elif args.auth_action == "logout":
        path = get_bookvault_home() / "credentials.json"
        if path.exists():
            path.unlink()
            print("✓ Logged out")
        else:
            print("Not logged in")

    elif args.auth_action == "status":
        creds = load_credentials()
        if args.json:
            if creds:
                creds = dict(creds, auth_token=_mask_token(creds["auth_token"]))
            print_json({"authenticated": creds is not None, "credentials": creds})
            return
        if creds is None:
            print("✗ Not logged in")
            print("  Run `bookvault auth login URL TOKEN` or set BOOKVAULT_BACKEND_URL")
            return
        print(f"✓ Logged in to {creds['backend_url']}")
        print(f"  Token: {_mask_token(creds['auth_token'])}")
        if creds.get("owner_id"):
            print(f"  Owner: {creds['owner_id']}")
