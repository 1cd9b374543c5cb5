"""CLI command modules for bookvault.

Each module holds the handlers for one top-level command group.
"""

from bookvault.cli.commands.auth import cmd_auth
from bookvault.cli.commands.bookmark import cmd_bookmark, cmd_space
from bookvault.cli.commands.sync import cmd_sync
from bookvault.cli.commands.vault import cmd_vault

__all__ = ["cmd_auth", "cmd_bookmark", "cmd_space", "cmd_sync", "cmd_vault"]
