"""API routes."""

from .plaintext import router as plaintext_router
from .settings import router as settings_router
from .sync import router as sync_router
from .vault import router as vault_router

__all__ = [
    "plaintext_router",
    "settings_router",
    "sync_router",
    "vault_router",
]
