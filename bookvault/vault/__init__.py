"""Vault: key envelopes, record encryption, and plaintext/e2e transitions."""

from .codec import decrypt, encrypt
from .envelope import (
    KdfParams,
    RecoveryWrapper,
    VaultKeyEnvelope,
    create_envelope,
    generate_vault_key,
    unwrap,
)
from .session import VaultSession

__all__ = [
    "KdfParams",
    "RecoveryWrapper",
    "VaultKeyEnvelope",
    "VaultSession",
    "create_envelope",
    "decrypt",
    "encrypt",
    "generate_vault_key",
    "unwrap",
]
