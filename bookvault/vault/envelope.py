"""
Vault key envelopes.

The vault key is a random 256-bit AES key. It is never stored or sent in
the clear: a key-encryption key is derived from the user's passphrase
(scrypt by default, PBKDF2-SHA256 for envelopes that declare it) and
the vault key is AES-GCM wrapped under it. Recovery wrappers wrap the
same vault key under one-time recovery codes.

Wire format (camelCase, binary fields base64):

    {
      "version": 1,
      "wrappedKey": "...",
      "salt": "...",
      "kdfParams": {"algorithm": "scrypt", "n": 131072, "r": 8, "p": 1,
                    "saltLength": 16, "keyLength": 32},
      "recoveryWrappers": [{"codeHash": "...", "salt": "...",
                            "wrappedKey": "...", "kdfParams": {...},
                            "usedAt": null}]
    }
"""

import base64
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from bookvault.types import DecryptionError, EnvelopeError, RecoveryCodeError, WrongPassphrase

from .codec import KEY_LENGTH, open_sealed, seal

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
SALT_LENGTH = 16

SCRYPT = "scrypt"
PBKDF2_SHA256 = "PBKDF2-SHA256"

# Recovery codes: 4 groups of 4 characters from an unambiguous alphabet
_RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_GROUPS = 4
RECOVERY_CODE_GROUP_LENGTH = 4


@dataclass
class KdfParams:
    """Key-derivation algorithm and cost parameters."""

    algorithm: str = SCRYPT
    n: Optional[int] = 2**17
    r: Optional[int] = 8
    p: Optional[int] = 1
    iterations: Optional[int] = None
    salt_length: int = SALT_LENGTH
    key_length: int = KEY_LENGTH

    @classmethod
    def scrypt(cls, n: int = 2**17, r: int = 8, p: int = 1) -> "KdfParams":
        return cls(algorithm=SCRYPT, n=n, r=r, p=p)

    @classmethod
    def pbkdf2(cls, iterations: int = 100_000) -> "KdfParams":
        return cls(algorithm=PBKDF2_SHA256, n=None, r=None, p=None, iterations=iterations)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "algorithm": self.algorithm,
            "saltLength": self.salt_length,
            "keyLength": self.key_length,
        }
        if self.algorithm == SCRYPT:
            data.update({"n": self.n, "r": self.r, "p": self.p})
        else:
            data["iterations"] = self.iterations
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KdfParams":
        algorithm = data.get("algorithm", SCRYPT)
        if algorithm == SCRYPT:
            return cls(
                algorithm=SCRYPT,
                n=int(data["n"]),
                r=int(data["r"]),
                p=int(data["p"]),
                salt_length=int(data.get("saltLength", SALT_LENGTH)),
                key_length=int(data.get("keyLength", KEY_LENGTH)),
            )
        if algorithm == PBKDF2_SHA256:
            return cls(
                algorithm=PBKDF2_SHA256,
                n=None,
                r=None,
                p=None,
                iterations=int(data["iterations"]),
                salt_length=int(data.get("saltLength", SALT_LENGTH)),
                key_length=int(data.get("keyLength", KEY_LENGTH)),
            )
        raise ValueError(f"Unsupported KDF algorithm: {algorithm!r}")


@dataclass
class RecoveryWrapper:
    code_hash: str
    salt: str
    wrapped_key: str
    kdf_params: KdfParams
    used_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "codeHash": self.code_hash,
            "salt": self.salt,
            "wrappedKey": self.wrapped_key,
            "kdfParams": self.kdf_params.to_dict(),
            "usedAt": self.used_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoveryWrapper":
        return cls(
            code_hash=data["codeHash"],
            salt=data["salt"],
            wrapped_key=data["wrappedKey"],
            kdf_params=KdfParams.from_dict(data["kdfParams"]),
            used_at=data.get("usedAt"),
        )


@dataclass
class VaultKeyEnvelope:
    """Passphrase-wrapped vault key plus optional recovery wrappers."""

    wrapped_key: str
    salt: str
    kdf_params: KdfParams
    recovery_wrappers: List[RecoveryWrapper] = field(default_factory=list)
    version: int = ENVELOPE_VERSION

    @property
    def unused_recovery_codes(self) -> int:
        return sum(1 for w in self.recovery_wrappers if w.used_at is None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "wrappedKey": self.wrapped_key,
            "salt": self.salt,
            "kdfParams": self.kdf_params.to_dict(),
            "recoveryWrappers": [w.to_dict() for w in self.recovery_wrappers],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultKeyEnvelope":
        return cls(
            wrapped_key=data["wrappedKey"],
            salt=data["salt"],
            kdf_params=KdfParams.from_dict(data["kdfParams"]),
            recovery_wrappers=[RecoveryWrapper.from_dict(w) for w in data.get("recoveryWrappers") or []],
            version=int(data.get("version", ENVELOPE_VERSION)),
        )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def derive_key(secret: str, salt: bytes, params: KdfParams) -> bytes:
    """Derive a key-encryption key from a passphrase or recovery code."""
    secret_bytes = secret.encode("utf-8")
    if params.algorithm == SCRYPT:
        kdf = Scrypt(salt=salt, length=params.key_length, n=params.n, r=params.r, p=params.p)
    elif params.algorithm == PBKDF2_SHA256:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=params.key_length,
            salt=salt,
            iterations=params.iterations,
        )
    else:
        raise ValueError(f"Unsupported KDF algorithm: {params.algorithm!r}")
    return kdf.derive(secret_bytes)


def generate_vault_key() -> bytes:
    """Generate a fresh 256-bit vault key."""
    return os.urandom(KEY_LENGTH)


def _wrap(secret: str, vault_key: bytes, params: KdfParams) -> Tuple[str, str]:
    salt = os.urandom(params.salt_length)
    kek = derive_key(secret, salt, params)
    return seal(vault_key, kek), _b64(salt)


def _unwrap(secret: str, wrapped_key: str, salt_b64: str, params: KdfParams) -> bytes:
    try:
        salt = base64.b64decode(salt_b64, validate=True)
    except ValueError as e:
        raise WrongPassphrase("Envelope salt is corrupted") from e
    kek = derive_key(secret, salt, params)
    try:
        return open_sealed(wrapped_key, kek)
    except DecryptionError as e:
        # A wrong secret and a corrupted envelope are indistinguishable here
        raise WrongPassphrase("Wrong passphrase or corrupted envelope") from e


def create_envelope(
    passphrase: str, vault_key: bytes, kdf_params: Optional[KdfParams] = None
) -> VaultKeyEnvelope:
    """Wrap ``vault_key`` under ``passphrase`` and self-verify the result.

    Raises:
        ValueError: Empty passphrase or wrong-sized key.
        EnvelopeError: The freshly built envelope does not unwrap to ``vault_key``.
    """
    if not passphrase:
        raise ValueError("Passphrase must not be empty")
    if len(vault_key) != KEY_LENGTH:
        raise ValueError(f"Vault key must be {KEY_LENGTH} bytes")

    params = kdf_params or KdfParams()
    wrapped_key, salt = _wrap(passphrase, vault_key, params)
    envelope = VaultKeyEnvelope(wrapped_key=wrapped_key, salt=salt, kdf_params=params)

    try:
        unwrapped = unwrap(envelope, passphrase)
    except WrongPassphrase as e:
        raise EnvelopeError("Envelope failed round-trip verification") from e
    if not hmac.compare_digest(unwrapped, vault_key):
        raise EnvelopeError("Envelope unwrapped to a different key")

    logger.debug(f"Created vault envelope (kdf={params.algorithm})")
    return envelope


def unwrap(envelope: VaultKeyEnvelope, passphrase: str) -> bytes:
    """Recover the vault key from an envelope.

    Raises:
        WrongPassphrase: Tag mismatch (wrong passphrase or corrupted envelope).
    """
    return _unwrap(passphrase, envelope.wrapped_key, envelope.salt, envelope.kdf_params)


def rewrap(
    envelope: VaultKeyEnvelope,
    vault_key: bytes,
    new_passphrase: str,
    kdf_params: Optional[KdfParams] = None,
) -> VaultKeyEnvelope:
    """Re-wrap the same vault key under a new passphrase, keeping recovery wrappers."""
    fresh = create_envelope(new_passphrase, vault_key, kdf_params or envelope.kdf_params)
    return replace(fresh, recovery_wrappers=list(envelope.recovery_wrappers))


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch.isalnum())


def hash_recovery_code(code: str) -> str:
    return hashlib.sha256(normalize_recovery_code(code).encode("utf-8")).hexdigest()


def generate_recovery_codes(count: int = 8) -> List[str]:
    """Generate human-transcribable one-time recovery codes (XXXX-XXXX-XXXX-XXXX)."""
    codes = []
    for _ in range(count):
        groups = [
            "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(RECOVERY_CODE_GROUP_LENGTH))
            for _ in range(RECOVERY_CODE_GROUPS)
        ]
        codes.append("-".join(groups))
    return codes


def add_recovery_wrappers(
    envelope: VaultKeyEnvelope,
    vault_key: bytes,
    codes: List[str],
    kdf_params: Optional[KdfParams] = None,
) -> VaultKeyEnvelope:
    """Return a copy of ``envelope`` with one recovery wrapper per code appended."""
    params = kdf_params or envelope.kdf_params
    wrappers = list(envelope.recovery_wrappers)
    for code in codes:
        normalized = normalize_recovery_code(code)
        if not normalized:
            raise ValueError("Recovery code must not be empty")
        wrapped_key, salt = _wrap(normalized, vault_key, params)
        wrappers.append(
            RecoveryWrapper(
                code_hash=hash_recovery_code(code),
                salt=salt,
                wrapped_key=wrapped_key,
                kdf_params=params,
            )
        )
    return replace(envelope, recovery_wrappers=wrappers)


def unwrap_with_recovery_code(
    envelope: VaultKeyEnvelope, code: str
) -> Tuple[bytes, RecoveryWrapper]:
    """Recover the vault key with a one-time recovery code.

    Raises:
        RecoveryCodeError: No wrapper matches, or the matching one was already used.
        WrongPassphrase: The matching wrapper fails to authenticate.
    """
    code_hash = hash_recovery_code(code)
    for wrapper in envelope.recovery_wrappers:
        if not hmac.compare_digest(wrapper.code_hash, code_hash):
            continue
        if wrapper.used_at is not None:
            raise RecoveryCodeError("Recovery code has already been used")
        key = _unwrap(
            normalize_recovery_code(code), wrapper.wrapped_key, wrapper.salt, wrapper.kdf_params
        )
        return key, wrapper
    raise RecoveryCodeError("Recovery code not recognized")


def mark_recovery_code_used(envelope: VaultKeyEnvelope, wrapper: RecoveryWrapper) -> VaultKeyEnvelope:
    used_at = datetime.now(timezone.utc).isoformat()
    wrappers = [
        replace(w, used_at=used_at) if w.code_hash == wrapper.code_hash else w
        for w in envelope.recovery_wrappers
    ]
    return replace(envelope, recovery_wrappers=wrappers)
