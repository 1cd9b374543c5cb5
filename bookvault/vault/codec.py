"""
Record codec: AES-256-GCM encryption of whole record payloads.

Blob layout (base64 of): IV (12 bytes) || ciphertext || tag (16 bytes).
The same layout is used for wrapped vault keys in envelopes.
"""

import base64
import binascii
import json
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bookvault.types import DecryptionError

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


def seal(data: bytes, key: bytes) -> str:
    """Encrypt bytes under ``key`` and return the base64 blob."""
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Key must be {KEY_LENGTH} bytes")
    iv = os.urandom(IV_LENGTH)
    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, data, None)
    return base64.b64encode(iv + sealed).decode("ascii")


def open_sealed(blob: str, key: bytes) -> bytes:
    """Decrypt a base64 blob produced by ``seal``.

    Raises:
        DecryptionError: Bad base64, truncated blob, or authentication failure.
    """
    if not isinstance(blob, str) or not blob:
        raise DecryptionError("Ciphertext must be a non-empty base64 string")
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Ciphertext is not valid base64: {e}") from e

    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise DecryptionError(
            f"Ciphertext too short: {len(raw)} bytes (minimum {IV_LENGTH + TAG_LENGTH})"
        )
    if len(key) != KEY_LENGTH:
        raise DecryptionError(f"Key must be {KEY_LENGTH} bytes")

    iv, sealed = raw[:IV_LENGTH], raw[IV_LENGTH:]
    try:
        return AESGCM(key).decrypt(iv, sealed, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e


def encrypt(payload: Dict[str, Any], key: bytes) -> str:
    """Encrypt a record payload as one atomic unit."""
    plaintext = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return seal(plaintext, key)


def decrypt(blob: str, key: bytes) -> Dict[str, Any]:
    """Decrypt a record payload.

    Raises:
        DecryptionError: On any malformed, tampered or non-object ciphertext.
    """
    plaintext = open_sealed(blob, key)
    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted payload is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecryptionError("Decrypted payload is not an object")
    return payload
