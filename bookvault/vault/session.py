"""Session-scoped holder of the unwrapped vault key."""

import logging
from typing import Any, Callable, Dict, List, Optional

from bookvault.types import VaultLockedError

from . import codec
from .envelope import RecoveryWrapper, VaultKeyEnvelope, unwrap, unwrap_with_recovery_code

logger = logging.getLogger(__name__)


class VaultSession:
    """Holds the vault key for one process/tab after a successful unlock.

    Each session unlocks independently; locking only affects this session.
    Lock listeners are told when the key is discarded so caches of
    decrypted data can be cleared.
    """

    def __init__(self):
        self._key: Optional[bytes] = None
        self._lock_listeners: List[Callable[[], None]] = []

    def __repr__(self) -> str:
        state = "unlocked" if self.is_unlocked else "locked"
        return f"<VaultSession {state}>"

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    @property
    def key(self) -> bytes:
        if self._key is None:
            raise VaultLockedError("Vault is locked")
        return self._key

    def unlock(self, envelope: VaultKeyEnvelope, passphrase: str) -> None:
        """Unwrap the vault key with the passphrase.

        Raises:
            WrongPassphrase: If the passphrase does not open the envelope.
        """
        self._key = unwrap(envelope, passphrase)
        logger.info("Vault unlocked")

    def unlock_with_recovery_code(self, envelope: VaultKeyEnvelope, code: str) -> RecoveryWrapper:
        """Unwrap with a recovery code and return the wrapper that matched.

        The caller is responsible for marking the wrapper used remotely.
        """
        key, wrapper = unwrap_with_recovery_code(envelope, code)
        self._key = key
        logger.info("Vault unlocked with recovery code")
        return wrapper

    def unlock_with_key(self, key: bytes) -> None:
        if len(key) != codec.KEY_LENGTH:
            raise ValueError(f"Vault key must be {codec.KEY_LENGTH} bytes")
        self._key = key

    def lock(self) -> None:
        was_unlocked = self._key is not None
        self._key = None
        if was_unlocked:
            logger.info("Vault locked")
        for listener in list(self._lock_listeners):
            listener()

    def on_lock(self, listener: Callable[[], None]) -> None:
        self._lock_listeners.append(listener)

    def encrypt(self, payload: Dict[str, Any]) -> str:
        return codec.encrypt(payload, self.key)

    def decrypt(self, blob: str) -> Dict[str, Any]:
        return codec.decrypt(blob, self.key)
