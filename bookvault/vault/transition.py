"""
Plaintext <-> end-to-end encrypted storage transitions.

Enable: build and self-verify an envelope, encrypt every local record,
register the envelope remotely, push the encrypted copies, and only then
drop local plaintext and retire the server's plaintext rows. Any failure
before that point rolls back to the exact prior state: plaintext intact,
no ciphertext, session locked, remote vault removed.

Disable is a two-phase commit driven by persisted phase markers:

    UPLOADING -> UPLOADED -> VERIFIED -> ENCRYPTED_DELETED -> COMPLETE

Phase 0 uploads decrypted records to the plaintext store (idempotent).
Phase 1 asks the server to count them. Phase 2 (delete encrypted rows,
then delete the vault) runs only after a successful verification in the
same run; a resumed transition re-verifies before deleting anything.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from bookvault.types import (
    MAX_BATCH_SIZE,
    BookvaultError,
    PushConflict,
    RemoteConflictError,
    SyncConfig,
    SyncMode,
    TransitionError,
    VerificationReport,
    utc_now,
)

from . import codec
from .envelope import (
    KdfParams,
    VaultKeyEnvelope,
    add_recovery_wrappers,
    create_envelope,
    generate_recovery_codes,
    generate_vault_key,
    mark_recovery_code_used,
    rewrap,
)

logger = logging.getLogger(__name__)

ENVELOPE_CACHE_KEY = "vault_envelope"
ENABLE_VERSIONS_KEY = "vault_enable_versions"
DISABLE_VERSIONS_KEY = "vault_disable_versions"

ENABLE = "enable"
DISABLE = "disable"


class EnablePhase(str, Enum):
    ENCRYPTING = "encrypting"
    ENVELOPE_CREATED = "envelope-created"
    RETIRING = "retiring"


class DisablePhase(str, Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    VERIFIED = "verified"
    ENCRYPTED_DELETED = "encrypted-deleted"
    COMPLETE = "complete"


@dataclass
class TransitionState:
    direction: str
    phase: str
    expected_count: Optional[int] = None
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class EnableResult:
    encrypted_count: int
    pushed: int
    conflicts: List[PushConflict] = field(default_factory=list)
    recovery_codes: List[str] = field(default_factory=list)
    retired: bool = True


@dataclass
class DisableResult:
    """Outcome of a disable run. ``status`` is ``disabled`` or ``verification_failed``."""

    status: str
    expected_count: Optional[int] = None
    report: Optional[VerificationReport] = None
    attempts: int = 0

    @property
    def disabled(self) -> bool:
        return self.status == "disabled"


ProgressCallback = Callable[[str, int, int], None]


class VaultTransition:
    """Runs vault enable/disable and unlock/recovery against one local store.

    Args:
        store: The LocalRecordStore (its session holds the vault key).
        remote: RemoteClient for the owner.
        engine: SyncEngine used to push encrypted records during enable.
        config: Verification retry bound and batch size.
        progress: Optional ``(stage, done, total)`` callback.
    """

    def __init__(
        self,
        store,
        remote,
        engine,
        config: Optional[SyncConfig] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.remote = remote
        self.engine = engine
        self.config = config or engine.config
        self.progress = progress or (lambda stage, done, total: None)
        self._plaintext_versions: Dict[Tuple[str, str], Optional[int]] = {}

    @property
    def session(self):
        return self.store.session

    # === Phase markers ===

    def get_state(self) -> Optional[TransitionState]:
        with self.store._connect() as conn:
            row = conn.execute("SELECT * FROM vault_transition WHERE id = 1").fetchone()
        if row is None:
            return None
        return TransitionState(
            direction=row["direction"],
            phase=row["phase"],
            expected_count=row["expected_count"],
            attempts=row["attempts"],
            last_error=row["last_error"],
        )

    def _set_state(self, state: TransitionState) -> None:
        now = utc_now()
        with self.store._connect() as conn:
            conn.execute(
                """INSERT INTO vault_transition
                   (id, direction, phase, expected_count, attempts, last_error, started_at, updated_at)
                   VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       direction = excluded.direction,
                       phase = excluded.phase,
                       expected_count = excluded.expected_count,
                       attempts = excluded.attempts,
                       last_error = excluded.last_error,
                       updated_at = excluded.updated_at""",
                (
                    state.direction,
                    state.phase,
                    state.expected_count,
                    state.attempts,
                    state.last_error,
                    now,
                    now,
                ),
            )
        logger.debug(f"Vault {state.direction}: phase {state.phase}")

    def _clear_state(self) -> None:
        with self.store._connect() as conn:
            conn.execute("DELETE FROM vault_transition")

    def _require_empty_outbox(self) -> None:
        if self.store.outbox.size() > 0:
            self.engine.push()
        if self.store.outbox.size() > 0:
            raise TransitionError(
                "Pending changes or unresolved conflicts must sync before changing vault state"
            )

    # === Enable ===

    def enable(
        self,
        passphrase: str,
        kdf_params: Optional[KdfParams] = None,
        recovery_code_count: int = 0,
    ) -> EnableResult:
        """Switch the owner from plaintext to end-to-end encrypted storage.

        Raises:
            TransitionError: Wrong starting mode, pending changes, or a failure
                that was rolled back (the cause is chained).
            RemoteConflictError: A vault already exists remotely (rolled back).
        """
        if self.get_state() is not None:
            raise TransitionError("Another vault transition is in progress; resume it first")
        if self.store.sync_mode is not SyncMode.PLAINTEXT:
            raise TransitionError("Vault can only be enabled from plaintext sync mode")
        self._require_empty_outbox()

        state = TransitionState(direction=ENABLE, phase=EnablePhase.ENCRYPTING.value)
        self._set_state(state)
        original_versions = self.store.get_versions()
        self.store.set_meta_json(
            ENABLE_VERSIONS_KEY, [[rt, rid, v] for (rt, rid), v in original_versions.items()]
        )
        envelope_created = False

        try:
            vault_key = generate_vault_key()
            envelope = create_envelope(passphrase, vault_key, kdf_params)
            codes = generate_recovery_codes(recovery_code_count) if recovery_code_count else []
            if codes:
                envelope = add_recovery_wrappers(envelope, vault_key, codes)

            records = self.store.get_records(include_deleted=True)
            total = len(records)
            ciphertexts: Dict[Tuple[str, str], str] = {}
            for i, record in enumerate(records, 1):
                ciphertexts[(record.record_type, record.record_id)] = codec.encrypt(
                    record.payload or {}, vault_key
                )
                self.progress("encrypting", i, total)
            self.store.set_ciphertexts(ciphertexts)

            self.remote.create_vault(envelope)
            envelope_created = True
            state.phase = EnablePhase.ENVELOPE_CREATED.value
            self._set_state(state)
            # Encrypted rows left by an earlier vault are under another key
            self.remote.vault_disable("delete-encrypted")

            self.session.unlock_with_key(vault_key)
            self.store.set_meta_json(ENVELOPE_CACHE_KEY, envelope.to_dict())
            self.store.set_sync_mode(SyncMode.E2E)
            # Encrypted rows are new server rows; versions restart at 1
            self.store.set_versions({key: None for key in original_versions})
            for record in records:
                key = (record.record_type, record.record_id)
                self.store.outbox.enqueue(
                    record.record_type,
                    record.record_id,
                    None,
                    ciphertext=ciphertexts[key],
                    deleted=record.deleted,
                )

            push = self.engine.push()
            if push.errors:
                raise TransitionError(f"Encrypted upload failed: {push.errors[0]}")
            if push.conflicts:
                logger.warning(f"{len(push.conflicts)} conflicts while uploading encrypted records")
        except Exception as e:
            logger.error(f"Vault enable failed, rolling back: {e}")
            self._rollback_enable(original_versions, envelope_created)
            if isinstance(e, (TransitionError, RemoteConflictError)):
                raise
            raise TransitionError(f"Vault enable failed and was rolled back: {e}") from e

        state.phase = EnablePhase.RETIRING.value
        self._set_state(state)
        result = EnableResult(encrypted_count=total, pushed=push.pushed, recovery_codes=codes)
        result.retired = self._finish_enable()
        logger.info(f"Vault enabled: {total} records encrypted")
        return result

    def _finish_enable(self) -> bool:
        """Drop local plaintext and retire server plaintext rows.

        Retiring is retried by ``resume()`` if the server is unreachable.
        """
        self.store.clear_payloads()
        self.store.set_meta(ENABLE_VERSIONS_KEY, None)
        self.store.set_meta("last_checksum", None)
        try:
            retired = self.remote.retire_plaintext()
        except BookvaultError as e:
            logger.warning(f"Could not retire server plaintext yet: {e}")
            return False
        logger.debug(f"Retired {retired} server plaintext rows")
        self._clear_state()
        self.store.invalidate()
        return True

    def _rollback_enable(
        self, original_versions: Dict[Tuple[str, str], Optional[int]], envelope_created: bool
    ) -> None:
        self.session.lock()
        self.store.outbox.clear()
        self.store.clear_ciphertexts()
        self.store.set_versions(original_versions)
        self.store.set_sync_mode(SyncMode.PLAINTEXT)
        self.store.set_meta(ENVELOPE_CACHE_KEY, None)
        self.store.set_meta(ENABLE_VERSIONS_KEY, None)
        if envelope_created:
            # The envelope must outlive any encrypted rows it can decrypt
            for action in ("delete-encrypted", "delete-vault"):
                try:
                    self.remote.vault_disable(action)
                except BookvaultError as e:
                    logger.warning(f"Rollback could not run remote {action}, keeping the vault: {e}")
                    break
        self._clear_state()
        self.store.invalidate()

    # === Disable ===

    def disable(self) -> DisableResult:
        """Switch back to plaintext storage via the two-phase protocol.

        Needs an unlocked session for phase 0. Never raises on verification
        mismatch; returns ``status="verification_failed"`` instead.
        """
        state = self.get_state()
        if state is not None:
            if state.direction != DISABLE:
                raise TransitionError("A vault enable is in progress; resume it first")
            return self._run_disable(state)
        if self.store.sync_mode is not SyncMode.E2E:
            raise TransitionError("Vault is not enabled")
        self.session.key  # raises VaultLockedError before any state changes
        self._require_empty_outbox()

        state = TransitionState(direction=DISABLE, phase=DisablePhase.UPLOADING.value)
        self._set_state(state)
        return self._run_disable(state)

    def _upload_plaintext(self) -> int:
        """Phase 0: decrypt everything and upsert it into the plaintext store.

        Returns:
            The number of live (non-deleted) records uploaded.
        """
        records = self.store.get_records(include_deleted=True)
        payloads = {(r.record_type, r.record_id): r.payload or {} for r in records}
        self.store.set_payloads(payloads)

        batch_size = min(self.config.batch_size, MAX_BATCH_SIZE)
        versions: Dict[Tuple[str, str], Optional[int]] = {}
        for start in range(0, len(records), batch_size):
            batch = records[start : start + batch_size]
            acks = self.remote.import_plaintext(
                [
                    {
                        "recordId": r.record_id,
                        "recordType": r.record_type,
                        "data": payloads[(r.record_type, r.record_id)],
                        "deleted": r.deleted,
                    }
                    for r in batch
                ]
            )
            for ack in acks:
                versions[(ack.record_type, ack.record_id)] = ack.version
            self.progress("uploading", min(start + batch_size, len(records)), len(records))
        self._plaintext_versions = versions
        self.store.set_meta_json(
            DISABLE_VERSIONS_KEY, [[rt, rid, v] for (rt, rid), v in versions.items()]
        )
        return sum(1 for r in records if not r.deleted)

    def _run_disable(self, state: TransitionState) -> DisableResult:
        phase = DisablePhase(state.phase)
        report = None

        if phase in (DisablePhase.UPLOADING, DisablePhase.UPLOADED, DisablePhase.VERIFIED):
            verified = False
            attempts = 0
            while attempts < self.config.verify_attempts:
                attempts += 1
                state.attempts += 1
                expected = self._upload_plaintext()
                state.phase = DisablePhase.UPLOADED.value
                state.expected_count = expected
                self._set_state(state)

                report = self.remote.verify_plaintext(expected)
                if report.verified:
                    verified = True
                    break
                state.last_error = (
                    f"server holds {report.server_count} plaintext records, expected {expected}"
                )
                self._set_state(state)
                logger.warning(f"Plaintext verification failed (attempt {attempts}): {state.last_error}")

            if not verified:
                return DisableResult(
                    status="verification_failed",
                    expected_count=state.expected_count,
                    report=report,
                    attempts=state.attempts,
                )

            state.phase = DisablePhase.VERIFIED.value
            state.last_error = None
            self._set_state(state)

            self.remote.vault_disable("delete-encrypted")
            state.phase = DisablePhase.ENCRYPTED_DELETED.value
            self._set_state(state)

        self.remote.vault_disable("delete-vault")
        state.phase = DisablePhase.COMPLETE.value
        self._set_state(state)
        self._finish_disable()
        logger.info("Vault disabled; data is stored as plaintext")
        return DisableResult(
            status="disabled",
            expected_count=state.expected_count,
            report=report,
            attempts=state.attempts,
        )

    def _finish_disable(self) -> None:
        versions = self._plaintext_versions
        if not versions:
            saved = self.store.get_meta_json(DISABLE_VERSIONS_KEY) or []
            versions = {(rt, rid): v for rt, rid, v in saved}
        if versions:
            self.store.set_versions(versions)
        self.store.set_meta(DISABLE_VERSIONS_KEY, None)
        self.store.clear_ciphertexts()
        self.store.set_sync_mode(SyncMode.PLAINTEXT)
        self.store.set_meta(ENVELOPE_CACHE_KEY, None)
        self.store.set_meta("pull_cursor:plaintext", None)
        self.store.set_meta("last_checksum", None)
        # Local and cloud now hold the same data; no first-sign-in merge needed
        self.store.set_meta("migration_resolved", "vault-disable")
        self.session.lock()
        self._clear_state()
        self.store.invalidate()

    # === Resume ===

    def resume(self):
        """Continue an interrupted transition from its persisted phase.

        Returns:
            DisableResult for a disable; for an enable, True once finished or
            False when it was rolled back; None if no transition was pending.
        """
        state = self.get_state()
        if state is None:
            return None
        if state.direction == DISABLE:
            logger.info(f"Resuming vault disable from phase {state.phase}")
            return self._run_disable(state)

        if state.phase == EnablePhase.RETIRING.value:
            logger.info("Resuming vault enable: retiring server plaintext")
            return self._finish_enable()

        logger.info(f"Rolling back interrupted vault enable (phase {state.phase})")
        saved = self.store.get_meta_json(ENABLE_VERSIONS_KEY) or []
        versions = {(rt, rid): v for rt, rid, v in saved}
        self._rollback_enable(versions, envelope_created=state.phase != EnablePhase.ENCRYPTING.value)
        return False

    # === Unlock / recovery ===

    def fetch_envelope(self) -> VaultKeyEnvelope:
        """Envelope from the server, falling back to the local cache when offline."""
        try:
            envelope = self.remote.get_envelope()
        except BookvaultError as e:
            cached = self.store.get_meta_json(ENVELOPE_CACHE_KEY)
            if not cached:
                raise
            logger.debug(f"Using cached envelope: {e}")
            return VaultKeyEnvelope.from_dict(cached)
        if envelope is None:
            raise TransitionError("No vault exists for this account")
        self.store.set_meta_json(ENVELOPE_CACHE_KEY, envelope.to_dict())
        return envelope

    def unlock(self, passphrase: str) -> None:
        """Unlock this session. Raises WrongPassphrase on mismatch."""
        self.session.unlock(self.fetch_envelope(), passphrase)

    def lock(self) -> None:
        self.session.lock()

    def recover(self, code: str, new_passphrase: str) -> None:
        """Unlock with a recovery code, burn it, and set a new passphrase."""
        envelope = self.fetch_envelope()
        wrapper = self.session.unlock_with_recovery_code(envelope, code)
        envelope = mark_recovery_code_used(envelope, wrapper)
        envelope = rewrap(envelope, self.session.key, new_passphrase)
        self.remote.update_envelope(envelope)
        self.store.set_meta_json(ENVELOPE_CACHE_KEY, envelope.to_dict())
        logger.info(f"Vault recovered; {envelope.unused_recovery_codes} recovery codes remain")

    def change_passphrase(self, new_passphrase: str) -> None:
        envelope = rewrap(self.fetch_envelope(), self.session.key, new_passphrase)
        self.remote.update_envelope(envelope)
        self.store.set_meta_json(ENVELOPE_CACHE_KEY, envelope.to_dict())
