"""HTTP client for the bookvault backend.

Handles credential loading and the push/pull/checksum/vault endpoints.
Zero DB coupling: pure HTTP and credential logic. All transport failures
surface as ``NetworkError`` so callers can keep changes queued and retry.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from bookvault.types import (
    AuthError,
    ChecksumMeta,
    NetworkError,
    NotFoundError,
    PullPage,
    PushAck,
    PushConflict,
    PushResult,
    Record,
    RemoteConflictError,
    RemoteError,
    RemoteValidationError,
    SyncMode,
    VerificationReport,
)
from bookvault.utils import get_bookvault_home, validate_backend_url
from bookvault.vault.envelope import VaultKeyEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def load_credentials() -> Optional[Dict[str, str]]:
    """Load backend credentials from config files or environment variables.

    Priority:
    1. Environment variables (BOOKVAULT_BACKEND_URL, BOOKVAULT_AUTH_TOKEN)
    2. ~/.bookvault/credentials.json

    Returns:
        Dict with 'backend_url' and 'auth_token' (and 'owner_id' when
        known), or None if not configured.
    """
    backend_url = None
    auth_token = None
    owner_id = None

    credentials_path = get_bookvault_home() / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                creds = json.load(f)
                backend_url = creds.get("backend_url")
                # Accept both "auth_token" (preferred) and "token" for compatibility
                auth_token = creds.get("auth_token") or creds.get("token")
                owner_id = creds.get("owner_id")
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    backend_url = os.environ.get("BOOKVAULT_BACKEND_URL") or backend_url
    auth_token = os.environ.get("BOOKVAULT_AUTH_TOKEN") or auth_token
    owner_id = os.environ.get("BOOKVAULT_OWNER_ID") or owner_id

    if backend_url:
        backend_url = validate_backend_url(backend_url)

    if not (backend_url and auth_token):
        return None
    creds = {"backend_url": backend_url.rstrip("/"), "auth_token": auth_token}
    if owner_id:
        creds["owner_id"] = owner_id
    return creds


def save_credentials(backend_url: str, auth_token: str, owner_id: Optional[str] = None) -> None:
    """Persist credentials to ~/.bookvault/credentials.json (mode 0600)."""
    if not validate_backend_url(backend_url):
        raise ValueError("backend_url must be https (or http on localhost)")
    path = get_bookvault_home() / "credentials.json"
    data = {"backend_url": backend_url.rstrip("/"), "auth_token": auth_token}
    if owner_id:
        data["owner_id"] = owner_id
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)


def _record_from_wire(item: Dict[str, Any]) -> Record:
    return Record(
        record_id=item["recordId"],
        record_type=item["recordType"],
        payload=item.get("data"),
        ciphertext=item.get("ciphertext"),
        version=item["version"],
        deleted=bool(item.get("deleted", False)),
        updated_at=item.get("updatedAt"),
    )


class RemoteClient:
    """Client for the remote authoritative store.

    Args:
        backend_url: Base URL of the backend (ignored when ``client`` is given).
        auth_token: Bearer token whose subject is the owner id.
        timeout: Per-request timeout in seconds.
        client: Pre-built ``httpx.Client`` (e.g. a FastAPI TestClient).
    """

    def __init__(
        self,
        backend_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        if client is None:
            if not backend_url:
                raise ValueError("backend_url is required when no client is supplied")
            client = httpx.Client(base_url=backend_url, timeout=timeout)
        self._client = client
        self.auth_token = auth_token
        self.timeout = timeout

    @classmethod
    def from_credentials(cls, timeout: float = DEFAULT_TIMEOUT) -> "RemoteClient":
        creds = load_credentials()
        if creds is None:
            raise AuthError(
                "No credentials configured. Run `bookvault login` or set "
                "BOOKVAULT_BACKEND_URL and BOOKVAULT_AUTH_TOKEN."
            )
        return cls(creds["backend_url"], creds["auth_token"], timeout=timeout)

    def close(self) -> None:
        self._client.close()

    # === Transport ===

    def _headers(self) -> Dict[str, str]:
        if not self.auth_token:
            raise AuthError("Not authenticated")
        return {"Authorization": f"Bearer {self.auth_token}", "Content-Type": "application/json"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        conflict_ok: bool = False,
    ) -> Dict[str, Any]:
        """Issue a request and map failures onto bookvault exceptions.

        Args:
            conflict_ok: Treat 409 as a normal response (push conflicts).
        """
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = self._client.request(
                method,
                path,
                json=json_body,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot reach backend: {e}") from e

        status = response.status_code
        if status == 409 and conflict_ok:
            return response.json()
        if status < 400:
            return response.json() if response.content else {}

        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        detail = str(detail)[:500]

        if status == 401:
            raise AuthError(f"Authentication failed: {detail}")
        if status in (400, 422):
            raise RemoteValidationError(status, detail)
        if status == 404:
            raise NotFoundError(status, detail)
        if status == 409:
            raise RemoteConflictError(status, detail)
        raise RemoteError(status, detail)

    def health(self) -> bool:
        try:
            response = self._client.get("/health", timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.status_code == 200

    # === Record sync ===

    @staticmethod
    def _sync_prefix(mode: SyncMode) -> str:
        mode = SyncMode(mode)
        if mode is SyncMode.E2E:
            return "/sync"
        if mode is SyncMode.PLAINTEXT:
            return "/sync/plaintext"
        raise ValueError("Sync is off")

    def push(self, operations: List[Dict[str, Any]], mode: SyncMode) -> PushResult:
        """Push a batch of outbox operations.

        Conflicts are returned in the result, never raised.
        """
        body = self._request(
            "POST",
            f"{self._sync_prefix(mode)}/push",
            json_body={"operations": operations},
            conflict_ok=True,
        )
        result = PushResult()
        for item in body.get("results", []):
            result.results.append(
                PushAck(record_id=item["recordId"], record_type=item["recordType"], version=item["version"])
            )
        for item in body.get("conflicts", []):
            result.conflicts.append(
                PushConflict(
                    record_id=item["recordId"],
                    record_type=item["recordType"],
                    server_version=item["serverVersion"],
                    server_payload=item.get("serverData"),
                    server_ciphertext=item.get("serverCiphertext"),
                    server_deleted=bool(item.get("serverDeleted", False)),
                )
            )
        return result

    def pull(
        self,
        mode: SyncMode,
        cursor: Optional[str] = None,
        record_type: Optional[str] = None,
        limit: int = 100,
    ) -> PullPage:
        body = self._request(
            "GET",
            f"{self._sync_prefix(mode)}/pull",
            params={"cursor": cursor, "recordType": record_type, "limit": limit},
        )
        return PullPage(
            records=[_record_from_wire(item) for item in body.get("records", [])],
            next_cursor=body.get("nextCursor"),
            has_more=bool(body.get("hasMore", False)),
        )

    def fetch_checksum(self) -> ChecksumMeta:
        body = self._request("GET", "/sync/plaintext/checksum")
        return ChecksumMeta(
            checksum=body["checksum"],
            count=body["count"],
            last_update=body.get("lastUpdate"),
            per_type_counts=body.get("perTypeCounts") or {},
        )

    def import_plaintext(self, records: List[Dict[str, Any]]) -> List[PushAck]:
        """Idempotently upsert plaintext records (at most 100 per call).

        Returns the server version assigned to each record.
        """
        body = self._request("POST", "/sync/plaintext/import", json_body={"records": records})
        return [
            PushAck(record_id=item["recordId"], record_type=item["recordType"], version=item["version"])
            for item in body.get("results", [])
        ]

    def retire_plaintext(self) -> int:
        """Soft-tombstone every live plaintext row on the server."""
        body = self._request("POST", "/sync/plaintext/retire")
        return body.get("retired", 0)

    # === Settings ===

    def get_settings(self) -> Dict[str, Any]:
        return self._request("GET", "/sync/settings")

    def update_settings(
        self, sync_enabled: Optional[bool] = None, sync_mode: Optional[SyncMode] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if sync_enabled is not None:
            body["syncEnabled"] = sync_enabled
        if sync_mode is not None:
            body["syncMode"] = SyncMode(sync_mode).value
        return self._request("PUT", "/sync/settings", json_body=body)

    # === Vault ===

    def get_vault_status(self) -> Dict[str, Any]:
        return self._request("GET", "/vault")

    def create_vault(self, envelope: VaultKeyEnvelope) -> str:
        """Register the envelope remotely.

        Raises:
            RemoteConflictError: A vault already exists for this owner.
        """
        body = self._request("POST", "/vault/enable", json_body=envelope.to_dict())
        return body.get("vaultId", "")

    def get_envelope(self) -> Optional[VaultKeyEnvelope]:
        try:
            body = self._request("GET", "/vault/envelope")
        except NotFoundError:
            return None
        return VaultKeyEnvelope.from_dict(body["envelope"])

    def update_envelope(self, envelope: VaultKeyEnvelope) -> None:
        self._request("PUT", "/vault/envelope", json_body=envelope.to_dict())

    def vault_disable(self, action: str) -> Dict[str, Any]:
        """Run one step of the server side of vault disable.

        ``action`` is one of ``verify``, ``delete-encrypted``, ``delete-vault``.
        """
        return self._request("POST", "/vault/disable", json_body={"action": action})

    def verify_plaintext(self, expected_count: int) -> VerificationReport:
        body = self._request(
            "GET", "/vault/disable/verify-plaintext", params={"expectedCount": expected_count}
        )
        return VerificationReport(
            verified=bool(body["verified"]),
            server_count=body["serverCount"],
            expected_count=body["expectedCount"],
            server_checksum=body.get("serverChecksum"),
        )

    def export_vault(self) -> Dict[str, Any]:
        return self._request("GET", "/vault/export")

    def import_vault(self, records: List[Dict[str, Any]], mode: str = "merge") -> Dict[str, Any]:
        return self._request("POST", "/vault/import", json_body={"records": records, "mode": mode})
