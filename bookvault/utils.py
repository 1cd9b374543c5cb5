"""Filesystem and URL helpers shared by the CLI and storage layers."""

import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def get_bookvault_home() -> Path:
    """Directory holding local stores and credentials.

    Defaults to ``~/.bookvault``; override with ``BOOKVAULT_DATA_DIR``.
    """
    override = os.environ.get("BOOKVAULT_DATA_DIR")
    home = Path(override).expanduser() if override else Path.home() / ".bookvault"
    home.mkdir(parents=True, exist_ok=True)
    return home


def safe_filename(owner_id: str) -> str:
    """Map an owner id to a filesystem-safe stem."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "_", owner_id).strip("._")
    if not cleaned:
        raise ValueError("owner_id must contain at least one safe character")
    return cleaned[:100]


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe credential transmission.

    Rejects non-http(s) schemes, URLs with no host, and remote HTTP
    endpoints. Only localhost/127.0.0.1 may be reached over plain HTTP.

    Returns:
        The URL unchanged if valid, or ``None`` if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url
