"""Structured logging helpers for the bookvault backend.

Sync routes log one line per request (``PUSH | owner | ...``) and one per
record operation via ``log_sync_operation``. Payloads and ciphertexts are
never logged.
"""

import logging
import sys

_configured = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the ``bookvault`` logger tree."""
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("bookvault")
    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``bookvault`` namespace."""
    if not name.startswith("bookvault"):
        name = f"bookvault.{name}"
    return logging.getLogger(name)


_sync_logger = get_logger("bookvault.sync.ops")


def log_sync_operation(
    owner: str,
    operation: str,
    record_type: str,
    record_id: str,
    success: bool,
    error: str | None = None,
) -> None:
    """Log a single record-level sync operation."""
    status = "ok" if success else "failed"
    message = f"{operation.upper()} | {owner} | {record_type}/{record_id} | {status}"
    if error:
        _sync_logger.warning(f"{message} | {error}")
    else:
        _sync_logger.debug(message)
