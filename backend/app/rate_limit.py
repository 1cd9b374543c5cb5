"""Rate limiting for the bookvault backend.

Keys requests on the client IP. ``X-Forwarded-For`` is honored only when
the direct peer is a trusted proxy, so clients cannot pick their own key.
"""

import ipaddress
import logging
import os
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger("bookvault.rate_limit")

# Override with TRUSTED_PROXY_CIDRS (comma-separated)
DEFAULT_TRUSTED_CIDRS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
)

# Limits for the write-heavy endpoints
PUSH_LIMIT = os.environ.get("PUSH_RATE_LIMIT", "120/minute")
IMPORT_LIMIT = os.environ.get("IMPORT_RATE_LIMIT", "60/minute")


@lru_cache(maxsize=1)
def trusted_networks() -> tuple:
    raw = os.environ.get("TRUSTED_PROXY_CIDRS", "")
    cidrs = [s.strip() for s in raw.split(",") if s.strip()] or list(DEFAULT_TRUSTED_CIDRS)
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return tuple(networks)


def is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in trusted_networks())


def get_client_ip(request) -> str:
    """Client IP for rate-limit keys (leftmost forwarded IP behind a trusted proxy)."""
    direct_ip = get_remote_address(request)
    if is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for", "")
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip
    return direct_ip


limiter = Limiter(
    key_func=get_client_ip,
    enabled=os.environ.get("RATE_LIMIT_ENABLED", "true").lower() != "false",
)
