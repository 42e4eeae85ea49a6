"""Per-client rate limiting for vote submission (slowapi).

Forwarding headers are only believed when the TCP peer is a configured
trusted proxy.
"""

import ipaddress
import logging
from functools import lru_cache

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from relayer.core.config import get_settings

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache(maxsize=1)
def _get_trusted_proxies() -> tuple[frozenset[str], tuple[Network, ...]]:
    """Split TRUSTED_PROXIES into exact addresses and CIDR ranges."""
    entries = [e.strip() for e in get_settings().trusted_proxies.split(",") if e.strip()]
    ranges = tuple(ipaddress.ip_network(e, strict=False) for e in entries if "/" in e)
    return frozenset(e for e in entries if "/" not in e), ranges


def _is_trusted_proxy(ip: str) -> bool:
    exact, ranges = _get_trusted_proxies()
    if ip in exact:
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in network for network in ranges)


def get_client_ip(request: Request) -> str:
    """Rate-limit key: the voter's IP as seen by the outermost trusted hop.

    X-Real-IP wins over the first X-Forwarded-For entry; both are ignored
    unless the direct peer is trusted.
    """
    peer = get_remote_address(request)
    if not _is_trusted_proxy(peer):
        return peer

    for header in ("X-Real-IP", "X-Forwarded-For"):
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return peer


def submit_vote_limit() -> str:
    return f"{get_settings().submit_rate_limit_per_minute}/minute"


limiter = Limiter(key_func=get_client_ip, enabled=get_settings().is_rate_limit_enabled)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    logger.warning("Vote submission rate limit hit: %s", exc.detail)
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "message": "Too many vote submissions. Please try again later.",
            "retry_after": RETRY_AFTER_SECONDS,
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )
