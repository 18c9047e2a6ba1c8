"""
Rate limiting configuration using slowapi.

Mutation endpoints (batch start, manual renewal, sweep trigger) are
limited per client so a single store cannot flood the authority.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from config import settings

logger = logging.getLogger(__name__)

DEFAULT_RATE_READ = "120/minute"

STORE_HEADER = "X-Store-Id"


def _get_client_key(request: Request) -> str:
    """
    Build a rate limit key from client IP + store id if present.

    Each store gets its own bucket behind a shared proxy; anonymous
    callers are keyed by IP alone.
    """
    ip = get_remote_address(request)
    store_id = request.headers.get(STORE_HEADER, "").strip()
    if store_id:
        return f"{ip}:{store_id[:32]}"
    return ip


def mutation_limit() -> str:
    """Limit applied to endpoints that start issuance work."""
    return settings.rate_limit_mutation


# Global limiter instance, in-memory storage for single-process deployments
limiter = Limiter(
    key_func=_get_client_key,
    default_limits=[DEFAULT_RATE_READ],
    storage_uri="memory://",
)
