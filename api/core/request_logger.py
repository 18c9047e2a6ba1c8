"""
Request logging middleware.

Logs HTTP method, path, status code, duration, client IP and the
calling store for audit purposes.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.rate_limiter import STORE_HEADER

logger = logging.getLogger("certflow.access")

# Paths excluded from access logging to reduce noise
_EXCLUDED_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/"}
_EXCLUDED_PREFIXES = ("/.well-known/acme-challenge/",)


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every HTTP request with timing and caller."""

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        # Skip noisy endpoints; the authority polls challenge tokens repeatedly
        if path in _EXCLUDED_PATHS or path.startswith(_EXCLUDED_PREFIXES):
            return await call_next(request)

        start = time.monotonic()
        client_ip = request.client.host if request.client else "unknown"

        response: Response = await call_next(request)

        duration_ms = (time.monotonic() - start) * 1000
        store_id = request.headers.get(STORE_HEADER) or "-"

        logger.info(
            "%s %s %d %.1fms client=%s store=%s",
            request.method,
            path,
            response.status_code,
            duration_ms,
            client_ip,
            store_id,
        )

        return response
