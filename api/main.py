"""
Certflow API

Certificate lifecycle orchestrator for a multi-tenant storefront
platform. Issues TLS certificates for customer domains from an ACME
certificate authority, falls back to self-signed certificates when the
authority fails, activates certificates in batches and renews them on a
daily schedule.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config import ensure_directories, settings
from core.rate_limiter import limiter
from core.request_logger import RequestLoggerMiddleware
from endpoints import batches, certificates, challenges, scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Certflow API starting up...")

    # Ensure required directories exist
    ensure_directories()

    # Initialize database
    from core.database import initialize_database

    await initialize_database()
    logger.info("Database initialized")

    # Wires ACME account persistence into the ACME service
    from core.cert_manager import get_cert_manager

    get_cert_manager()

    # Start certificate renewal scheduler
    from core.cert_scheduler import get_cert_scheduler

    cert_scheduler = get_cert_scheduler()
    if settings.renewal_scheduler_autostart:
        try:
            await cert_scheduler.start()
        except ValueError as e:
            logger.error(f"Failed to start certificate scheduler: {e}")
    else:
        logger.info("Certificate renewal scheduler autostart disabled")

    yield

    await cert_scheduler.stop()
    logger.info("Certflow API shutting down...")


app = FastAPI(
    title="Certflow API",
    description="""
    ## Purpose

    Keeps every verified customer domain served over HTTPS.

    ## Features

    - **ACME issuance** over HTTP-01 with per-domain timeouts
    - **Self-signed fallback** so a domain is never left without a certificate
    - **Batch activation** at bounded concurrency with pollable progress
    - **Scheduled renewal** of certificates nearing expiry, with sweep logs
    """,
    version=API_VERSION,
    license_info={
        "name": "MIT",
    },
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Rate limiting
app.state.limiter = limiter


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 handler with Retry-After."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please wait before making more requests.",
            "retry_after_seconds": retry_after,
            "suggestion": "Reduce request frequency or spread batch requests over time.",
        },
        headers={"Retry-After": str(retry_after)},
    )


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

# Include API routers
app.include_router(challenges.router)
app.include_router(certificates.router)
app.include_router(batches.router)
app.include_router(scheduler.router)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggerMiddleware)

# CORS: wildcard only in debug mode unless origins are configured
_cors_origins = (
    [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    if settings.cors_allowed_origins
    else ["*"]
    if settings.api_debug
    else []
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get(
    "/",
    summary="API Health Check",
    description="Basic health check endpoint to verify the API is running.",
    response_description="API status and basic information",
    tags=["Health"],
)
async def root():
    return {
        "message": "Certflow API is running",
        "version": API_VERSION,
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
        "features": ["ACME Issuance", "Self-Signed Fallback", "Batch Activation", "Scheduled Renewal"],
    }


@app.get(
    "/health",
    summary="Detailed Health Check",
    description="Health of the certificate store and renewal scheduler, with certificate counts.",
    response_description="Detailed health status",
    tags=["Health"],
)
async def health_check():
    """
    Detailed health check for monitoring.

    Reports the certificate store, the renewal scheduler and the
    latest sweep. Status is ``degraded`` when certificates have expired
    or failed, and ``unhealthy`` when the store cannot be read.
    """
    from core.cert_errors import CertificateError
    from core.cert_scheduler import get_cert_scheduler
    from core.cert_store import get_cert_store
    from core.renewal_log_store import get_renewal_log_store

    scheduler_status = get_cert_scheduler().status()
    suggestions = []

    ssl_status = {"status": "unknown"}
    store_ok = True
    try:
        stats = await get_cert_store().statistics()
        certs = await get_cert_store().list_certificates()
        expired = sum(1 for c in certs if c.status.value == "expired")
        ssl_status = {
            "status": "healthy" if expired == 0 and stats.failed == 0 else "warning",
            "total": len(certs),
            "active": stats.ssl_active,
            "expiring_soon": stats.expiring_soon,
            "expired": expired,
            "failed": stats.failed,
            "self_signed": stats.self_signed_certificates,
        }
        if stats.expiring_soon:
            suggestions.append(
                {
                    "action": f"Review {stats.expiring_soon} certificate(s) expiring soon",
                    "reason": "The next renewal sweep will pick them up if auto-renew is enabled",
                    "endpoint": "GET /certificates/renewals/upcoming",
                    "priority": "medium",
                }
            )
        if stats.failed or expired:
            suggestions.append(
                {
                    "action": f"Address {stats.failed + expired} failed or expired certificate(s)",
                    "reason": "Affected domains are not served over valid HTTPS",
                    "endpoint": "POST /certificates/renew",
                    "priority": "high",
                }
            )
    except CertificateError as e:
        logger.warning(f"Failed to read certificate store: {e.message}")
        store_ok = False
        ssl_status = {"status": "error", "message": e.message}

    last_sweep = None
    if store_ok:
        latest = await get_renewal_log_store().get_latest()
        if latest:
            last_sweep = {
                "executed_at": latest.executed_at.isoformat(),
                "successful_renewals": latest.successful_renewals,
                "failed_renewals": latest.failed_renewals,
                "error": latest.error,
            }

    if not scheduler_status.active:
        suggestions.append(
            {
                "action": "Start the renewal scheduler",
                "reason": "Certificates will not renew automatically",
                "endpoint": "POST /ssl/scheduler/start",
                "priority": "high",
            }
        )

    if not store_ok:
        status = "unhealthy"
    elif ssl_status.get("status") == "healthy" and scheduler_status.active:
        status = "healthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "timestamp": datetime.now().isoformat(),
        "api": {"status": "running", "version": API_VERSION},
        "ssl": ssl_status,
        "scheduler": {
            "active": scheduler_status.active,
            "running": scheduler_status.running,
            "next_run": scheduler_status.next_run.isoformat() if scheduler_status.next_run else None,
        },
        "last_sweep": last_sweep,
        "suggestions": suggestions,
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug, log_level="info")
