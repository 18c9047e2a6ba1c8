"""
Certificate endpoints.

REST API endpoints for certificate status, details, revision history,
manual renewal and the upcoming-renewals view.
"""

from fastapi import APIRouter, HTTPException, Query, Request
from typing import List, Optional
import logging

from core.acme_service import AuthorityError
from core.cert_errors import (
    CertificateError,
    CertificateNotFoundError,
    DomainNotFoundError,
    DomainNotVerifiedError,
    StorePersistenceError,
    error_detail,
)
from core.cert_manager import get_cert_manager
from core.rate_limiter import limiter, mutation_limit
from models.certificate import (
    CertificateListResponse,
    CertificateRevision,
    CertificateStatus,
    CertificateStatusResponse,
    CertificateSummary,
    ManualRenewalRequest,
    RenewalCandidate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["SSL Certificates"])


def _status_code_for(error: Exception) -> int:
    if isinstance(error, (CertificateNotFoundError, DomainNotFoundError)):
        return 404
    if isinstance(error, DomainNotVerifiedError):
        return 409
    if isinstance(error, AuthorityError):
        return 502
    if isinstance(error, StorePersistenceError):
        return 503
    return 500


@router.get(
    "/",
    response_model=CertificateListResponse,
    summary="List Certificates",
    description="""
    List all certificates managed by the orchestrator.

    Statuses are effective: a certificate past its expiry is reported as
    `expired` and one within the warning window as `expiring_soon`.

    **Filter Options:**
    - `status`: pending, active, expiring_soon, expired or failed
    """,
)
async def list_certificates(
    status: Optional[CertificateStatus] = Query(None, description="Filter by certificate status"),
) -> CertificateListResponse:
    try:
        certs = await get_cert_manager().store.list_certificates(status=status)
    except CertificateError as e:
        logger.error(f"Error listing certificates: {e.message}")
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))

    def count(s: CertificateStatus) -> int:
        return sum(1 for c in certs if c.status == s)

    return CertificateListResponse(
        certificates=[CertificateSummary.from_certificate(c) for c in certs],
        total=len(certs),
        active_count=count(CertificateStatus.ACTIVE),
        expiring_soon_count=count(CertificateStatus.EXPIRING_SOON),
        expired_count=count(CertificateStatus.EXPIRED),
        failed_count=count(CertificateStatus.FAILED),
    )


@router.get(
    "/status/{domain_id}",
    response_model=CertificateStatusResponse,
    summary="Certificate Status for a Domain",
    description="""
    Dashboard view of the certificate for a registered domain.

    Returns `status: null` when no certificate has been requested yet.
    `last_error` holds the most recent authority error, which is set
    even when a self-signed fallback is serving.
    """,
    responses={404: {"description": "Domain not found"}},
)
async def get_certificate_status(domain_id: str) -> CertificateStatusResponse:
    try:
        return await get_cert_manager().get_certificate_status(domain_id)
    except CertificateError as e:
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))


@router.get(
    "/renewals/upcoming",
    response_model=List[RenewalCandidate],
    summary="Upcoming Renewals",
    description="""
    Certificates with auto-renew enabled that expire within `days`,
    soonest first. These are the certificates the next sweep picks up.
    """,
)
async def list_upcoming_renewals(
    days: int = Query(30, ge=1, le=365, description="Renewal window in days"),
    limit: Optional[int] = Query(None, ge=1, le=500, description="Maximum results"),
) -> List[RenewalCandidate]:
    try:
        return await get_cert_manager().list_upcoming_renewals(days=days, limit=limit)
    except CertificateError as e:
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))


@router.post(
    "/renew",
    response_model=CertificateSummary,
    summary="Renew Certificate",
    description="""
    Run one issuance cycle for a certificate or registered domain.

    Identify the target with `certificate_id` or `domain_id`. A
    certificate outside the renewal window is returned unchanged unless
    `force` is true.

    **Errors:**
    - 400: neither id given
    - 404: unknown certificate or domain
    - 409: domain not verified
    - 502: authority failed and `fallback_to_self_signed` is false
    """,
    responses={
        404: {"description": "Certificate or domain not found"},
        409: {"description": "Domain not verified"},
        502: {"description": "Certificate authority failure"},
    },
)
@limiter.limit(mutation_limit)
async def renew_certificate(request: Request, body: ManualRenewalRequest) -> CertificateSummary:
    if not body.has_target:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "missing_target",
                "message": "certificate_id or domain_id is required",
                "domain": None,
                "suggestion": "Pass the certificate id from GET /certificates/ or a registry domain id",
            },
        )
    try:
        cert = await get_cert_manager().renew_certificate(body)
    except (CertificateError, AuthorityError) as e:
        logger.warning(f"Manual renewal failed: {e.message}")
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))
    return CertificateSummary.from_certificate(cert)


@router.get(
    "/{certificate_id}",
    response_model=CertificateSummary,
    summary="Get Certificate",
    description="Certificate details without key material.",
    responses={404: {"description": "Certificate not found"}},
)
async def get_certificate(certificate_id: str) -> CertificateSummary:
    try:
        cert = await get_cert_manager().get_certificate(certificate_id)
    except CertificateError as e:
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))
    return CertificateSummary.from_certificate(cert)


@router.get(
    "/{certificate_id}/revisions",
    response_model=List[CertificateRevision],
    summary="Certificate Revision History",
    description="Material replaced by earlier renewals, newest first.",
    responses={404: {"description": "Certificate not found"}},
)
async def list_revisions(certificate_id: str) -> List[CertificateRevision]:
    manager = get_cert_manager()
    try:
        await manager.get_certificate(certificate_id)
        return await manager.store.list_revisions(certificate_id)
    except CertificateError as e:
        raise HTTPException(status_code=_status_code_for(e), detail=error_detail(e))
