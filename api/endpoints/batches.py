"""
Batch SSL activation endpoints.

Start a background activation job for a list of registry domains, poll
its progress, and inspect which domains are still eligible for SSL.
"""

from fastapi import APIRouter, HTTPException, Query, Request
from typing import List, Optional
import logging

from core.batch_coordinator import BatchJobRunningError, get_batch_coordinator
from core.cert_errors import CertificateError, error_detail
from core.cert_store import get_cert_store
from core.domain_registry import get_domain_registry
from core.rate_limiter import limiter, mutation_limit
from models.batch import BatchActivationRequest, BatchJobResponse, BatchStartResponse
from models.certificate import SSLStatistics
from models.domain import EligibleDomain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ssl", tags=["SSL Activation"])


@router.post(
    "/batch",
    response_model=BatchStartResponse,
    status_code=202,
    summary="Start Batch Activation",
    description="""
    Activate SSL for several domains in one background job.

    Domains are processed in chunks of `max_concurrent`. Each domain is
    resolved through the registry and must be verified. Domains that
    already hold a certificate valid for more than a week are reported
    as skipped without contacting the certificate authority.

    Poll `GET /ssl/batch/{job_id}` for progress.
    """,
    responses={
        202: {
            "description": "Job accepted",
            "content": {
                "application/json": {
                    "example": {
                        "job_id": "batch-3f2a9c1d7e4b",
                        "total": 5,
                        "message": "Batch activation started",
                    }
                }
            },
        }
    },
)
@limiter.limit(mutation_limit)
async def start_batch(request: Request, body: BatchActivationRequest) -> BatchStartResponse:
    job = await get_batch_coordinator().start_batch(body.domain_ids, body.options)
    logger.info(f"Accepted batch {job.id} for {job.total} domains")
    return BatchStartResponse(job_id=job.id, total=job.total)


@router.get(
    "/batch",
    response_model=List[BatchJobResponse],
    summary="List Batch Jobs",
    description="Batch jobs newest first. By default only pending and running jobs are listed.",
)
async def list_batches(
    active_only: bool = Query(True, description="Only list jobs that have not finished"),
) -> List[BatchJobResponse]:
    jobs = get_batch_coordinator().list_jobs(active_only=active_only)
    return [BatchJobResponse.from_job(job) for job in jobs]


@router.get(
    "/batch/{job_id}",
    response_model=BatchJobResponse,
    summary="Get Batch Job",
    description="Progress and per-domain results of a batch job, in request order.",
    responses={404: {"description": "Job not found"}},
)
async def get_batch(job_id: str) -> BatchJobResponse:
    job = get_batch_coordinator().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Batch job '{job_id}' not found")
    return BatchJobResponse.from_job(job)


@router.delete(
    "/batch/{job_id}",
    status_code=204,
    summary="Delete Batch Job",
    description="Forget a finished batch job. Running jobs cannot be deleted.",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job still running"},
    },
)
@limiter.limit(mutation_limit)
async def delete_batch(request: Request, job_id: str) -> None:
    try:
        deleted = get_batch_coordinator().delete_job(job_id)
    except BatchJobRunningError as e:
        raise HTTPException(status_code=409, detail=error_detail(e))
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Batch job '{job_id}' not found")


@router.get(
    "/eligible",
    response_model=List[EligibleDomain],
    summary="Domains Eligible for SSL",
    description="""
    Verified domains without an active certificate, optionally limited
    to one store. Pass the result's `domain_id` values to `POST /ssl/batch`.
    """,
)
async def list_eligible(
    store_id: Optional[str] = Query(None, description="Only domains owned by this store"),
) -> List[EligibleDomain]:
    return await get_domain_registry().list_eligible(store_id)


@router.get(
    "/stats",
    response_model=SSLStatistics,
    summary="SSL Statistics",
    description="Counts of domains, serving certificates by provider, and certificates needing attention.",
)
async def get_statistics() -> SSLStatistics:
    try:
        return await get_cert_store().statistics()
    except CertificateError as e:
        raise HTTPException(status_code=503, detail=error_detail(e))
