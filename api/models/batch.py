"""
Batch activation models.

A batch job activates certificates for a list of registry domains at
bounded concurrency. Jobs live in memory and are polled by id.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from models.certificate import CertificateProvider, utcnow


class BatchJobStatus(str, Enum):
    """Lifecycle of a batch job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DomainResultStatus(str, Enum):
    """Outcome of one domain in a batch."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class BatchActivationOptions(BaseModel):
    """Tunables for one batch."""

    timeout_ms: int = Field(
        default=60000,
        ge=1000,
        le=600000,
        description="Per-domain authority timeout in milliseconds"
    )
    max_concurrent: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Domains processed simultaneously per chunk"
    )
    fallback_to_self_signed: bool = Field(
        default=True,
        description="Install a self-signed certificate when the authority fails"
    )


class DomainActivationResult(BaseModel):
    """Per-domain result slot, kept in input order."""

    domain_id: str
    domain_name: Optional[str] = None
    status: DomainResultStatus = DomainResultStatus.PENDING
    provider: Optional[CertificateProvider] = None
    certificate_id: Optional[str] = None
    skipped: bool = Field(
        default=False,
        description="True when an existing certificate was reused without contacting the authority"
    )
    error: Optional[str] = None
    error_code: Optional[str] = None


class BatchJob(BaseModel):
    """In-memory batch activation job."""

    id: str = Field(default_factory=lambda: f"batch-{uuid.uuid4().hex[:12]}")
    domain_ids: List[str]
    options: BatchActivationOptions = Field(default_factory=BatchActivationOptions)
    status: BatchJobStatus = BatchJobStatus.PENDING
    total: int = 0
    progress: int = 0
    results: List[DomainActivationResult] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100 if self.status == BatchJobStatus.COMPLETED else 0
        return round(self.progress * 100 / self.total)

    @property
    def is_finished(self) -> bool:
        return self.status in (BatchJobStatus.COMPLETED, BatchJobStatus.FAILED)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status == DomainResultStatus.SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.status == DomainResultStatus.FAILED)


# Request / Response Models

class BatchActivationRequest(BaseModel):
    """Body of POST /ssl/batch."""

    domain_ids: List[str] = Field(..., min_length=1, description="Registry domain ids, in processing order")
    options: BatchActivationOptions = Field(default_factory=BatchActivationOptions)


class BatchStartResponse(BaseModel):
    job_id: str
    total: int
    message: str = "Batch activation started"


class BatchJobResponse(BaseModel):
    """Polling view of a batch job."""

    job_id: str
    status: BatchJobStatus
    progress: int
    total: int
    percentage: int
    success_count: int = 0
    failure_count: int = 0
    results: List[DomainActivationResult]
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_job(cls, job: BatchJob) -> "BatchJobResponse":
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            total=job.total,
            percentage=job.percentage,
            success_count=job.success_count,
            failure_count=job.failure_count,
            results=job.results,
            error=job.error,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=job.duration_ms,
        )
