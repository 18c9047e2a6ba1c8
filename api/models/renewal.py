"""
Renewal sweep models.

RenewalLog records the outcome of each sweep run; SweepConfig holds the
tunables that can be changed at runtime through the scheduler API.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from models.certificate import utcnow


class RenewalItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RenewalLogEntry(BaseModel):
    """Outcome for one certificate within a sweep."""

    certificate_id: str
    domain_name: str
    status: RenewalItemStatus
    expires_at: Optional[datetime] = Field(None, description="Expiry after the attempt")
    error: Optional[str] = None
    error_code: Optional[str] = None


class RenewalLog(BaseModel):
    """
    Persisted record of one renewal sweep.

    A log is written for every sweep, including sweeps that found
    nothing to renew.
    """
    id: str = Field(default_factory=lambda: f"renew-{uuid.uuid4().hex[:12]}")
    executed_at: datetime = Field(default_factory=utcnow)
    certificates_processed: int = 0
    successful_renewals: int = 0
    failed_renewals: int = 0
    details: List[RenewalLogEntry] = Field(default_factory=list)
    error: Optional[str] = Field(None, description="Sweep-level failure, if the sweep aborted")
    duration_ms: Optional[int] = None


class SweepConfig(BaseModel):
    """Runtime tunables of the renewal sweep."""

    days_before_expiry: int = Field(default=30, ge=1, le=89)
    max_renewals_per_run: int = Field(default=10, ge=1, le=50)
    renewal_timeout_ms: int = Field(default=300000, ge=60000, le=600000)


class SweepConfigUpdate(BaseModel):
    """Partial update of the sweep configuration."""

    days_before_expiry: Optional[int] = Field(None, ge=1, le=89)
    max_renewals_per_run: Optional[int] = Field(None, ge=1, le=50)
    renewal_timeout_ms: Optional[int] = Field(None, ge=60000, le=600000)
    schedule: Optional[str] = Field(None, description="Crontab expression, e.g. '0 2 * * *'")


class SchedulerStatus(BaseModel):
    """State of the renewal scheduler."""

    active: bool
    running: bool = Field(..., description="True while a sweep is executing")
    schedule: str
    timezone: str
    next_run: Optional[datetime] = None
    config: SweepConfig


class RenewalLogListResponse(BaseModel):
    logs: List[RenewalLog]
    total: int


class LogPurgeResponse(BaseModel):
    deleted: int
    days_to_keep: int
