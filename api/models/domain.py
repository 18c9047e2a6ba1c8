"""
Domain models for the registry the orchestrator consumes.

Domains are owned by the storefront platform; the orchestrator only
reads them to decide which certificate names to issue.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class VerificationStatus(str, Enum):
    """Ownership verification state of a customer domain."""
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class Domain(BaseModel):
    """A customer-supplied storefront domain."""

    id: str = Field(..., description="Registry identifier")
    full_name: str = Field(..., description="Registered domain, e.g. example.com")
    verification_status: VerificationStatus = Field(
        default=VerificationStatus.UNVERIFIED,
        description="Ownership verification status"
    )
    store_id: Optional[str] = Field(None, description="Owning store")

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    def certificate_name(self, prefix: str) -> str:
        """Exact name the certificate for this domain covers."""
        if not prefix:
            return self.full_name
        return f"{prefix}.{self.full_name}"


class EligibleDomain(BaseModel):
    """Verified domain that has no active certificate yet."""

    domain_id: str
    full_name: str
    certificate_name: str
    store_id: Optional[str] = None
    certificate_status: Optional[str] = Field(
        None,
        description="Status of an existing non-active certificate, if any"
    )
