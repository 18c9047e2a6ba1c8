"""
Certificate models for the certificate lifecycle orchestrator.

Provides Pydantic models for certificate records, issued material,
revision history, API requests and responses.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as naive UTC, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CertificateStatus(str, Enum):
    """Certificate lifecycle status."""
    PENDING = "pending"              # Issuance in progress
    ACTIVE = "active"                # Material installed and valid
    EXPIRING_SOON = "expiring_soon"  # Within the warning window
    EXPIRED = "expired"              # Past expires_at
    FAILED = "failed"                # No usable material, last issuance failed


class CertificateProvider(str, Enum):
    """Who issued the certificate material."""
    AUTHORITY = "authority"          # ACME certificate authority
    SELF_SIGNED = "self-signed"      # Local continuity certificate


# Statuses of a row that carries installed material
MATERIAL_STATUSES = (
    CertificateStatus.ACTIVE,
    CertificateStatus.EXPIRING_SOON,
    CertificateStatus.EXPIRED,
)


class CertificateMaterial(BaseModel):
    """PEM material for one certificate."""

    certificate_pem: str = Field(..., description="Leaf certificate (PEM)")
    private_key_pem: str = Field(..., description="Private key (PEM, PKCS8)")
    chain_pem: str = Field(default="", description="Intermediate chain (PEM, may be empty)")
    serial_number: Optional[str] = Field(None, description="Leaf serial number (hex)")
    fingerprint_sha256: Optional[str] = Field(None, description="SHA-256 fingerprint of the leaf")
    issuer: Optional[str] = Field(None, description="Issuer distinguished name")


class IssuedCertificate(CertificateMaterial):
    """Material returned by the ACME authority or the fallback generator."""

    provider: CertificateProvider = Field(..., description="Who issued the material")
    expires_at: datetime = Field(..., description="Leaf notAfter (naive UTC)")
    issued_at: datetime = Field(default_factory=utcnow, description="When the material was obtained")


class Certificate(BaseModel):
    """
    Represents a certificate record in the store.

    There is exactly one row per domain name; renewals replace material in
    place and archive the previous material as a revision.
    """
    id: str = Field(
        default_factory=lambda: f"cert-{uuid.uuid4().hex[:12]}",
        description="Unique certificate identifier"
    )
    domain_name: str = Field(..., description="Exact name covered, e.g. checkout.example.com")
    domain_id: Optional[str] = Field(None, description="Registry domain this certificate belongs to")
    status: CertificateStatus = Field(
        default=CertificateStatus.PENDING,
        description="Current certificate status"
    )
    provider: Optional[CertificateProvider] = Field(None, description="Issuer of the current material")

    # Material
    certificate_pem: Optional[str] = Field(None, description="Leaf certificate (PEM)")
    private_key_pem: Optional[str] = Field(None, description="Private key (PEM)")
    chain_pem: Optional[str] = Field(None, description="Trust chain (PEM)")

    # Certificate details
    issuer: Optional[str] = Field(None, description="Certificate issuer")
    serial_number: Optional[str] = Field(None, description="Certificate serial number")
    fingerprint_sha256: Optional[str] = Field(None, description="SHA-256 fingerprint")
    issued_at: Optional[datetime] = Field(None, description="When the current material was issued")
    expires_at: Optional[datetime] = Field(None, description="Certificate expiry date")
    renewed_at: Optional[datetime] = Field(None, description="When the material was last replaced")

    # Renewal metadata
    auto_renew: bool = Field(default=True, description="Whether the sweep renews this certificate")
    last_renewal_attempt: Optional[datetime] = Field(None, description="Last renewal attempt")
    last_renewal_error: Optional[str] = Field(None, description="Error message from last failed attempt")
    renewal_attempts: int = Field(default=0, description="Consecutive failed attempts")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def has_material(self) -> bool:
        return bool(self.certificate_pem and self.private_key_pem and self.expires_at)

    @property
    def days_until_expiry(self) -> Optional[int]:
        """Calculate days until certificate expires."""
        if self.expires_at:
            delta = self.expires_at - utcnow()
            return delta.days
        return None

    @property
    def is_expired(self) -> bool:
        """Check if certificate is expired."""
        if self.expires_at:
            return utcnow() > self.expires_at
        return False

    def is_valid_for(self, days: int) -> bool:
        """True when installed material remains valid for more than ``days``."""
        if not self.has_material or self.status not in MATERIAL_STATUSES:
            return False
        return self.expires_at - utcnow() > timedelta(days=days)

    def effective_status(self, warning_days: int) -> CertificateStatus:
        """Status derived from expiry for rows that carry material."""
        if self.status not in MATERIAL_STATUSES:
            return self.status
        if self.is_expired:
            return CertificateStatus.EXPIRED
        days = self.days_until_expiry
        if days is not None and days <= warning_days:
            return CertificateStatus.EXPIRING_SOON
        return CertificateStatus.ACTIVE


class CertificateRevision(BaseModel):
    """Archived material replaced by a renewal."""

    id: str = Field(default_factory=lambda: f"rev-{uuid.uuid4().hex[:12]}")
    certificate_id: str
    domain_name: str
    provider: Optional[CertificateProvider] = None
    certificate_pem: Optional[str] = None
    chain_pem: Optional[str] = None
    serial_number: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    archived_at: datetime = Field(default_factory=utcnow)


# Request Models

class ManualRenewalRequest(BaseModel):
    """Request to run one issuance/renewal cycle for a certificate or domain."""

    certificate_id: Optional[str] = Field(None, description="Certificate to renew")
    domain_id: Optional[str] = Field(None, description="Registry domain whose certificate to renew")
    force: bool = Field(
        default=False,
        description="Renew even if the certificate is outside the renewal window"
    )
    timeout_ms: int = Field(
        default=60000,
        ge=1000,
        le=600000,
        description="Authority timeout in milliseconds"
    )
    fallback_to_self_signed: bool = Field(
        default=False,
        description="Install a self-signed certificate if the authority fails"
    )

    @property
    def has_target(self) -> bool:
        return bool(self.certificate_id or self.domain_id)


# Response Models

class CertificateSummary(BaseModel):
    """Certificate details without key material."""

    id: str
    domain_name: str
    domain_id: Optional[str] = None
    status: CertificateStatus
    provider: Optional[CertificateProvider] = None
    issuer: Optional[str] = None
    serial_number: Optional[str] = None
    fingerprint_sha256: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    renewed_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    auto_renew: bool = True
    last_renewal_attempt: Optional[datetime] = None
    last_renewal_error: Optional[str] = None

    @classmethod
    def from_certificate(cls, cert: Certificate) -> "CertificateSummary":
        """Create summary from Certificate model."""
        return cls(
            id=cert.id,
            domain_name=cert.domain_name,
            domain_id=cert.domain_id,
            status=cert.status,
            provider=cert.provider,
            issuer=cert.issuer,
            serial_number=cert.serial_number,
            fingerprint_sha256=cert.fingerprint_sha256,
            issued_at=cert.issued_at,
            expires_at=cert.expires_at,
            renewed_at=cert.renewed_at,
            days_until_expiry=cert.days_until_expiry,
            auto_renew=cert.auto_renew,
            last_renewal_attempt=cert.last_renewal_attempt,
            last_renewal_error=cert.last_renewal_error,
        )


class CertificateStatusResponse(BaseModel):
    """Dashboard view of a domain's certificate."""

    domain_id: str
    domain_name: str
    certificate_id: Optional[str] = None
    status: Optional[CertificateStatus] = Field(None, description="None when no certificate exists")
    provider: Optional[CertificateProvider] = None
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    last_error: Optional[str] = None


class CertificateListResponse(BaseModel):
    """List of certificates with status counts."""

    certificates: List[CertificateSummary]
    total: int
    active_count: int = 0
    expiring_soon_count: int = 0
    expired_count: int = 0
    failed_count: int = 0


class RenewalCandidate(BaseModel):
    """Certificate the next sweep would pick up."""

    id: str
    domain_name: str
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    last_renewal_attempt: Optional[datetime] = None
    last_renewal_error: Optional[str] = None


class SSLStatistics(BaseModel):
    """Aggregate certificate counts for the dashboard."""

    total_domains: int = 0
    ssl_active: int = 0
    ssl_inactive: int = 0
    authority_certificates: int = 0
    self_signed_certificates: int = 0
    expiring_soon: int = 0
    failed: int = 0


# ACME Account Model

class ACMEAccount(BaseModel):
    """ACME account for Let's Encrypt."""

    id: str = Field(
        default_factory=lambda: f"acme-{uuid.uuid4().hex[:12]}",
        description="Account identifier"
    )
    email: Optional[str] = Field(None, description="Account email")
    directory_url: str = Field(
        ...,
        description="ACME directory URL"
    )
    account_url: Optional[str] = Field(
        None,
        description="Registered account URL"
    )
    private_key_pem: str = Field(
        ...,
        description="Account private key (PEM format)"
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        description="Account creation time"
    )
