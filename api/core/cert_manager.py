"""
Certificate manager for the certificate lifecycle.

Provides the high-level operations built on the ACME service, the
self-signed fallback generator and the certificate store: issuance with
fallback, domain activation, manual renewal and status queries.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from config import settings
from core.acme_service import ACMEService, AuthorityError, AuthorityTimeoutError, get_acme_service
from core.cert_errors import (
    CertificateNotFoundError,
    DomainNotFoundError,
    FallbackGenerationError,
    error_code_for,
    error_message_for,
)
from core.cert_store import CertificateStore, get_cert_store
from core.domain_registry import DomainRegistry, get_domain_registry
from core.encryption_service import get_encryption_service
from core.self_signed import generate_self_signed
from models.certificate import (
    ACMEAccount,
    Certificate,
    CertificateProvider,
    CertificateStatusResponse,
    IssuedCertificate,
    ManualRenewalRequest,
    RenewalCandidate,
    utcnow,
)
from models.domain import Domain

logger = logging.getLogger(__name__)


@dataclass
class IssuanceOutcome:
    """Result of one issuance attempt for a certificate name."""

    domain_name: str
    certificate: Certificate | None = None
    provider: CertificateProvider | None = None
    skipped: bool = False
    error: str | None = None
    error_code: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.provider is not None


class CertManager:
    """
    High-level certificate lifecycle management.

    Races the authority against a timeout, falls back to a self-signed
    certificate when allowed, and persists the outcome. Work for one
    certificate name is serialized on the store's per-name lock.
    """

    def __init__(
        self,
        acme: ACMEService | None = None,
        store: CertificateStore | None = None,
        registry: DomainRegistry | None = None,
    ):
        self.acme: ACMEService = acme or get_acme_service()
        self.store = store or get_cert_store()
        self.registry = registry or get_domain_registry()
        self.db = self.store.db
        self.acme.set_account_loader(self._load_acme_account)
        self.acme.set_account_saver(self._save_acme_account)

    async def _load_acme_account(self) -> ACMEAccount | None:
        """Load the most recent ACME account for the active directory."""
        directory_url = self.acme.directory_url
        row = await self.db.fetch_one(
            "SELECT * FROM acme_accounts WHERE directory_url = ? ORDER BY created_at DESC LIMIT 1", (directory_url,)
        )
        if row:
            # Decrypt the private key if it was encrypted at rest
            encryption = get_encryption_service()
            return ACMEAccount(
                id=row["id"],
                email=row["email"],
                directory_url=row["directory_url"],
                account_url=row["account_url"],
                private_key_pem=encryption.decrypt_key(row["private_key_pem"]),
            )
        return None

    async def _save_acme_account(self, account: ACMEAccount) -> None:
        """Save an ACME account to the database for reuse across restarts."""
        # One account row per directory
        existing = await self.db.fetch_one(
            "SELECT id FROM acme_accounts WHERE directory_url = ? LIMIT 1",
            (account.directory_url,),
        )

        encrypted_key_pem = get_encryption_service().encrypt_key(account.private_key_pem)

        if existing:
            account_id = existing["id"]
            await self.db.execute(
                """UPDATE acme_accounts
                   SET email = ?, account_url = ?, private_key_pem = ?
                   WHERE id = ?""",
                (account.email, account.account_url, encrypted_key_pem, account_id),
            )
            logger.info(f"Updated existing ACME account {account_id} for {account.directory_url}")
        else:
            account_id = account.id or f"acme-{uuid.uuid4().hex[:12]}"
            await self.db.execute(
                """INSERT INTO acme_accounts
                   (id, email, directory_url, account_url, private_key_pem, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    account_id,
                    account.email,
                    account.directory_url,
                    account.account_url,
                    encrypted_key_pem,
                    account.created_at.isoformat(),
                ),
            )
            logger.info(f"Saved new ACME account {account_id} for {account.directory_url}")

    async def issue_from_authority(self, domain_name: str, timeout_ms: int) -> IssuedCertificate:
        """Race the authority against ``timeout_ms``, raising AuthorityTimeoutError on expiry."""
        try:
            return await asyncio.wait_for(self.acme.issue(domain_name), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise AuthorityTimeoutError(
                f"Authority did not complete issuance within {timeout_ms} ms (timeout)",
                domain=domain_name,
                suggestion="Retry later or increase timeout_ms",
            )

    async def issue_with_fallback(
        self,
        domain_name: str,
        timeout_ms: int,
        fallback_to_self_signed: bool,
        domain_id: str | None = None,
    ) -> IssuanceOutcome:
        """
        Obtain and install a certificate for one name.

        The authority is raced against ``timeout_ms``. On timeout or any
        authority error a self-signed certificate is installed when
        ``fallback_to_self_signed`` is set, and the authority error is kept
        as the last renewal error. Without fallback the name is recorded
        as failed; valid material already installed is left in place.

        Raises:
            StorePersistenceError: If the outcome could not be stored
        """
        async with self.store.lock_for(domain_name):
            try:
                material = await self.issue_from_authority(domain_name, timeout_ms)
            except AuthorityError as e:
                authority_error = e
            else:
                cert = await self.store.upsert_active(domain_name, material, domain_id=domain_id)
                logger.info(f"Activated authority certificate for {domain_name} (expires {cert.expires_at})")
                return IssuanceOutcome(domain_name, certificate=cert, provider=CertificateProvider.AUTHORITY)

            message = error_message_for(authority_error)
            code = error_code_for(authority_error)

            if not fallback_to_self_signed:
                logger.error(f"Certificate issuance failed for {domain_name}: {message}")
                cert = await self.store.record_failure(domain_name, message, domain_id=domain_id)
                return IssuanceOutcome(domain_name, certificate=cert, error=message, error_code=code)

            logger.warning(f"Authority failed for {domain_name} ({message}), installing self-signed certificate")
            try:
                material = await generate_self_signed(domain_name)
            except FallbackGenerationError as e:
                logger.error(f"Fallback generation failed for {domain_name}: {e.message}", exc_info=True)
                cert = await self.store.record_failure(domain_name, e.message, domain_id=domain_id)
                return IssuanceOutcome(domain_name, certificate=cert, error=e.message, error_code=e.error_code)

            cert = await self.store.upsert_active(domain_name, material, domain_id=domain_id)
            await self.store.record_renewal_attempt(cert.id, success=False, error=message)
            cert = await self.store.get(cert.id)
            return IssuanceOutcome(
                domain_name,
                certificate=cert,
                provider=CertificateProvider.SELF_SIGNED,
                error=message,
                error_code=code,
            )

    async def activate_domain(
        self,
        domain: Domain,
        timeout_ms: int,
        fallback_to_self_signed: bool,
        min_valid_days: int | None = None,
    ) -> IssuanceOutcome:
        """
        Ensure a registry domain has an installed certificate.

        A certificate that stays valid for more than ``min_valid_days``
        (default 7) is reused without contacting the authority.
        """
        if min_valid_days is None:
            min_valid_days = settings.idempotence_min_valid_days
        domain_name = self.registry.certificate_name(domain)

        existing = await self.store.find_active(domain_name)
        if existing and existing.is_valid_for(min_valid_days):
            logger.info(
                f"Certificate for {domain_name} valid for {existing.days_until_expiry} more days, skipping issuance"
            )
            return IssuanceOutcome(
                domain_name,
                certificate=existing,
                provider=existing.provider,
                skipped=True,
            )

        return await self.issue_with_fallback(
            domain_name,
            timeout_ms=timeout_ms,
            fallback_to_self_signed=fallback_to_self_signed,
            domain_id=domain.id,
        )

    async def _resolve_renewal_target(self, request: ManualRenewalRequest) -> tuple[str, str | None, Certificate | None]:
        """Return (domain_name, domain_id, existing certificate) for a renewal request."""
        if request.certificate_id:
            cert = await self.store.get(request.certificate_id)
            if cert is None:
                raise CertificateNotFoundError(
                    f"Certificate {request.certificate_id} not found",
                    suggestion="List certificates with GET /certificates/",
                )
            return cert.domain_name, cert.domain_id, cert

        domain = await self.registry.resolve(request.domain_id)
        domain_name = self.registry.certificate_name(domain)
        return domain_name, domain.id, await self.store.get_by_name(domain_name)

    async def renew_certificate(self, request: ManualRenewalRequest) -> Certificate:
        """
        Run one issuance cycle for a certificate or registry domain.

        A certificate outside the renewal window is returned unchanged
        unless ``force`` is set.

        Raises:
            ValueError: Neither certificate_id nor domain_id was given
            CertificateNotFoundError: Unknown certificate id
            DomainNotFoundError: Unknown domain id
            DomainNotVerifiedError: Domain is not verified
            AuthorityError: Authority failed and fallback is disabled
            FallbackGenerationError: Fallback was allowed but could not be generated
        """
        if not request.has_target:
            raise ValueError("certificate_id or domain_id is required")

        domain_name, domain_id, existing = await self._resolve_renewal_target(request)

        renewal_days = settings.renewal_days_before_expiry
        if existing and not request.force and existing.is_valid_for(renewal_days):
            logger.info(
                f"Certificate for {domain_name} does not need renewal ({existing.days_until_expiry} days left)"
            )
            return existing

        outcome = await self.issue_with_fallback(
            domain_name,
            timeout_ms=request.timeout_ms,
            fallback_to_self_signed=request.fallback_to_self_signed,
            domain_id=domain_id,
        )

        if outcome.succeeded:
            logger.info(f"Renewed certificate for {domain_name} via {outcome.provider.value}")
            return outcome.certificate

        if outcome.error_code == FallbackGenerationError.error_code:
            raise FallbackGenerationError(outcome.error, domain=domain_name)
        raise AuthorityError(
            outcome.error or "Certificate renewal failed",
            domain=domain_name,
            suggestion="Check domain accessibility, or retry with fallback_to_self_signed",
        )

    async def get_certificate_status(self, domain_id: str) -> CertificateStatusResponse:
        """
        Dashboard status of the certificate for a registry domain.

        Raises:
            DomainNotFoundError: Unknown domain id
        """
        domain = await self.registry.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(f"Domain {domain_id} not found")

        domain_name = self.registry.certificate_name(domain)
        cert = await self.store.get_by_name(domain_name) or await self.store.get_by_domain_id(domain_id)
        if cert is None:
            return CertificateStatusResponse(domain_id=domain.id, domain_name=domain_name)

        return CertificateStatusResponse(
            domain_id=domain.id,
            domain_name=cert.domain_name,
            certificate_id=cert.id,
            status=cert.status,
            provider=cert.provider,
            expires_at=cert.expires_at,
            days_until_expiry=cert.days_until_expiry,
            last_error=cert.last_renewal_error,
        )

    async def get_certificate(self, certificate_id: str) -> Certificate:
        """Get a certificate by id or raise CertificateNotFoundError."""
        cert = await self.store.get(certificate_id)
        if cert is None:
            raise CertificateNotFoundError(f"Certificate {certificate_id} not found")
        return cert

    async def list_upcoming_renewals(self, days: int | None = None, limit: int | None = None) -> list[RenewalCandidate]:
        """Certificates the sweep would renew within ``days``, soonest first."""
        if days is None:
            days = settings.renewal_days_before_expiry
        certs = await self.store.find_expiring_before(utcnow() + timedelta(days=days), limit=limit)
        return [
            RenewalCandidate(
                id=c.id,
                domain_name=c.domain_name,
                expires_at=c.expires_at,
                days_until_expiry=c.days_until_expiry,
                last_renewal_attempt=c.last_renewal_attempt,
                last_renewal_error=c.last_renewal_error,
            )
            for c in certs
        ]


# Singleton instance
_cert_manager: CertManager | None = None


def get_cert_manager() -> CertManager:
    """Get the global certificate manager instance."""
    global _cert_manager
    if _cert_manager is None:
        _cert_manager = CertManager()
    return _cert_manager
