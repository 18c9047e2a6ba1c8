"""
Certificate store.

Owns the ``certificates`` and ``certificate_revisions`` tables. There is
exactly one row per certificate name; replacing material archives the
previous material as a revision first. Rows are never deleted here.
"""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta

from config import settings
from core.cert_errors import StorePersistenceError
from core.database import Database, get_database
from core.encryption_service import EncryptionService, get_encryption_service
from models.certificate import (
    MATERIAL_STATUSES,
    Certificate,
    CertificateProvider,
    CertificateRevision,
    CertificateStatus,
    IssuedCertificate,
    SSLStatistics,
    utcnow,
)

logger = logging.getLogger(__name__)

_MATERIAL_STATUS_VALUES = tuple(s.value for s in MATERIAL_STATUSES)


@contextmanager
def _persistence(operation: str, domain: str | None = None):
    """Translate database errors into StorePersistenceError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"Certificate store {operation} failed: {e}", exc_info=True)
        raise StorePersistenceError(
            f"Certificate store {operation} failed: {e}",
            domain=domain,
            suggestion="Check that the database file is writable and not locked",
        ) from e


class CertificateStore:
    """
    Persistence for certificate records.

    Writers for the same name serialize on ``lock_for(name)``; the store
    methods themselves do not take the lock so a caller can hold it across
    issuance and the following write.
    """

    def __init__(
        self,
        db: Database | None = None,
        encryption: EncryptionService | None = None,
        warning_days: int | None = None,
    ):
        self.db = db or get_database()
        self.encryption = encryption or get_encryption_service()
        self.warning_days = settings.cert_expiry_warning_days if warning_days is None else warning_days
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, domain_name: str) -> asyncio.Lock:
        """Lock serializing updates to one certificate name."""
        lock = self._locks.get(domain_name)
        if lock is None:
            lock = self._locks[domain_name] = asyncio.Lock()
        return lock

    def _parse_datetime(self, value: str) -> datetime | None:
        """Parse datetime string, normalizing to naive UTC."""
        if not value:
            return None
        # Handle ISO format with 'Z' suffix
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # Convert to naive UTC if timezone-aware
        if dt.tzinfo is not None:
            dt = dt.replace(tzinfo=None)
        return dt

    @staticmethod
    def _format_datetime(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    def _db_to_certificate(self, row: dict) -> Certificate:
        """Convert database row to Certificate model."""
        cert = Certificate(
            id=row["id"],
            domain_name=row["domain_name"],
            domain_id=row.get("domain_id"),
            status=CertificateStatus(row["status"]),
            provider=CertificateProvider(row["provider"]) if row.get("provider") else None,
            certificate_pem=row.get("certificate_pem"),
            private_key_pem=self.encryption.decrypt_key(row.get("private_key_pem")),
            chain_pem=row.get("chain_pem"),
            issuer=row.get("issuer"),
            serial_number=row.get("serial_number"),
            fingerprint_sha256=row.get("fingerprint_sha256"),
            issued_at=self._parse_datetime(row.get("issued_at")),
            expires_at=self._parse_datetime(row.get("expires_at")),
            renewed_at=self._parse_datetime(row.get("renewed_at")),
            auto_renew=bool(row.get("auto_renew", True)),
            last_renewal_attempt=self._parse_datetime(row.get("last_renewal_attempt")),
            last_renewal_error=row.get("last_renewal_error"),
            renewal_attempts=row.get("renewal_attempts") or 0,
            created_at=self._parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=self._parse_datetime(row.get("updated_at")) or utcnow(),
        )
        # Reads always report the status implied by expiry
        cert.status = cert.effective_status(self.warning_days)
        return cert

    def _certificate_to_db(self, cert: Certificate) -> dict:
        """Convert Certificate model to database row."""
        return {
            "id": cert.id,
            "domain_name": cert.domain_name,
            "domain_id": cert.domain_id,
            "status": cert.status.value,
            "provider": cert.provider.value if cert.provider else None,
            "certificate_pem": cert.certificate_pem,
            "private_key_pem": self.encryption.encrypt_key(cert.private_key_pem),
            "chain_pem": cert.chain_pem,
            "issuer": cert.issuer,
            "serial_number": cert.serial_number,
            "fingerprint_sha256": cert.fingerprint_sha256,
            "issued_at": self._format_datetime(cert.issued_at),
            "expires_at": self._format_datetime(cert.expires_at),
            "renewed_at": self._format_datetime(cert.renewed_at),
            "auto_renew": cert.auto_renew,
            "last_renewal_attempt": self._format_datetime(cert.last_renewal_attempt),
            "last_renewal_error": cert.last_renewal_error,
            "renewal_attempts": cert.renewal_attempts,
            "created_at": cert.created_at.isoformat(),
            "updated_at": cert.updated_at.isoformat(),
        }

    def _db_to_revision(self, row: dict) -> CertificateRevision:
        return CertificateRevision(
            id=row["id"],
            certificate_id=row["certificate_id"],
            domain_name=row["domain_name"],
            provider=CertificateProvider(row["provider"]) if row.get("provider") else None,
            certificate_pem=row.get("certificate_pem"),
            chain_pem=row.get("chain_pem"),
            serial_number=row.get("serial_number"),
            issued_at=self._parse_datetime(row.get("issued_at")),
            expires_at=self._parse_datetime(row.get("expires_at")),
            archived_at=self._parse_datetime(row.get("archived_at")) or utcnow(),
        )

    def _revision_from(self, cert: Certificate) -> dict:
        revision = CertificateRevision(
            certificate_id=cert.id,
            domain_name=cert.domain_name,
            provider=cert.provider,
            certificate_pem=cert.certificate_pem,
            chain_pem=cert.chain_pem,
            serial_number=cert.serial_number,
            issued_at=cert.issued_at,
            expires_at=cert.expires_at,
        )
        return {
            "id": revision.id,
            "certificate_id": revision.certificate_id,
            "domain_name": revision.domain_name,
            "provider": revision.provider.value if revision.provider else None,
            "certificate_pem": revision.certificate_pem,
            "chain_pem": revision.chain_pem,
            "serial_number": revision.serial_number,
            "issued_at": self._format_datetime(revision.issued_at),
            "expires_at": self._format_datetime(revision.expires_at),
            "archived_at": revision.archived_at.isoformat(),
        }

    # Reads

    async def get(self, certificate_id: str) -> Certificate | None:
        """Get a certificate by id."""
        with _persistence("read"):
            row = await self.db.fetch_one("SELECT * FROM certificates WHERE id = ?", (certificate_id,))
        return self._db_to_certificate(row) if row else None

    async def get_by_name(self, domain_name: str) -> Certificate | None:
        """Get the certificate row for a name, whatever its status."""
        with _persistence("read", domain_name):
            row = await self.db.fetch_one("SELECT * FROM certificates WHERE domain_name = ?", (domain_name,))
        return self._db_to_certificate(row) if row else None

    async def get_by_domain_id(self, domain_id: str) -> Certificate | None:
        """Get the most recently updated certificate linked to a registry domain."""
        with _persistence("read"):
            row = await self.db.fetch_one(
                "SELECT * FROM certificates WHERE domain_id = ? ORDER BY updated_at DESC LIMIT 1",
                (domain_id,),
            )
        return self._db_to_certificate(row) if row else None

    async def find_active(self, domain_name: str) -> Certificate | None:
        """
        Get the certificate for a name if it carries installed material.

        Never returns pending or failed rows. The returned status is the
        effective one (expired or expiring_soon when the dates say so).
        """
        placeholders = ", ".join("?" for _ in _MATERIAL_STATUS_VALUES)
        with _persistence("read", domain_name):
            row = await self.db.fetch_one(
                f"SELECT * FROM certificates WHERE domain_name = ? AND status IN ({placeholders})",
                (domain_name, *_MATERIAL_STATUS_VALUES),
            )
        return self._db_to_certificate(row) if row else None

    async def find_expiring_before(
        self,
        threshold: datetime,
        auto_renew_only: bool = True,
        limit: int | None = None,
    ) -> list[Certificate]:
        """Certificates with material expiring at or before ``threshold``, soonest first."""
        placeholders = ", ".join("?" for _ in _MATERIAL_STATUS_VALUES)
        query = (
            "SELECT * FROM certificates "
            f"WHERE status IN ({placeholders}) "
            "AND certificate_pem IS NOT NULL AND expires_at IS NOT NULL AND expires_at <= ?"
        )
        params: tuple = (*_MATERIAL_STATUS_VALUES, threshold.isoformat())
        if auto_renew_only:
            query += " AND auto_renew = 1"
        query += " ORDER BY expires_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)

        with _persistence("read"):
            rows = await self.db.fetch_all(query, params)
        return [self._db_to_certificate(row) for row in rows]

    async def list_certificates(self, status: CertificateStatus | None = None) -> list[Certificate]:
        """List all certificates, optionally filtered by effective status."""
        with _persistence("read"):
            rows = await self.db.fetch_all("SELECT * FROM certificates ORDER BY domain_name")
        certs = [self._db_to_certificate(row) for row in rows]
        if status:
            certs = [c for c in certs if c.status == status]
        return certs

    async def list_revisions(self, certificate_id: str) -> list[CertificateRevision]:
        """Archived material for a certificate, newest first."""
        with _persistence("read"):
            rows = await self.db.fetch_all(
                "SELECT * FROM certificate_revisions WHERE certificate_id = ? ORDER BY archived_at DESC",
                (certificate_id,),
            )
        return [self._db_to_revision(row) for row in rows]

    # Writes

    async def upsert_active(
        self,
        domain_name: str,
        material: IssuedCertificate,
        provider: CertificateProvider | None = None,
        expires_at: datetime | None = None,
        domain_id: str | None = None,
        auto_renew: bool | None = None,
    ) -> Certificate:
        """
        Install new material for a name and mark it active.

        This is the only write that sets status ``active``. It clears the
        last renewal error and the failed-attempt counter. An existing
        row keeps its id; its previous material is archived first.
        """
        provider = provider or material.provider
        expires_at = expires_at or material.expires_at
        now = utcnow()

        existing = await self.get_by_name(domain_name)
        cert = existing.model_copy() if existing else Certificate(domain_name=domain_name, created_at=now)

        if existing is None:
            cert.auto_renew = provider == CertificateProvider.AUTHORITY if auto_renew is None else auto_renew
        elif auto_renew is not None:
            cert.auto_renew = auto_renew
        elif provider == CertificateProvider.AUTHORITY and existing.provider != CertificateProvider.AUTHORITY:
            # Authority material replacing a fallback joins the renewal sweep
            cert.auto_renew = True

        cert.domain_id = domain_id or cert.domain_id
        cert.status = CertificateStatus.ACTIVE
        cert.provider = provider
        cert.certificate_pem = material.certificate_pem
        cert.private_key_pem = material.private_key_pem
        cert.chain_pem = material.chain_pem
        cert.issuer = material.issuer
        cert.serial_number = material.serial_number
        cert.fingerprint_sha256 = material.fingerprint_sha256
        cert.issued_at = material.issued_at or now
        cert.expires_at = expires_at
        cert.last_renewal_error = None
        cert.renewal_attempts = 0
        cert.updated_at = now

        with _persistence("upsert", domain_name):
            if existing is None:
                await self.db.insert("certificates", self._certificate_to_db(cert))
                logger.info(f"Stored new {provider.value} certificate for {domain_name}")
            else:
                data = self._certificate_to_db(cert)
                data.pop("id")
                data.pop("created_at")
                if existing.has_material:
                    cert.renewed_at = now
                    data["renewed_at"] = now.isoformat()
                    await self.db.replace_material(self._revision_from(existing), cert.id, data)
                else:
                    await self.db.update("certificates", cert.id, data)
                logger.info(f"Replaced certificate for {domain_name} with {provider.value} material")

        return cert

    async def record_renewal_attempt(
        self,
        certificate_id: str,
        success: bool,
        error: str | None = None,
    ) -> None:
        """
        Record the outcome of a renewal attempt.

        Material, expiry and status are never touched here; a failed
        attempt against a valid certificate leaves it serving.
        """
        now = utcnow().isoformat()
        with _persistence("renewal attempt"):
            if success:
                await self.db.execute(
                    """UPDATE certificates
                       SET last_renewal_attempt = ?, last_renewal_error = NULL, updated_at = ?
                       WHERE id = ?""",
                    (now, now, certificate_id),
                )
            else:
                await self.db.execute(
                    """UPDATE certificates
                       SET last_renewal_attempt = ?, last_renewal_error = ?,
                           renewal_attempts = renewal_attempts + 1, updated_at = ?
                       WHERE id = ?""",
                    (now, error or "Renewal failed", now, certificate_id),
                )

    async def record_failure(
        self,
        domain_name: str,
        error: str,
        domain_id: str | None = None,
    ) -> Certificate:
        """
        Record a failed issuance for a name.

        A name without usable material is marked ``failed``; a row that
        still has valid material only records the error.
        """
        now = utcnow()
        existing = await self.get_by_name(domain_name)

        with _persistence("record failure", domain_name):
            if existing is None:
                cert = Certificate(
                    domain_name=domain_name,
                    domain_id=domain_id,
                    status=CertificateStatus.FAILED,
                    last_renewal_attempt=now,
                    last_renewal_error=error,
                    renewal_attempts=1,
                    created_at=now,
                    updated_at=now,
                )
                await self.db.insert("certificates", self._certificate_to_db(cert))
                logger.info(f"Recorded failed certificate for {domain_name}")
                return cert

            cert = existing.model_copy()
            cert.domain_id = domain_id or cert.domain_id
            cert.last_renewal_attempt = now
            cert.last_renewal_error = error
            cert.renewal_attempts += 1
            cert.updated_at = now
            if not cert.is_valid_for(0):
                cert.status = CertificateStatus.FAILED

            await self.db.update(
                "certificates",
                cert.id,
                {
                    "domain_id": cert.domain_id,
                    "status": cert.status.value,
                    "last_renewal_attempt": now.isoformat(),
                    "last_renewal_error": error,
                    "renewal_attempts": cert.renewal_attempts,
                    "updated_at": now.isoformat(),
                },
            )
        return cert

    async def refresh_statuses(self) -> int:
        """Persist effective statuses for rows with material. Returns rows changed."""
        warning_threshold = (utcnow() + timedelta(days=self.warning_days)).isoformat()
        now = utcnow().isoformat()
        placeholders = ", ".join("?" for _ in _MATERIAL_STATUS_VALUES)

        with _persistence("status refresh"):
            expired = await self.db.execute(
                f"""UPDATE certificates SET status = 'expired', updated_at = ?
                    WHERE status IN ({placeholders}) AND status != 'expired'
                    AND expires_at IS NOT NULL AND expires_at < ?""",
                (now, *_MATERIAL_STATUS_VALUES, now),
            )
            expiring = await self.db.execute(
                """UPDATE certificates SET status = 'expiring_soon', updated_at = ?
                   WHERE status = 'active' AND expires_at IS NOT NULL
                   AND expires_at >= ? AND expires_at <= ?""",
                (now, now, warning_threshold),
            )

        changed = expired + expiring
        if changed:
            logger.info(f"Refreshed certificate statuses: {expired} expired, {expiring} expiring soon")
        return changed

    async def statistics(self) -> SSLStatistics:
        """Counts for the dashboard."""
        certs = await self.list_certificates()
        with _persistence("read"):
            total_domains = await self.db.count("domains")

        serving = [c for c in certs if c.status in (CertificateStatus.ACTIVE, CertificateStatus.EXPIRING_SOON)]
        return SSLStatistics(
            total_domains=total_domains,
            ssl_active=len(serving),
            ssl_inactive=max(total_domains - len(serving), 0),
            authority_certificates=sum(1 for c in serving if c.provider == CertificateProvider.AUTHORITY),
            self_signed_certificates=sum(1 for c in serving if c.provider == CertificateProvider.SELF_SIGNED),
            expiring_soon=sum(1 for c in certs if c.status == CertificateStatus.EXPIRING_SOON),
            failed=sum(1 for c in certs if c.status == CertificateStatus.FAILED),
        )


# Singleton instance
_cert_store: CertificateStore | None = None


def get_cert_store() -> CertificateStore:
    """Get the global certificate store instance."""
    global _cert_store
    if _cert_store is None:
        _cert_store = CertificateStore()
    return _cert_store
