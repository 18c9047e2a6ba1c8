"""
Domain registry lookup.

The storefront platform owns customer domains; this service reads the
``domains`` table it mirrors into the orchestrator database.
"""

import logging

from config import settings
from core.cert_errors import DomainNotFoundError, DomainNotVerifiedError
from core.database import Database, get_database
from models.domain import Domain, EligibleDomain, VerificationStatus

logger = logging.getLogger(__name__)


class DomainRegistry:
    """Read access to registered storefront domains."""

    def __init__(self, db: Database | None = None, prefix: str | None = None):
        self.db = db or get_database()
        self.prefix = settings.certificate_subdomain_prefix if prefix is None else prefix

    def _row_to_domain(self, row: dict) -> Domain:
        return Domain(
            id=row["id"],
            full_name=row["full_name"],
            verification_status=VerificationStatus(row["verification_status"]),
            store_id=row.get("store_id"),
        )

    def certificate_name(self, domain: Domain) -> str:
        """Certificate name issued for a registered domain."""
        return domain.certificate_name(self.prefix)

    async def get(self, domain_id: str) -> Domain | None:
        row = await self.db.fetch_one("SELECT * FROM domains WHERE id = ?", (domain_id,))
        if row:
            return self._row_to_domain(row)
        return None

    async def resolve(self, domain_id: str, require_verified: bool = True) -> Domain:
        """
        Look up a domain for issuance.

        Raises:
            DomainNotFoundError: Unknown domain id
            DomainNotVerifiedError: Domain exists but is not verified
        """
        domain = await self.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(
                f"Domain {domain_id} not found",
                suggestion="Register the domain before requesting a certificate",
            )
        if require_verified and not domain.is_verified:
            raise DomainNotVerifiedError(
                f"Domain {domain.full_name} is not verified (status: {domain.verification_status.value})",
                domain=domain.full_name,
                suggestion="Complete domain ownership verification first",
            )
        return domain

    async def list_domains(self, store_id: str | None = None) -> list[Domain]:
        if store_id:
            rows = await self.db.fetch_all(
                "SELECT * FROM domains WHERE store_id = ? ORDER BY full_name", (store_id,)
            )
        else:
            rows = await self.db.fetch_all("SELECT * FROM domains ORDER BY full_name")
        return [self._row_to_domain(row) for row in rows]

    async def list_eligible(self, store_id: str | None = None) -> list[EligibleDomain]:
        """Verified domains whose certificate name has no active certificate."""
        domains = await self.list_domains(store_id)
        names = [self.certificate_name(d) for d in domains if d.is_verified]
        statuses = {}
        if names:
            placeholders = ", ".join("?" for _ in names)
            rows = await self.db.fetch_all(
                f"SELECT domain_name, status FROM certificates WHERE domain_name IN ({placeholders})",
                tuple(names),
            )
            statuses = {row["domain_name"]: row["status"] for row in rows}

        eligible = []
        for domain in domains:
            if not domain.is_verified:
                continue
            name = self.certificate_name(domain)
            status = statuses.get(name)
            if status in ("active", "expiring_soon"):
                continue
            eligible.append(
                EligibleDomain(
                    domain_id=domain.id,
                    full_name=domain.full_name,
                    certificate_name=name,
                    store_id=domain.store_id,
                    certificate_status=status,
                )
            )
        return eligible

    async def count(self) -> int:
        return await self.db.count("domains")


# Singleton instance
_domain_registry: DomainRegistry | None = None


def get_domain_registry() -> DomainRegistry:
    """Get the global domain registry instance."""
    global _domain_registry
    if _domain_registry is None:
        _domain_registry = DomainRegistry()
    return _domain_registry
