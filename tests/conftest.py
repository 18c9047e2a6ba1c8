"""
Global test fixtures.

Every test that touches persistence gets its own SQLite file under
tmp_path; services are built with explicit dependencies so no test
shares the process-wide singletons.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.cert_manager import CertManager
from core.cert_store import CertificateStore
from core.database import Database
from core.domain_registry import DomainRegistry
from core.encryption_service import EncryptionService
from factories import ACME_DIRECTORY, add_domain, make_material


@pytest.fixture
async def db(tmp_path):
    """Initialized database in a temporary file."""
    database = Database(str(tmp_path / "certflow.db"))
    await database.initialize()
    return database


@pytest.fixture
def store(db):
    return CertificateStore(db=db, encryption=EncryptionService(enabled=False), warning_days=30)


@pytest.fixture
def registry(db):
    return DomainRegistry(db=db, prefix="checkout")


@pytest.fixture
async def seeded_domains(db):
    """Five verified domains and one unverified domain."""
    for i in range(1, 6):
        await add_domain(db, f"dom-{i}", f"shop{i}.example.com")
    await add_domain(db, "dom-unverified", "pending.example.com", verified=False)
    return [f"dom-{i}" for i in range(1, 6)]


@pytest.fixture
def mock_acme():
    """ACME service whose issue() succeeds with 90-day authority material."""
    acme = MagicMock()
    acme.directory_url = ACME_DIRECTORY

    async def _issue(domain_name):
        return make_material(domain_name, days=90)

    acme.issue = AsyncMock(side_effect=_issue)
    return acme


@pytest.fixture
def cert_manager(mock_acme, store, registry):
    return CertManager(acme=mock_acme, store=store, registry=registry)
