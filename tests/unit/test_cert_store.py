"""
Unit tests for the certificate store.

Runs against a real SQLite file per test.
"""

from datetime import timedelta

import pytest

from core.cert_errors import StorePersistenceError
from core.cert_store import CertificateStore
from core.database import Database
from core.encryption_service import EncryptionService
from factories import add_domain, make_material
from models.certificate import CertificateProvider, CertificateStatus, utcnow

NAME = "checkout.shop1.example.com"


class TestUpsertActive:

    @pytest.mark.asyncio
    async def test_creates_active_row(self, store):
        cert = await store.upsert_active(NAME, make_material(NAME), domain_id="dom-1")

        stored = await store.get_by_name(NAME)
        assert stored.id == cert.id
        assert stored.status == CertificateStatus.ACTIVE
        assert stored.provider == CertificateProvider.AUTHORITY
        assert stored.domain_id == "dom-1"
        assert stored.auto_renew is True
        assert stored.renewed_at is None

    @pytest.mark.asyncio
    async def test_self_signed_row_does_not_auto_renew(self, store):
        await store.upsert_active(NAME, make_material(NAME, provider=CertificateProvider.SELF_SIGNED))
        stored = await store.get_by_name(NAME)
        assert stored.auto_renew is False

    @pytest.mark.asyncio
    async def test_authority_replacing_self_signed_enables_auto_renew(self, store):
        await store.upsert_active(NAME, make_material(NAME, provider=CertificateProvider.SELF_SIGNED))
        await store.upsert_active(NAME, make_material(NAME, days=20))

        stored = await store.get_by_name(NAME)
        assert stored.provider == CertificateProvider.AUTHORITY
        assert stored.auto_renew is True
        candidates = await store.find_expiring_before(utcnow() + timedelta(days=30))
        assert [c.domain_name for c in candidates] == [NAME]

    @pytest.mark.asyncio
    async def test_authority_renewal_keeps_disabled_auto_renew(self, store):
        await store.upsert_active(NAME, make_material(NAME), auto_renew=False)
        await store.upsert_active(NAME, make_material(NAME, days=90))

        stored = await store.get_by_name(NAME)
        assert stored.auto_renew is False

    @pytest.mark.asyncio
    async def test_replacement_keeps_id_and_archives_material(self, store):
        first = await store.upsert_active(NAME, make_material(NAME, days=10))
        second = await store.upsert_active(NAME, make_material(NAME, days=90))

        assert second.id == first.id
        assert second.renewed_at is not None

        revisions = await store.list_revisions(first.id)
        assert len(revisions) == 1
        assert revisions[0].expires_at == first.expires_at

        stored = await store.get(first.id)
        assert stored.days_until_expiry >= 89

    @pytest.mark.asyncio
    async def test_clears_error_and_attempts(self, store):
        cert = await store.upsert_active(NAME, make_material(NAME, days=10))
        await store.record_renewal_attempt(cert.id, success=False, error="boom")
        await store.record_renewal_attempt(cert.id, success=False, error="boom again")

        failing = await store.get(cert.id)
        assert failing.renewal_attempts == 2
        assert failing.last_renewal_error == "boom again"

        await store.upsert_active(NAME, make_material(NAME, days=90))
        renewed = await store.get(cert.id)
        assert renewed.renewal_attempts == 0
        assert renewed.last_renewal_error is None

    @pytest.mark.asyncio
    async def test_one_row_per_name(self, store, db):
        for _ in range(3):
            await store.upsert_active(NAME, make_material(NAME))
        assert await db.count("certificates") == 1


class TestRecordRenewalAttempt:

    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_material(self, store):
        cert = await store.upsert_active(NAME, make_material(NAME, days=60))
        await store.record_renewal_attempt(cert.id, success=False, error="authority down")

        stored = await store.get(cert.id)
        assert stored.status == CertificateStatus.ACTIVE
        assert stored.expires_at == cert.expires_at
        assert stored.certificate_pem == cert.certificate_pem
        assert stored.last_renewal_attempt is not None


class TestRecordFailure:

    @pytest.mark.asyncio
    async def test_new_name_is_failed(self, store):
        cert = await store.record_failure(NAME, "no http-01", domain_id="dom-1")
        stored = await store.get(cert.id)
        assert stored.status == CertificateStatus.FAILED
        assert stored.last_renewal_error == "no http-01"
        assert stored.has_material is False

    @pytest.mark.asyncio
    async def test_valid_material_stays_serving(self, store):
        await store.upsert_active(NAME, make_material(NAME, days=60))
        await store.record_failure(NAME, "authority down")

        stored = await store.get_by_name(NAME)
        assert stored.status == CertificateStatus.ACTIVE
        assert stored.last_renewal_error == "authority down"

    @pytest.mark.asyncio
    async def test_expired_material_becomes_failed(self, store):
        await store.upsert_active(NAME, make_material(NAME, days=-1))
        await store.record_failure(NAME, "authority down")

        stored = await store.get_by_name(NAME)
        assert stored.status == CertificateStatus.FAILED


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_active_ignores_failed_rows(self, store):
        await store.record_failure(NAME, "boom")
        assert await store.find_active(NAME) is None

    @pytest.mark.asyncio
    async def test_effective_status_on_read(self, store):
        await store.upsert_active(NAME, make_material(NAME, days=10))
        stored = await store.find_active(NAME)
        assert stored.status == CertificateStatus.EXPIRING_SOON

    @pytest.mark.asyncio
    async def test_find_expiring_before_orders_and_filters(self, store):
        await store.upsert_active("a.example.com", make_material("a.example.com", days=10))
        await store.upsert_active("b.example.com", make_material("b.example.com", days=5))
        await store.upsert_active("c.example.com", make_material("c.example.com", days=40))
        await store.upsert_active(
            "d.example.com", make_material("d.example.com", days=3), auto_renew=False
        )

        certs = await store.find_expiring_before(utcnow() + timedelta(days=30))
        assert [c.domain_name for c in certs] == ["b.example.com", "a.example.com"]

        everything = await store.find_expiring_before(utcnow() + timedelta(days=30), auto_renew_only=False)
        assert [c.domain_name for c in everything] == ["d.example.com", "b.example.com", "a.example.com"]

        limited = await store.find_expiring_before(utcnow() + timedelta(days=30), limit=1)
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_list_certificates_by_effective_status(self, store):
        await store.upsert_active("a.example.com", make_material("a.example.com", days=10))
        await store.upsert_active("b.example.com", make_material("b.example.com", days=80))
        await store.record_failure("c.example.com", "boom")

        expiring = await store.list_certificates(CertificateStatus.EXPIRING_SOON)
        assert [c.domain_name for c in expiring] == ["a.example.com"]
        assert len(await store.list_certificates()) == 3

    @pytest.mark.asyncio
    async def test_refresh_statuses_persists(self, store, db):
        await store.upsert_active("a.example.com", make_material("a.example.com", days=10))
        await store.upsert_active("b.example.com", make_material("b.example.com", days=-2))
        await store.upsert_active("c.example.com", make_material("c.example.com", days=80))

        changed = await store.refresh_statuses()

        assert changed == 2
        rows = await db.fetch_all("SELECT domain_name, status FROM certificates ORDER BY domain_name")
        assert [r["status"] for r in rows] == ["expiring_soon", "expired", "active"]

    @pytest.mark.asyncio
    async def test_statistics(self, store, db):
        await add_domain(db, "dom-1", "shop1.example.com")
        await add_domain(db, "dom-2", "shop2.example.com")
        await add_domain(db, "dom-3", "shop3.example.com")
        await store.upsert_active("checkout.shop1.example.com", make_material("checkout.shop1.example.com"))
        await store.upsert_active(
            "checkout.shop2.example.com",
            make_material("checkout.shop2.example.com", days=10, provider=CertificateProvider.SELF_SIGNED),
        )
        await store.record_failure("checkout.shop3.example.com", "boom")

        stats = await store.statistics()
        assert stats.total_domains == 3
        assert stats.ssl_active == 2
        assert stats.ssl_inactive == 1
        assert stats.authority_certificates == 1
        assert stats.self_signed_certificates == 1
        assert stats.expiring_soon == 1
        assert stats.failed == 1


class TestEncryptionAtRest:

    @pytest.mark.asyncio
    async def test_private_key_encrypted_in_database(self, db):
        store = CertificateStore(
            db=db, encryption=EncryptionService(passphrase="test-passphrase-1234", enabled=True)
        )
        material = make_material(NAME)
        await store.upsert_active(NAME, material)

        row = await db.fetch_one("SELECT private_key_pem FROM certificates WHERE domain_name = ?", (NAME,))
        assert row["private_key_pem"] != material.private_key_pem

        stored = await store.get_by_name(NAME)
        assert stored.private_key_pem == material.private_key_pem


class TestPersistenceErrors:

    @pytest.mark.asyncio
    async def test_sqlite_error_is_translated(self, tmp_path):
        # Schema never created, so every query fails
        store = CertificateStore(db=Database(str(tmp_path / "empty.db")), encryption=EncryptionService(enabled=False))
        with pytest.raises(StorePersistenceError) as exc_info:
            await store.get_by_name(NAME)
        assert exc_info.value.error_code == "store_persistence_error"
