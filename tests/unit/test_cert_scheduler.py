"""
Unit tests for the certificate renewal scheduler.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from core.acme_service import AuthorityError
from core.cert_scheduler import SWEEP_JOB_ID, CertScheduler
from core.renewal_log_store import RenewalLogStore
from factories import make_material
from models.certificate import CertificateStatus
from models.renewal import RenewalItemStatus, SweepConfigUpdate


@pytest.fixture
def log_store(db):
    return RenewalLogStore(db=db)


@pytest.fixture
async def scheduler(cert_manager, log_store):
    cert_scheduler = CertScheduler(
        cert_manager=cert_manager,
        log_store=log_store,
        batch_coordinator=MagicMock(),
        item_pause_seconds=0,
    )
    yield cert_scheduler
    await cert_scheduler.stop()


@pytest.fixture
async def expiring_certs(store):
    """Certificates expiring in 10, 40 and 5 days, plus one 3-day cert with auto-renew off."""
    certs = {}
    for name, days in (("ten.example.com", 10), ("forty.example.com", 40), ("five.example.com", 5)):
        certs[name] = await store.upsert_active(name, make_material(name, days=days))
    certs["manual.example.com"] = await store.upsert_active(
        "manual.example.com", make_material("manual.example.com", days=3), auto_renew=False
    )
    return certs


class TestSweep:

    @pytest.mark.asyncio
    async def test_renews_only_certificates_in_window(self, scheduler, mock_acme, expiring_certs, store):
        log = await scheduler.run_now()

        assert log.certificates_processed == 2
        assert log.successful_renewals == 2
        assert log.failed_renewals == 0
        # Soonest expiry first
        assert [d.domain_name for d in log.details] == ["five.example.com", "ten.example.com"]
        assert [c.args[0] for c in mock_acme.issue.await_args_list] == ["five.example.com", "ten.example.com"]

        renewed = await store.get_by_name("five.example.com")
        assert renewed.days_until_expiry >= 89
        assert renewed.last_renewal_attempt is not None

        untouched = await store.get_by_name("forty.example.com")
        assert untouched.expires_at == expiring_certs["forty.example.com"].expires_at

        manual = await store.get_by_name("manual.example.com")
        assert manual.expires_at == expiring_certs["manual.example.com"].expires_at

    @pytest.mark.asyncio
    async def test_failure_keeps_material_and_continues(self, scheduler, mock_acme, expiring_certs, store):
        async def _issue(domain_name):
            if domain_name == "five.example.com":
                raise AuthorityError("authority down", domain=domain_name)
            return make_material(domain_name)

        mock_acme.issue.side_effect = _issue

        log = await scheduler.run_now()

        assert log.successful_renewals == 1
        assert log.failed_renewals == 1
        failed = log.details[0]
        assert failed.status == RenewalItemStatus.FAILED
        assert failed.error_code == "authority_error"

        stored = await store.get_by_name("five.example.com")
        assert stored.expires_at == expiring_certs["five.example.com"].expires_at
        assert stored.status == CertificateStatus.EXPIRING_SOON
        assert stored.last_renewal_error == "authority down"
        assert stored.renewal_attempts == 1
        assert stored.last_renewal_attempt is not None

    @pytest.mark.asyncio
    async def test_respects_max_renewals_per_run(self, scheduler, mock_acme, expiring_certs):
        await scheduler.update_config(SweepConfigUpdate(max_renewals_per_run=1))

        log = await scheduler.run_now()

        assert log.certificates_processed == 1
        assert mock_acme.issue.await_count == 1

    @pytest.mark.asyncio
    async def test_log_written_for_empty_sweep(self, scheduler, log_store):
        log = await scheduler.run_now()

        logs, total = await log_store.list_logs()
        assert total == 1
        assert logs[0].id == log.id
        assert logs[0].certificates_processed == 0

    @pytest.mark.asyncio
    async def test_sweeps_never_overlap(self, scheduler, mock_acme, expiring_certs):
        gate = asyncio.Event()

        async def _issue(domain_name):
            await gate.wait()
            return make_material(domain_name)

        mock_acme.issue.side_effect = _issue

        first = asyncio.create_task(scheduler.run_now())
        await asyncio.sleep(0.01)
        second = asyncio.create_task(scheduler.run_now())
        await asyncio.sleep(0.01)

        assert scheduler.sweep_running is True
        assert mock_acme.issue.await_count == 1

        gate.set()
        first_log, second_log = await asyncio.gather(first, second)

        assert first_log.successful_renewals == 2
        # The second sweep saw the renewed certificates
        assert second_log.certificates_processed == 0
        assert scheduler.sweep_running is False

    @pytest.mark.asyncio
    async def test_refreshes_persisted_statuses(self, scheduler, expiring_certs, db):
        await scheduler.run_now()

        row = await db.fetch_one("SELECT status FROM certificates WHERE domain_name = ?", ("manual.example.com",))
        assert row["status"] == "expiring_soon"


class TestSchedulerLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler):
        await scheduler.start()
        first = scheduler.scheduler
        await scheduler.start()

        assert scheduler.active is True
        assert scheduler.scheduler is first
        assert len(scheduler.scheduler.get_jobs()) == 3
        assert scheduler.next_run_time() is not None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, scheduler):
        await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.active is False
        assert scheduler.next_run_time() is None

    @pytest.mark.asyncio
    async def test_status(self, scheduler):
        status = scheduler.status()

        assert status.active is False
        assert status.running is False
        assert status.schedule == "0 2 * * *"
        assert status.config.days_before_expiry == 30

    @pytest.mark.asyncio
    async def test_update_config_restarts_active_scheduler(self, scheduler):
        await scheduler.start()

        status = await scheduler.update_config(SweepConfigUpdate(schedule="30 3 * * *", days_before_expiry=20))

        assert status.active is True
        assert status.schedule == "30 3 * * *"
        assert status.config.days_before_expiry == 20
        job = scheduler.scheduler.get_job(SWEEP_JOB_ID)
        assert job.next_run_time.hour == 3
        assert job.next_run_time.minute == 30

    @pytest.mark.asyncio
    async def test_update_config_rejects_bad_cron(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.update_config(SweepConfigUpdate(schedule="every day"))
        assert scheduler.schedule == "0 2 * * *"
