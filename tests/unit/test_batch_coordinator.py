"""
Unit tests for the batch activation coordinator.
"""

import asyncio
from datetime import timedelta

import pytest

from core.acme_service import AuthorityError
from core.batch_coordinator import BatchCoordinator, BatchJobRunningError
from factories import make_material
from models.batch import BatchActivationOptions, BatchJobStatus, DomainResultStatus
from models.certificate import CertificateProvider, utcnow


@pytest.fixture
def coordinator(cert_manager, registry):
    return BatchCoordinator(cert_manager=cert_manager, registry=registry, chunk_pause_seconds=0)


class TestActivate:

    @pytest.mark.asyncio
    async def test_chunks_never_exceed_max_concurrent(self, coordinator, mock_acme, seeded_domains):
        events = []
        in_flight = 0
        peak = 0

        async def _issue(domain_name):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            events.append(("start", domain_name))
            await asyncio.sleep(0.01)
            events.append(("end", domain_name))
            in_flight -= 1
            return make_material(domain_name)

        mock_acme.issue.side_effect = _issue

        job = await coordinator.activate(seeded_domains, BatchActivationOptions(max_concurrent=3))

        assert peak == 3
        starts = [i for i, (kind, _) in enumerate(events) if kind == "start"]
        ends = [i for i, (kind, _) in enumerate(events) if kind == "end"]
        # Second chunk starts only after the first chunk has settled
        assert starts[3] > max(ends[:3])
        assert job.status == BatchJobStatus.COMPLETED
        assert job.progress == job.total == 5
        assert job.percentage == 100

    @pytest.mark.asyncio
    async def test_results_match_input_order(self, coordinator, seeded_domains):
        domain_ids = list(reversed(seeded_domains))

        job = await coordinator.activate(domain_ids)

        assert [r.domain_id for r in job.results] == domain_ids
        assert all(r.status == DomainResultStatus.SUCCESS for r in job.results)
        assert all(r.provider == CertificateProvider.AUTHORITY for r in job.results)
        assert job.results[0].domain_name == "checkout.shop5.example.com"
        assert job.duration_ms is not None

    @pytest.mark.asyncio
    async def test_unverified_and_unknown_domains_rejected(self, coordinator, mock_acme, seeded_domains):
        job = await coordinator.activate(["dom-1", "dom-unverified", "dom-missing"])

        assert len(job.results) == 3
        assert job.results[0].status == DomainResultStatus.SUCCESS
        assert job.results[1].status == DomainResultStatus.FAILED
        assert job.results[1].error_code == "domain_not_verified"
        assert job.results[2].status == DomainResultStatus.FAILED
        assert job.results[2].error_code == "domain_not_found"
        assert mock_acme.issue.await_count == 1
        assert job.status == BatchJobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, coordinator, mock_acme, seeded_domains):
        await coordinator.activate(seeded_domains)
        calls = mock_acme.issue.await_count

        job = await coordinator.activate(seeded_domains)

        assert mock_acme.issue.await_count == calls
        assert all(r.skipped for r in job.results)
        assert all(r.status == DomainResultStatus.SUCCESS for r in job.results)

    @pytest.mark.asyncio
    async def test_authority_failure_falls_back(self, coordinator, mock_acme, seeded_domains):
        mock_acme.issue.side_effect = AuthorityError("authority down")

        job = await coordinator.activate(seeded_domains[:2])

        for result in job.results:
            assert result.status == DomainResultStatus.SUCCESS
            assert result.provider == CertificateProvider.SELF_SIGNED
            assert result.error == "authority down"

    @pytest.mark.asyncio
    async def test_authority_failure_without_fallback(self, coordinator, mock_acme, seeded_domains):
        mock_acme.issue.side_effect = AuthorityError("authority down")

        job = await coordinator.activate(
            seeded_domains[:2], BatchActivationOptions(fallback_to_self_signed=False)
        )

        assert job.status == BatchJobStatus.COMPLETED
        assert job.failure_count == 2
        assert all(r.error_code == "authority_error" for r in job.results)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, coordinator, mock_acme, seeded_domains):
        async def _issue(domain_name):
            if domain_name == "checkout.shop2.example.com":
                raise RuntimeError("unexpected")
            return make_material(domain_name)

        mock_acme.issue.side_effect = _issue

        job = await coordinator.activate(seeded_domains[:3], BatchActivationOptions(fallback_to_self_signed=False))

        assert [r.status for r in job.results] == [
            DomainResultStatus.SUCCESS,
            DomainResultStatus.FAILED,
            DomainResultStatus.SUCCESS,
        ]
        assert job.results[1].error_code == "internal_error"


class TestJobManagement:

    @pytest.mark.asyncio
    async def test_start_batch_runs_in_background(self, coordinator, seeded_domains):
        job = await coordinator.start_batch(seeded_domains)

        assert job.status in (BatchJobStatus.PENDING, BatchJobStatus.RUNNING)
        assert len(job.results) == 5

        finished = await coordinator.wait(job.id)

        assert finished.status == BatchJobStatus.COMPLETED
        assert coordinator.get_job(job.id) is finished
        assert coordinator.list_jobs(active_only=True) == []
        assert coordinator.list_jobs(active_only=False) == [finished]

    @pytest.mark.asyncio
    async def test_delete_running_job_rejected(self, coordinator, mock_acme, seeded_domains):
        gate = asyncio.Event()

        async def _issue(domain_name):
            await gate.wait()
            return make_material(domain_name)

        mock_acme.issue.side_effect = _issue
        job = await coordinator.start_batch(seeded_domains[:1])
        await asyncio.sleep(0.01)

        with pytest.raises(BatchJobRunningError):
            coordinator.delete_job(job.id)

        gate.set()
        await coordinator.wait(job.id)
        assert coordinator.delete_job(job.id) is True
        assert coordinator.delete_job(job.id) is False

    @pytest.mark.asyncio
    async def test_purge_finished_jobs(self, coordinator, seeded_domains):
        job = await coordinator.activate(seeded_domains[:1])
        job.completed_at = utcnow() - timedelta(hours=25)

        assert coordinator.purge_finished_jobs() == 1
        assert coordinator.get_job(job.id) is None
