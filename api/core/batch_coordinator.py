"""
Batch activation coordinator.

Activates certificates for many registry domains at bounded concurrency.
Domains are processed in consecutive chunks of ``max_concurrent``; a
chunk starts only after every domain of the previous chunk has settled.
Jobs are kept in memory and polled by id.
"""

import asyncio
import logging
from datetime import timedelta

from config import settings
from core.cert_errors import (
    CertificateError,
    DomainNotFoundError,
    DomainNotVerifiedError,
    error_code_for,
    error_message_for,
)
from core.cert_manager import CertManager, IssuanceOutcome, get_cert_manager
from core.domain_registry import DomainRegistry, get_domain_registry
from models.batch import (
    BatchActivationOptions,
    BatchJob,
    BatchJobStatus,
    DomainActivationResult,
    DomainResultStatus,
)
from models.certificate import utcnow
from models.domain import Domain

logger = logging.getLogger(__name__)


class BatchJobRunningError(CertificateError):
    """A running batch job cannot be deleted."""

    error_code = "batch_job_running"


class BatchCoordinator:
    """Runs and tracks batch activation jobs."""

    def __init__(
        self,
        cert_manager: CertManager | None = None,
        registry: DomainRegistry | None = None,
        chunk_pause_seconds: float | None = None,
        retention_hours: int | None = None,
    ):
        self.cert_manager = cert_manager or get_cert_manager()
        self.registry = registry or get_domain_registry()
        self.chunk_pause_seconds = (
            settings.batch_chunk_pause_seconds if chunk_pause_seconds is None else chunk_pause_seconds
        )
        self.retention_hours = settings.batch_job_retention_hours if retention_hours is None else retention_hours
        self._jobs: dict[str, BatchJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @staticmethod
    def _apply_error(result: DomainActivationResult, error: BaseException) -> None:
        result.status = DomainResultStatus.FAILED
        result.error = error_message_for(error)
        result.error_code = error_code_for(error)

    @staticmethod
    def _apply_outcome(result: DomainActivationResult, outcome: IssuanceOutcome) -> None:
        result.domain_name = outcome.domain_name
        result.provider = outcome.provider
        result.skipped = outcome.skipped
        result.certificate_id = outcome.certificate.id if outcome.certificate else None
        result.error = outcome.error
        result.error_code = outcome.error_code
        result.status = DomainResultStatus.SUCCESS if outcome.succeeded else DomainResultStatus.FAILED

    async def _resolve_domains(self, job: BatchJob) -> list[tuple[int, Domain]]:
        """Resolve ids; unknown and unverified domains fail without taking a slot."""
        eligible = []
        for index, domain_id in enumerate(job.domain_ids):
            result = job.results[index]
            try:
                domain = await self.registry.resolve(domain_id)
            except (DomainNotFoundError, DomainNotVerifiedError) as e:
                result.domain_name = e.domain
                self._apply_error(result, e)
                job.progress += 1
                logger.info(f"Batch {job.id}: rejected {domain_id} ({e.error_code})")
                continue
            result.domain_name = self.registry.certificate_name(domain)
            eligible.append((index, domain))
        return eligible

    async def activate(
        self,
        domain_ids: list[str],
        options: BatchActivationOptions | None = None,
        job: BatchJob | None = None,
    ) -> BatchJob:
        """
        Activate certificates for ``domain_ids`` and return the finished job.

        Per-domain failures are recorded in the job's results; the job
        itself fails only if the coordinator cannot proceed.
        """
        options = options or BatchActivationOptions()
        if job is None:
            job = self._new_job(domain_ids, options)

        job.status = BatchJobStatus.RUNNING
        job.started_at = utcnow()
        logger.info(
            f"Batch {job.id}: activating {job.total} domains "
            f"(max_concurrent={options.max_concurrent}, timeout_ms={options.timeout_ms}, "
            f"fallback={options.fallback_to_self_signed})"
        )

        try:
            eligible = await self._resolve_domains(job)
            chunk_size = options.max_concurrent

            for start in range(0, len(eligible), chunk_size):
                chunk = eligible[start:start + chunk_size]
                outcomes = await asyncio.gather(
                    *(
                        self.cert_manager.activate_domain(
                            domain,
                            timeout_ms=options.timeout_ms,
                            fallback_to_self_signed=options.fallback_to_self_signed,
                        )
                        for _, domain in chunk
                    ),
                    return_exceptions=True,
                )

                for (index, domain), outcome in zip(chunk, outcomes):
                    result = job.results[index]
                    if isinstance(outcome, BaseException):
                        logger.error(
                            f"Batch {job.id}: activation of {domain.full_name} raised {type(outcome).__name__}",
                            exc_info=outcome,
                        )
                        self._apply_error(result, outcome)
                    else:
                        self._apply_outcome(result, outcome)
                        logger.info(
                            f"Batch {job.id}: {result.domain_name} -> {result.status.value}"
                            f"{f' ({result.provider.value})' if result.provider else ''}"
                        )

                job.progress += len(chunk)
                logger.info(f"Batch {job.id}: progress {job.progress}/{job.total}")

                if start + chunk_size < len(eligible) and self.chunk_pause_seconds > 0:
                    await asyncio.sleep(self.chunk_pause_seconds)

            job.status = BatchJobStatus.COMPLETED
        except Exception as e:
            logger.exception(f"Batch {job.id} failed: {e}")
            job.status = BatchJobStatus.FAILED
            job.error = error_message_for(e)
        finally:
            job.completed_at = utcnow()
            job.duration_ms = int((job.completed_at - job.started_at).total_seconds() * 1000)

        logger.info(
            f"Batch {job.id} {job.status.value}: {job.success_count} succeeded, "
            f"{job.failure_count} failed in {job.duration_ms} ms"
        )
        return job

    def _new_job(self, domain_ids: list[str], options: BatchActivationOptions) -> BatchJob:
        job = BatchJob(
            domain_ids=list(domain_ids),
            options=options,
            total=len(domain_ids),
            results=[DomainActivationResult(domain_id=domain_id) for domain_id in domain_ids],
        )
        self._jobs[job.id] = job
        return job

    async def start_batch(
        self,
        domain_ids: list[str],
        options: BatchActivationOptions | None = None,
    ) -> BatchJob:
        """Create a job and run it in the background. Returns immediately."""
        self.purge_finished_jobs()
        options = options or BatchActivationOptions()
        job = self._new_job(domain_ids, options)

        task = asyncio.create_task(self.activate(domain_ids, options, job=job))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return job

    def get_job(self, job_id: str) -> BatchJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self, active_only: bool = True) -> list[BatchJob]:
        """Jobs newest first; by default only those still pending or running."""
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        if active_only:
            jobs = [j for j in jobs if not j.is_finished]
        return jobs

    def delete_job(self, job_id: str) -> bool:
        """
        Forget a job.

        Raises:
            BatchJobRunningError: If the job is still running
        """
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if job.status == BatchJobStatus.RUNNING:
            raise BatchJobRunningError(
                f"Batch job {job_id} is still running",
                suggestion="Wait for the job to finish before deleting it",
            )
        del self._jobs[job_id]
        return True

    def purge_finished_jobs(self) -> int:
        """Drop finished jobs older than the retention window."""
        cutoff = utcnow() - timedelta(hours=self.retention_hours)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_finished and job.completed_at and job.completed_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            logger.info(f"Purged {len(stale)} finished batch jobs")
        return len(stale)

    async def wait(self, job_id: str) -> BatchJob | None:
        """Wait for a background job to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self._jobs.get(job_id)


# Singleton instance
_batch_coordinator: BatchCoordinator | None = None


def get_batch_coordinator() -> BatchCoordinator:
    """Get the global batch coordinator instance."""
    global _batch_coordinator
    if _batch_coordinator is None:
        _batch_coordinator = BatchCoordinator()
    return _batch_coordinator
