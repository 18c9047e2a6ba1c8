"""
Certificate renewal scheduler.

Runs the renewal sweep on a cron schedule using APScheduler, plus
housekeeping jobs for batch jobs and renewal logs. One process-wide
instance is shared through ``get_cert_scheduler()``.
"""

import asyncio
import logging
import time
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from core.acme_service import AuthorityError
from core.batch_coordinator import BatchCoordinator, get_batch_coordinator
from core.cert_errors import CertificateError, error_code_for, error_message_for
from core.cert_manager import CertManager, get_cert_manager
from core.renewal_log_store import RenewalLogStore, get_renewal_log_store
from models.certificate import Certificate, utcnow
from models.renewal import (
    RenewalItemStatus,
    RenewalLog,
    RenewalLogEntry,
    SchedulerStatus,
    SweepConfig,
    SweepConfigUpdate,
)

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "cert_renewal_sweep"


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs periodic jobs to:
    - Renew certificates that expire within the renewal window
    - Purge finished batch jobs and old renewal logs

    Sweeps never overlap: scheduled and manual runs share one lock.
    """

    def __init__(
        self,
        cert_manager: CertManager | None = None,
        log_store: RenewalLogStore | None = None,
        batch_coordinator: BatchCoordinator | None = None,
        item_pause_seconds: float | None = None,
    ):
        self.cert_manager = cert_manager or get_cert_manager()
        self.store = self.cert_manager.store
        self.log_store = log_store or get_renewal_log_store()
        self.batch_coordinator = batch_coordinator or get_batch_coordinator()
        self.item_pause_seconds = (
            settings.sweep_item_pause_seconds if item_pause_seconds is None else item_pause_seconds
        )
        self.config = SweepConfig(
            days_before_expiry=settings.renewal_days_before_expiry,
            max_renewals_per_run=settings.renewal_max_per_run,
            renewal_timeout_ms=settings.renewal_timeout_ms,
        )
        self.schedule = settings.renewal_cron
        self.timezone = settings.renewal_timezone

        self.scheduler: AsyncIOScheduler | None = None
        self._started = False
        self._sweep_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self._started

    @property
    def sweep_running(self) -> bool:
        return self._sweep_lock.locked()

    async def start(self) -> None:
        """Start the renewal scheduler. No-op when already running."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.timezone)

        self.scheduler.add_job(
            self._scheduled_sweep,
            CronTrigger.from_crontab(self.schedule, timezone=self.timezone),
            id=SWEEP_JOB_ID,
            name="Certificate Renewal Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self._purge_batch_jobs,
            IntervalTrigger(hours=1),
            id="batch_job_purge",
            name="Finished Batch Job Purge",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self._cleanup_logs,
            IntervalTrigger(days=1),
            id="renewal_log_cleanup",
            name="Renewal Log Retention",
            replace_existing=True,
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Certificate renewal scheduler started ({self.schedule} {self.timezone})")

    async def stop(self) -> None:
        """Stop the renewal scheduler. No-op when not running."""
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self._started = False
        logger.info("Certificate renewal scheduler stopped")

    async def _scheduled_sweep(self) -> None:
        logger.info("Scheduled renewal sweep starting")
        await self.sweep()

    async def _purge_batch_jobs(self) -> None:
        self.batch_coordinator.purge_finished_jobs()

    async def _cleanup_logs(self) -> None:
        try:
            await self.log_store.cleanup_old_logs(settings.renewal_log_retention_days)
        except Exception as e:
            logger.exception(f"Error cleaning up renewal logs: {e}")

    async def run_now(self) -> RenewalLog:
        """Run a sweep immediately, waiting for any sweep in progress first."""
        logger.info("Manual renewal sweep triggered")
        return await self.sweep()

    async def sweep(self) -> RenewalLog:
        """
        Renew certificates that expire within the renewal window.

        Certificates are processed one at a time, soonest-expiring first.
        A failure is recorded on the certificate and the sweep moves on.
        A log is written for every run. Never raises.
        """
        async with self._sweep_lock:
            return await self._run_sweep()

    async def _run_sweep(self) -> RenewalLog:
        started = time.monotonic()
        log = RenewalLog()
        config = self.config

        candidates: list[Certificate] = []
        try:
            await self.store.refresh_statuses()
            threshold = utcnow() + timedelta(days=config.days_before_expiry)
            candidates = await self.store.find_expiring_before(
                threshold,
                auto_renew_only=True,
                limit=config.max_renewals_per_run,
            )
        except Exception as e:
            logger.exception(f"Renewal sweep could not select certificates: {e}")
            log.error = error_message_for(e)

        if not candidates and not log.error:
            logger.info(f"No certificates expire within {config.days_before_expiry} days")

        for position, cert in enumerate(candidates):
            entry = await self._renew_one(cert, config.renewal_timeout_ms)
            log.details.append(entry)
            log.certificates_processed += 1
            if entry.status == RenewalItemStatus.SUCCESS:
                log.successful_renewals += 1
            else:
                log.failed_renewals += 1

            if position < len(candidates) - 1 and self.item_pause_seconds > 0:
                await asyncio.sleep(self.item_pause_seconds)

        log.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Renewal sweep complete: {log.successful_renewals} renewed, "
            f"{log.failed_renewals} failed in {log.duration_ms} ms"
        )

        try:
            await self.log_store.record(log)
        except Exception as e:
            logger.exception(f"Failed to write renewal log {log.id}: {e}")

        return log

    async def _renew_one(self, cert: Certificate, timeout_ms: int) -> RenewalLogEntry:
        """Renew one certificate; failures leave its material untouched."""
        name = cert.domain_name
        logger.info(f"Auto-renewing certificate for {name} ({cert.days_until_expiry} days left)")

        async with self.store.lock_for(name):
            try:
                material = await self.cert_manager.issue_from_authority(name, timeout_ms)
                renewed = await self.store.upsert_active(name, material, domain_id=cert.domain_id)
                await self.store.record_renewal_attempt(renewed.id, success=True)
            except (AuthorityError, CertificateError) as e:
                message = error_message_for(e)
                logger.error(f"Failed to renew {name}: {message}")
                await self._record_failed_attempt(cert, message)
                return RenewalLogEntry(
                    certificate_id=cert.id,
                    domain_name=name,
                    status=RenewalItemStatus.FAILED,
                    expires_at=cert.expires_at,
                    error=message,
                    error_code=error_code_for(e),
                )
            except Exception as e:
                logger.exception(f"Unexpected error renewing {name}: {e}")
                await self._record_failed_attempt(cert, str(e) or type(e).__name__)
                return RenewalLogEntry(
                    certificate_id=cert.id,
                    domain_name=name,
                    status=RenewalItemStatus.FAILED,
                    expires_at=cert.expires_at,
                    error=str(e) or type(e).__name__,
                    error_code=error_code_for(e),
                )

        logger.info(f"Renewed certificate for {name} (expires {renewed.expires_at})")
        return RenewalLogEntry(
            certificate_id=cert.id,
            domain_name=name,
            status=RenewalItemStatus.SUCCESS,
            expires_at=renewed.expires_at,
        )

    async def _record_failed_attempt(self, cert: Certificate, message: str) -> None:
        try:
            await self.store.record_renewal_attempt(cert.id, success=False, error=message)
        except CertificateError as e:
            logger.error(f"Could not record renewal attempt for {cert.domain_name}: {e.message}")

    def next_run_time(self):
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None

    def status(self) -> SchedulerStatus:
        """Current scheduler state and sweep configuration."""
        return SchedulerStatus(
            active=self._started,
            running=self.sweep_running,
            schedule=self.schedule,
            timezone=self.timezone,
            next_run=self.next_run_time(),
            config=self.config,
        )

    async def update_config(self, update: SweepConfigUpdate) -> SchedulerStatus:
        """
        Apply new sweep settings, restarting the scheduler if it was active.

        Raises:
            ValueError: If the schedule is not a valid crontab expression
        """
        if update.schedule is not None:
            # Validates the expression; raises ValueError when malformed
            CronTrigger.from_crontab(update.schedule, timezone=self.timezone)

        values = self.config.model_dump()
        values.update(update.model_dump(exclude_none=True, exclude={"schedule"}))
        self.config = SweepConfig(**values)
        if update.schedule is not None:
            self.schedule = update.schedule

        logger.info(f"Renewal sweep configuration updated: {self.config.model_dump()} schedule={self.schedule}")

        if self._started:
            await self.stop()
            await self.start()

        return self.status()


# Singleton instance
_cert_scheduler: CertScheduler | None = None


def get_cert_scheduler() -> CertScheduler:
    """Get the global certificate scheduler instance."""
    global _cert_scheduler
    if _cert_scheduler is None:
        _cert_scheduler = CertScheduler()
    return _cert_scheduler
