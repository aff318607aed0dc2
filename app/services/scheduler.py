"""Background scheduler for periodic tasks."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.time_utils import UTC

if TYPE_CHECKING:
    from app.config import AppConfig
    from app.services.metadata_reconciliation import MetadataReconciliationJob

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_ID = "metadata_reconciliation"


class SchedulerService:
    """Manages background scheduled tasks like the metadata reconciliation sweep."""

    def __init__(
        self,
        cfg: AppConfig,
        job: MetadataReconciliationJob,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize scheduler service.

        Args:
            cfg: Application configuration
            job: Reconciliation job run on every tick
            log: Logger to write to; defaults to this module's logger
        """
        self.cfg = cfg
        self.job = job
        self._logger = log or logger
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    async def start(self) -> None:
        """Start the scheduler with configured jobs."""
        if self._started:
            self._logger.warning("scheduler_already_started")
            return

        self._scheduler = AsyncIOScheduler(timezone=UTC)

        reconciliation = self.cfg.reconciliation
        if reconciliation.enabled:
            self._scheduler.add_job(
                self._run_reconciliation,
                trigger=IntervalTrigger(minutes=reconciliation.interval_minutes),
                id=RECONCILIATION_JOB_ID,
                name="Metadata Reconciliation",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs
            )
            self._logger.info(
                "scheduler_reconciliation_job_added",
                extra={
                    "job_id": RECONCILIATION_JOB_ID,
                    "interval_minutes": reconciliation.interval_minutes,
                },
            )
        else:
            self._logger.info(
                "scheduler_reconciliation_job_skipped", extra={"enabled": False}
            )

        self._scheduler.start()
        self._started = True
        self._logger.info("scheduler_started")

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._started = False
            self._logger.info("scheduler_stopped")

    async def _run_reconciliation(self) -> None:
        """Execute one scheduled reconciliation sweep."""
        correlation_id = f"scheduled_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S')}"
        self._logger.info("scheduled_reconciliation_starting", extra={"cid": correlation_id})

        try:
            result = await self.job.run_once()
        except Exception as e:
            self._logger.exception(
                "scheduled_reconciliation_failed",
                extra={"cid": correlation_id, "error": str(e)},
            )
            return

        self._logger.info(
            "scheduled_reconciliation_complete",
            extra={
                "cid": correlation_id,
                "matched": result.matched,
                "rearmed": result.rearmed,
                "latency_ms": result.duration_ms,
            },
        )

    def get_next_run_time(self, job_id: str = RECONCILIATION_JOB_ID) -> datetime | None:
        """Get next scheduled run time for a job.

        Returns:
            Next run time or None if job doesn't exist or scheduler not started
        """
        if not self._scheduler or not self._started:
            return None
        job = self._scheduler.get_job(job_id)
        return job.next_run_time if job else None

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self._scheduler is not None
