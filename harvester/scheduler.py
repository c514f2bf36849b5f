"""
Cron timers for the harvester: periodic ingestion of every monitored group
and daily retention cleanup, both on one APScheduler AsyncIOScheduler.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from harvester.config import Settings
from harvester.orchestrator import ScrapeOrchestrator

logger = logging.getLogger(__name__)

INGESTION_JOB_ID = "scrape_messages"
CLEANUP_JOB_ID = "cleanup_messages"


class HarvestScheduler:
    """
    Two cron timers sharing one timezone:

    - ingestion: scrapes every monitored group, one tick at a time
    - cleanup: deletes messages past the retention window, disabled when
      retention is unbounded

    A tick that is still running when the next one fires is skipped
    (max_instances=1, coalesce=True). Tick failures are logged, the timers
    keep firing. Starting and stopping are idempotent.
    """

    def __init__(
        self,
        orchestrator: ScrapeOrchestrator,
        *,
        ingestion_schedule: str = "*/5 * * * *",
        cleanup_schedule: str = "0 2 * * *",
        timezone: str = "UTC",
        retention_days: int = 30,
    ):
        self.orchestrator = orchestrator
        self.ingestion_schedule = ingestion_schedule
        self.cleanup_schedule = cleanup_schedule
        self.timezone = timezone
        self.retention_days = retention_days
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def from_settings(cls, orchestrator: ScrapeOrchestrator, settings: Settings) -> "HarvestScheduler":
        return cls(
            orchestrator,
            ingestion_schedule=settings.CRON_SCHEDULE,
            cleanup_schedule=settings.CLEANUP_SCHEDULE,
            timezone=settings.TIMEZONE,
            retention_days=settings.RETENTION_DAYS,
        )

    @property
    def cleanup_enabled(self) -> bool:
        return self.retention_days > 0

    def _ensure_scheduler(self) -> AsyncIOScheduler:
        """Create and start the underlying scheduler on the running event loop."""
        loop = asyncio.get_running_loop()
        if self.scheduler is not None and self._loop is not loop:
            logger.info("Restarting scheduler on new event loop")
            self._shutdown_scheduler()
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(event_loop=loop, timezone=self.timezone)
            self._loop = loop
        if not self.scheduler.running:
            self.scheduler.start()
        return self.scheduler

    def _shutdown_scheduler(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self._loop = None

    # =========================================================================
    # Ingestion timer
    # =========================================================================

    def start_message_scraper(self) -> None:
        """Arm the ingestion timer. Must be called from a running event loop."""
        scheduler = self._ensure_scheduler()
        if scheduler.get_job(INGESTION_JOB_ID) is not None:
            logger.debug("Message scraper already armed")
            return
        logger.info(f"Setting up message scraper cron job: {self.ingestion_schedule}")
        scheduler.add_job(
            self._run_ingestion_tick,
            trigger=CronTrigger.from_crontab(self.ingestion_schedule, timezone=self.timezone),
            id=INGESTION_JOB_ID,
            name="Scrape monitored groups",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Message scraper cron job started")

    def stop_message_scraper(self) -> None:
        self._remove_job(INGESTION_JOB_ID)

    async def _run_ingestion_tick(self) -> None:
        logger.info("Cron job triggered: Starting message scrape")
        try:
            results = await self.orchestrator.scrape_all_groups()
        except Exception:
            logger.exception("Message scrape tick failed")
            return

        summary = ", ".join(
            f"{r.group_name}: {r.messages_processed} messages" if r.success
            else f"{r.group_id}: FAILED - {r.error}"
            for r in results
        )
        logger.info(f"Scrape completed: {summary or 'no monitored groups'}")

    # =========================================================================
    # Retention timer
    # =========================================================================

    def start_cleanup_job(self) -> None:
        """Arm the retention timer, unless retention is unbounded."""
        if not self.cleanup_enabled:
            logger.info("Message retention is set to forever, skipping cleanup job")
            return
        scheduler = self._ensure_scheduler()
        if scheduler.get_job(CLEANUP_JOB_ID) is not None:
            logger.debug("Cleanup job already armed")
            return
        logger.info(f"Setting up cleanup cron job: {self.cleanup_schedule}")
        scheduler.add_job(
            self._run_cleanup_tick,
            trigger=CronTrigger.from_crontab(self.cleanup_schedule, timezone=self.timezone),
            id=CLEANUP_JOB_ID,
            name="Delete expired messages",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Cleanup cron job started")

    def stop_cleanup_job(self) -> None:
        self._remove_job(CLEANUP_JOB_ID)

    async def _run_cleanup_tick(self) -> None:
        logger.info("Cron job triggered: Cleaning old messages")
        try:
            deleted = await self.orchestrator.cleanup_expired_messages()
        except Exception:
            logger.exception("Cleanup job failed")
            return
        logger.info(f"Cleanup completed: {deleted} messages deleted")

    # =========================================================================
    # Both timers
    # =========================================================================

    def start_all(self) -> None:
        self.start_message_scraper()
        self.start_cleanup_job()
        logger.info("All cron jobs started successfully")

    def stop_all(self) -> None:
        if self.scheduler is None:
            return
        self._shutdown_scheduler()
        logger.info("All cron jobs stopped")

    def _remove_job(self, job_id: str) -> None:
        if self.scheduler is None or self.scheduler.get_job(job_id) is None:
            return
        self.scheduler.remove_job(job_id)
        logger.info(f"Cron job stopped: {job_id}")

    def is_armed(self, job_id: str) -> bool:
        return (
            self.scheduler is not None
            and self.scheduler.running
            and self.scheduler.get_job(job_id) is not None
        )

    def get_status(self) -> dict:
        return {
            "ingestion": {
                "schedule": self.ingestion_schedule,
                "armed": self.is_armed(INGESTION_JOB_ID),
            },
            "cleanup": {
                "schedule": self.cleanup_schedule,
                "armed": self.is_armed(CLEANUP_JOB_ID),
                "enabled": self.cleanup_enabled,
            },
            "timezone": self.timezone,
        }
