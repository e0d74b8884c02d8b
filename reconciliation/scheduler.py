import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import SyncInProgressError
from models.base import SyncMode
from reconciliation.runner import SyncRunner

logger = logging.getLogger(__name__)

class SyncScheduler:
    def __init__(self, runner: SyncRunner, interval_minutes: int = None):
        self.scheduler = AsyncIOScheduler()
        self.runner = runner
        self.interval_minutes = interval_minutes or settings.SYNC_INTERVAL_MINUTES

    async def run_sync_job(self):
        """Job to run an incremental sync"""
        logger.info("Scheduler: Starting sync job")
        try:
            result = await self.runner.run(mode=SyncMode.INCREMENTAL)
            logger.info(
                f"Scheduler: sync job finished (completed={result.completed}, "
                f"errors={result.errors})"
            )
        except SyncInProgressError:
            logger.info("Scheduler: sync already running, skipping this tick")
        except Exception as e:
            # Recorded in the sync log by the runner; the next tick retries
            logger.error(f"Scheduler: sync job failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="sync_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")
