import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from analysis.migration import LegacyMigrator
from core.config import settings
from core.exceptions import AnalysisException

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    def __init__(self, migrator: LegacyMigrator, interval_minutes: Optional[int] = None):
        self.migrator = migrator
        self.interval_minutes = interval_minutes or settings.MIGRATION_SWEEP_MINUTES
        self.scheduler = AsyncIOScheduler()

    async def run_migration_sweep(self):
        """Job to migrate legacy analyses"""
        logger.info("Scheduler: Starting legacy migration sweep")
        try:
            counts = await self.migrator.migrate_all()
            logger.info(f"Scheduler: Migration sweep finished - {counts}")
        except AnalysisException as e:
            logger.error(f"Scheduler: Migration sweep failed - {e}", extra={"error_context": e.to_dict()})

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_migration_sweep,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="legacy_migration",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Maintenance scheduler stopped")
