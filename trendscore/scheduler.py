import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timezone
from fastapi.concurrency import run_in_threadpool
from typing import Optional

from trendscore.config import Settings, settings
from trendscore.models import BatchReport, MatchPassReport
from trendscore.services.discord_notifier import DiscordNotifier
from trendscore.services.merge_engine import MergeEngine
from trendscore.services.recalculation import RecalculationJob

logger = logging.getLogger(__name__)


class ScoreUpdateScheduler:
    """Scheduler for the daily duplicate-matching and score recalculation job"""

    def __init__(
        self,
        recalculation: RecalculationJob,
        merge_engine: MergeEngine,
        notifier: Optional[DiscordNotifier] = None,
        config: Settings = settings
    ):
        self.scheduler = AsyncIOScheduler()
        self.recalculation = recalculation
        self.merge_engine = merge_engine
        self.notifier = notifier or DiscordNotifier()
        self.config = config
        self.last_report: Optional[BatchReport] = None

    async def run_daily_update(self) -> Optional[BatchReport]:
        """Main daily job: match duplicates, then recalculate every product"""
        start_time = datetime.now(timezone.utc)
        logger.info("=" * 60)
        logger.info(f"Starting daily score update at {start_time.isoformat()}")
        logger.info("=" * 60)

        try:
            # Store calls block; keep them off the event loop
            match_report: Optional[MatchPassReport] = None
            if self.config.match_pass_enabled:
                logger.info("Step 1: Matching duplicate products...")
                match_report = await run_in_threadpool(self.merge_engine.run_match_pass)
                for failure in match_report.failures:
                    if failure.requires_attention:
                        await self.notifier.send_merge_failure(failure)

            logger.info("Step 2: Recalculating scores...")
            report = await run_in_threadpool(self.recalculation.run)
            self.last_report = report

            logger.info("Step 3: Sending Discord notification...")
            await self.notifier.send_recalculation_summary(report, match_report)

            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info("=" * 60)
            logger.info(f"Daily score update completed in {duration:.1f} seconds")
            logger.info(f"Results: {report.updated} updated, {len(report.errors)} errors")
            logger.info("=" * 60)
            return report

        except Exception as e:
            logger.error(f"Fatal error in daily score update: {e}", exc_info=True)
            await self.notifier.send_error_notification(str(e))
            return None

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_daily_update,
            trigger=CronTrigger(
                hour=self.config.cron_hour,
                minute=self.config.cron_minute,
                timezone='UTC'
            ),
            id='daily_score_update',
            name='Daily Score Update Job',
            replace_existing=True
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started. Daily job scheduled for "
            f"{self.config.cron_hour:02d}:{self.config.cron_minute:02d} UTC"
        )

    def shutdown(self):
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Scheduler shut down")
