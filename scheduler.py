import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine, SweepResult


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.sweep_hour = settings.sweep_hour
        self.sweep_minute = settings.sweep_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_sweep(self, source: str = "manual") -> SweepResult:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            result = RecurringEngine(session).process_due()
        for error in result.errors:
            logger.error(f"scheduler_run: source={source} error={error}")
        logger.info(
            f"scheduler_run: source={source} processed={result.processed_count} "
            f"created={result.created_transactions}"
        )
        return result

    def start(self) -> None:
        self.run_sweep("startup")

        label = f"daily_{self.sweep_hour:02d}:{self.sweep_minute:02d}"
        trigger = CronTrigger(hour=self.sweep_hour, minute=self.sweep_minute)
        self.scheduler.add_job(
            self.run_sweep,
            trigger,
            args=[label],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self.run_sweep,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {label} and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
