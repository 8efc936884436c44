import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import session_scope
from periods import local_today
from services import refresh_budget_spent


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, settings: Settings, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"budget_refresh: source={source}")
        with session_scope(self.session_factory) as session:
            changed = refresh_budget_spent(session, today=local_today(self.timezone))
        logger.info(f"budget_refresh: source={source} budgets_changed={changed}")
        return changed

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="budget_refresh_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 00:05 budget refresh")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
