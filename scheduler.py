import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from budgets import BudgetRolloverEngine
from config import Settings, get_settings
from database import session_scope
from notifications import NotificationScheduler
from recurrence import ExpenseGenerator, SessionFactory
from services import RecurringTemplateService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Background triggers for recurring generation and budget rollover.

    Failures are logged and left for the next trigger to retry.
    """

    def __init__(
        self,
        generator: ExpenseGenerator,
        rollover: BudgetRolloverEngine,
        *,
        session_factory: Optional[SessionFactory] = None,
        notifier: Optional[NotificationScheduler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.generator = generator
        self.rollover = rollover
        self.session_factory = session_factory
        self.notifier = notifier
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        try:
            count = self.generator.catch_up()
            logger.info(f"scheduler_run: source={source} expenses_generated={count}")
        except Exception:
            logger.exception(f"scheduler_run: source={source} generation failed")
        try:
            created = self.rollover.ensure_future_budgets()
            logger.info(f"scheduler_run: source={source} budgets_created={len(created)}")
        except Exception:
            logger.exception(f"scheduler_run: source={source} rollover failed")
        try:
            with session_scope(self.session_factory) as session:
                service = RecurringTemplateService(
                    session, self.settings, notifier=self.notifier
                )
                service.schedule_upcoming_reminders()
        except Exception:
            logger.exception(f"scheduler_run: source={source} reminders failed")

    def start(self) -> None:
        self.run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
