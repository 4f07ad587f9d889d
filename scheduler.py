import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from monitoring import BudgetEvaluator, BudgetSweeps


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_budget_check(self, user_id: int, source: str = "manual") -> None:
        logger.info(f"budget_check_job: source={source} user_id={user_id}")
        try:
            with session_scope(self.session_factory) as session:
                BudgetEvaluator(session, self.settings).evaluate_user(user_id)
        except Exception:
            logger.exception(f"budget_check_job_failed: user_id={user_id}")

    def run_daily_budget_check(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=daily_budget_check source={source}")
        try:
            with session_scope(self.session_factory) as session:
                BudgetSweeps(session, self.settings).daily_budget_check()
        except Exception:
            logger.exception("daily_budget_check_job_failed")

    def run_monthly_reports(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=monthly_reports source={source}")
        try:
            with session_scope(self.session_factory) as session:
                BudgetSweeps(session, self.settings).monthly_reports()
        except Exception:
            logger.exception("monthly_reports_job_failed")

    def run_reset_token_cleanup(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=reset_token_cleanup source={source}")
        try:
            with session_scope(self.session_factory) as session:
                BudgetSweeps(session, self.settings).cleanup_reset_tokens()
        except Exception:
            logger.exception("reset_token_cleanup_job_failed")

    def run_notification_cleanup(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=notification_cleanup source={source}")
        try:
            with session_scope(self.session_factory) as session:
                BudgetSweeps(session, self.settings).cleanup_notifications()
        except Exception:
            logger.exception("notification_cleanup_job_failed")

    def enqueue_budget_check(self, user_id: int) -> None:
        """Run the evaluator for one user as soon as a worker is free."""
        self.scheduler.add_job(
            self.run_budget_check,
            args=[user_id, "expense_change"],
            misfire_grace_time=None,
        )

    def register_jobs(self) -> None:
        settings = self.settings

        self.scheduler.add_job(
            self.run_daily_budget_check,
            CronTrigger(hour=settings.daily_check_hour, minute=0),
            args=[f"daily_{settings.daily_check_hour:02d}:00"],
            id="budget_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger(day="last", hour=settings.monthly_report_hour, minute=0),
            args=[f"last_day_{settings.monthly_report_hour:02d}:00"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.run_reset_token_cleanup,
            CronTrigger(hour="*/6", minute=0),
            args=["every_6h"],
            id="reset_token_cleanup",
            replace_existing=True,
            misfire_grace_time=1800,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.run_notification_cleanup,
            CronTrigger(hour=2, minute=0),
            args=["daily_02:00"],
            id="notification_cleanup",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
        )

    def start(self) -> None:
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"Scheduler started: budget check daily at "
            f"{self.settings.daily_check_hour:02d}:00 {self.settings.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
