import logging

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from models import Budget, BudgetStatus, Category, Expense
from periods import current_instant, month_key, reporting_today
from scheduler import SchedulerManager


def _fields(trigger: CronTrigger) -> dict[str, str]:
    return {field.name: str(field) for field in trigger.fields}


def test_register_jobs_uses_cron_triggers():
    manager = SchedulerManager()
    manager.register_jobs()

    jobs = {job.id: job for job in manager.scheduler.get_jobs()}
    assert set(jobs) == {
        "budget_daily",
        "monthly_reports",
        "reset_token_cleanup",
        "notification_cleanup",
    }

    daily = _fields(jobs["budget_daily"].trigger)
    assert (daily["hour"], daily["minute"]) == ("9", "0")

    monthly = _fields(jobs["monthly_reports"].trigger)
    assert (monthly["day"], monthly["hour"]) == ("last", "18")

    assert _fields(jobs["reset_token_cleanup"].trigger)["hour"] == "*/6"
    assert _fields(jobs["notification_cleanup"].trigger)["hour"] == "2"
    assert all(job.coalesce for job in jobs.values())


def test_enqueue_budget_check_adds_one_shot_job():
    manager = SchedulerManager()
    manager.enqueue_budget_check(7)

    (job,) = manager.scheduler.get_jobs()
    assert job.func == manager.run_budget_check
    assert tuple(job.args) == (7, "expense_change")


def test_run_budget_check_updates_cached_status(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)

    with Session(engine) as session:
        category = Category(user_id=1, name="Mercado")
        session.add(category)
        session.flush()
        session.add_all(
            [
                Budget(
                    user_id=1,
                    category_id=category.id,
                    month=month_key(current_instant()),
                    limit_cents=1_000,
                ),
                Expense(
                    user_id=1,
                    category_id=category.id,
                    date=reporting_today(),
                    amount_cents=800,
                ),
            ]
        )
        session.commit()

    SchedulerManager(session_factory=factory).run_budget_check(1, "test")

    with Session(engine) as session:
        budget = session.scalars(select(Budget)).one()
        assert budget.spent_cents == 800
        assert budget.status == BudgetStatus.caution
        assert budget.last_checked_at is not None


def test_job_failures_are_logged_not_raised(caplog):
    def broken_factory():
        raise RuntimeError("database unavailable")

    manager = SchedulerManager(session_factory=broken_factory)
    with caplog.at_level(logging.ERROR):
        manager.run_budget_check(1, "test")
        manager.run_daily_budget_check("test")
        manager.run_monthly_reports("test")

    messages = [record.getMessage() for record in caplog.records]
    assert "budget_check_job_failed: user_id=1" in messages
    assert "daily_budget_check_job_failed" in messages
    assert "monthly_reports_job_failed" in messages
