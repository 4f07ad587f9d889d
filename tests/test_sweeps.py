from datetime import date, datetime, timedelta
from types import SimpleNamespace

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Budget,
    BudgetStatus,
    Category,
    Expense,
    Notification,
    NotificationPriority,
    NotificationType,
    PasswordResetToken,
    UserSettings,
)
import monitoring
from monitoring import BudgetEvaluator, BudgetSweeps
from periods import reporting_zone, to_storage


def _local(*args: int) -> datetime:
    return datetime(*args, tzinfo=reporting_zone())


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _seed_budget(
    session: Session,
    user_id: int,
    spent_cents: int,
    *,
    month: str = "2024-05",
    limit_cents: int = 10_000,
) -> Budget:
    category = Category(user_id=user_id, name=f"Cat {user_id}-{month}-{spent_cents}")
    session.add(category)
    session.flush()
    year, mon = (int(part) for part in month.split("-"))
    session.add(
        Expense(
            user_id=user_id,
            category_id=category.id,
            date=date(year, mon, 10),
            amount_cents=spent_cents,
        )
    )
    budget = Budget(
        user_id=user_id, category_id=category.id, month=month, limit_cents=limit_cents
    )
    session.add(budget)
    session.commit()
    return budget


def test_daily_sweep_evaluates_each_user_with_current_budgets():
    with _session() as session:
        a1 = _seed_budget(session, 1, 9_500)
        a2 = _seed_budget(session, 1, 2_000)
        b1 = _seed_budget(session, 2, 12_000)
        stale = _seed_budget(session, 3, 50_000, month="2024-04")

        result = BudgetSweeps(session).daily_budget_check(_local(2024, 5, 20, 9, 0))

        assert result.users == 2
        assert result.budgets == 3
        assert result.notified == 2
        assert result.failures == 0
        statuses = {
            b.id: b.status for b in session.scalars(select(Budget)).all()
        }
        assert statuses[a1.id] == BudgetStatus.warning
        assert statuses[a2.id] == BudgetStatus.good
        assert statuses[b1.id] == BudgetStatus.exceeded
        assert statuses[stale.id] is None


def test_daily_sweep_with_no_budgets_is_a_no_op():
    with _session() as session:
        result = BudgetSweeps(session).daily_budget_check(_local(2024, 5, 20, 9, 0))
        assert (result.users, result.budgets, result.notified) == (0, 0, 0)


def test_monthly_reports_only_on_last_day():
    with _session() as session:
        _seed_budget(session, 1, 100)

        sweeps = BudgetSweeps(session)
        assert sweeps.monthly_reports(_local(2024, 5, 30, 18, 0)) == 0
        assert session.scalars(select(Notification)).all() == []


def test_monthly_reports_for_users_with_expenses_this_month():
    with _session() as session:
        _seed_budget(session, 1, 100)
        _seed_budget(session, 1, 200)
        _seed_budget(session, 2, 300)
        _seed_budget(session, 3, 400, month="2024-04")
        _seed_budget(session, 4, 500)
        session.add(UserSettings(user_id=4, monthly_reports=False))
        session.commit()

        created = BudgetSweeps(session).monthly_reports(_local(2024, 5, 31, 18, 0))

        assert created == 2
        reports = session.scalars(
            select(Notification).order_by(Notification.user_id)
        ).all()
        assert [n.user_id for n in reports] == [1, 2]
        assert all(n.type == NotificationType.monthly_report for n in reports)
        assert reports[0].title == "📊 Relatório Mensal - maio de 2024"
        assert reports[0].related_id == "2024-05"
        assert reports[0].priority == NotificationPriority.medium


def test_monthly_reports_can_skip_last_day_check():
    with _session() as session:
        _seed_budget(session, 1, 100)
        created = BudgetSweeps(session).monthly_reports(
            _local(2024, 5, 15, 12, 0), require_last_day=False
        )
        assert created == 1


def test_cleanup_reset_tokens_deletes_only_expired():
    now = _local(2024, 5, 20, 12, 0)
    with _session() as session:
        session.add_all(
            [
                PasswordResetToken(
                    email="a@example.com",
                    token="expired",
                    expires_at=to_storage(now - timedelta(minutes=1)),
                ),
                PasswordResetToken(
                    email="b@example.com",
                    token="valid",
                    expires_at=to_storage(now + timedelta(minutes=30)),
                ),
            ]
        )
        session.commit()

        assert BudgetSweeps(session).cleanup_reset_tokens(now) == 1
        remaining = session.scalars(select(PasswordResetToken.token)).all()
        assert remaining == ["valid"]


def test_cleanup_notifications_respects_retention():
    now = _local(2024, 5, 20, 12, 0)
    with _session() as session:
        for token, age in (("old", 91), ("recent", 89)):
            session.add(
                Notification(
                    user_id=1,
                    type=NotificationType.custom,
                    title=token,
                    message=token,
                    priority=NotificationPriority.low,
                    created_at=to_storage(now - timedelta(days=age)),
                )
            )
        session.commit()

        assert BudgetSweeps(session).cleanup_notifications(now) == 1
        assert session.scalars(select(Notification.title)).all() == ["recent"]


def test_daily_sweep_counts_failures_per_budget(monkeypatch):
    with _session() as session:
        broken = _seed_budget(session, 1, 9_500)
        _seed_budget(session, 1, 2_000)
        _seed_budget(session, 2, 12_000)
        real_spent = monitoring.category_spent
        broken_category_id = broken.category_id

        def flaky_spent(session, user_id, category_id, start, end):
            if category_id == broken_category_id:
                raise RuntimeError("aggregation failed")
            return real_spent(session, user_id, category_id, start, end)

        monkeypatch.setattr(monitoring, "category_spent", flaky_spent)

        result = BudgetSweeps(session).daily_budget_check(_local(2024, 5, 20, 9, 0))

        assert (result.users, result.budgets, result.failures) == (2, 2, 1)


def test_daily_sweep_does_not_count_vanished_budgets_as_failures(monkeypatch):
    with _session() as session:
        _seed_budget(session, 1, 2_000)
        real_budgets_for = BudgetEvaluator.budgets_for

        def budgets_with_deleted_row(self, user_id, month):
            return real_budgets_for(self, user_id, month) + [SimpleNamespace(id=9_999)]

        monkeypatch.setattr(BudgetEvaluator, "budgets_for", budgets_with_deleted_row)

        result = BudgetSweeps(session).daily_budget_check(_local(2024, 5, 20, 9, 0))

        assert (result.budgets, result.failures) == (1, 0)
