import math
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import monitoring
from database import Base
from models import (
    Budget,
    BudgetStatus,
    Expense,
    Notification,
    NotificationPriority,
    NotificationType,
    UserSettings,
)
from monitoring import (
    AlertDeduplicator,
    BudgetEvaluator,
    budget_percentage,
    category_spent,
    classify_percentage,
)
from periods import reporting_zone, to_storage
from schemas import BudgetIn, CategoryIn, ExpenseIn
from services import BudgetService, CategoryService, ExpenseService


def _now(hour: int = 10) -> datetime:
    return datetime(2024, 5, 20, hour, 0, tzinfo=reporting_zone())


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _budget_with_spend(
    session: Session, limit_cents: int, amounts: list[int], name: str = "Food"
) -> Budget:
    category = CategoryService(session).create(CategoryIn(name=name))
    budget = BudgetService(session).upsert(
        BudgetIn(category_id=category.id, month="2024-05", limit_cents=limit_cents)
    )
    expenses = ExpenseService(session)
    for day, amount in enumerate(amounts, start=1):
        expenses.create(
            ExpenseIn(
                amount_cents=amount, category_id=category.id, date=date(2024, 5, day)
            )
        )
    return budget


def _alerts(session: Session) -> list[Notification]:
    return session.scalars(
        select(Notification).where(Notification.type == NotificationType.budget_alert)
    ).all()


@pytest.mark.parametrize(
    "percentage, expected",
    [
        (0.0, BudgetStatus.good),
        (74.9, BudgetStatus.good),
        (75.0, BudgetStatus.caution),
        (89.9, BudgetStatus.caution),
        (90.0, BudgetStatus.warning),
        (99.9, BudgetStatus.warning),
        (100.0, BudgetStatus.exceeded),
        (250.0, BudgetStatus.exceeded),
    ],
)
def test_classify_percentage_boundaries(percentage, expected):
    assert classify_percentage(percentage) == expected


def test_classify_percentage_is_monotonic():
    order = list(BudgetStatus)
    previous = 0
    for tenth in range(0, 1500):
        rank = order.index(classify_percentage(tenth / 10))
        assert rank >= previous
        previous = rank


def test_budget_percentage_guards_zero_limit():
    assert budget_percentage(96_000, 100_000) == 96.0
    assert budget_percentage(5_000, 0) == 0.0


def test_category_spent_sums_only_matching_category_and_range():
    with _session() as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food"))
        other = categories.create(CategoryIn(name="Transport"))
        expenses = ExpenseService(session)
        for amount in (10, 20, 30):
            expenses.create(
                ExpenseIn(amount_cents=amount, category_id=food.id, date=date(2024, 5, 3))
            )
        expenses.create(
            ExpenseIn(amount_cents=5, category_id=other.id, date=date(2024, 5, 3))
        )
        expenses.create(
            ExpenseIn(amount_cents=99, category_id=food.id, date=date(2024, 4, 30))
        )
        session.add(
            Expense(user_id=2, date=date(2024, 5, 3), amount_cents=70, category_id=food.id)
        )
        session.commit()

        start, end = date(2024, 5, 1), date(2024, 5, 31)
        assert category_spent(session, 1, food.id, start, end) == 60
        assert category_spent(session, 1, other.id, start, end) == 5
        assert category_spent(session, 3, food.id, start, end) == 0


def test_evaluation_end_to_end_warning_alert():
    with _session() as session:
        budget = _budget_with_spend(session, 100_000, [50_000, 46_000])

        results = BudgetEvaluator(session).evaluate_user(1, _now())

        assert len(results) == 1
        assert results[0].status == BudgetStatus.warning
        assert results[0].notified

        session.refresh(budget)
        assert budget.spent_cents == 96_000
        assert budget.percentage == 96.0
        assert budget.status == BudgetStatus.warning
        assert budget.last_checked_at == to_storage(_now())

        alerts = _alerts(session)
        assert len(alerts) == 1
        assert alerts[0].priority == NotificationPriority.medium
        assert "96.0%" in alerts[0].message
        assert "R$ 960.00 de R$ 1000.00" in alerts[0].message
        assert alerts[0].title == "🚨 Alerta: Orçamento de Food"
        assert alerts[0].related_id == str(budget.id)


def test_exceeded_alert_reports_overage_with_high_priority():
    with _session() as session:
        _budget_with_spend(session, 10_000, [12_500])

        BudgetEvaluator(session).evaluate_user(1, _now())

        alert = _alerts(session)[0]
        assert alert.priority == NotificationPriority.high
        assert "Excedido" in alert.title
        assert "em 25.0%" in alert.message


def test_caution_alert_is_low_priority():
    with _session() as session:
        _budget_with_spend(session, 10_000, [8_000])

        BudgetEvaluator(session).evaluate_user(1, _now())

        alert = _alerts(session)[0]
        assert alert.priority == NotificationPriority.low
        assert "Atenção" in alert.title


def test_good_status_updates_cache_without_alert():
    with _session() as session:
        budget = _budget_with_spend(session, 10_000, [1_000])

        BudgetEvaluator(session).evaluate_user(1, _now())

        session.refresh(budget)
        assert budget.status == BudgetStatus.good
        assert _alerts(session) == []


def test_repeated_evaluation_is_idempotent():
    with _session() as session:
        budget = _budget_with_spend(session, 100_000, [96_000])
        evaluator = BudgetEvaluator(session)

        first = evaluator.evaluate_user(1, _now())
        session.refresh(budget)
        snapshot = (
            budget.spent_cents,
            budget.percentage,
            budget.status,
            budget.last_checked_at,
        )

        second = evaluator.evaluate_user(1, _now())
        session.refresh(budget)

        assert snapshot == (
            budget.spent_cents,
            budget.percentage,
            budget.status,
            budget.last_checked_at,
        )
        assert first[0].notified and not second[0].notified
        assert len(_alerts(session)) == 1


@pytest.mark.parametrize("hours_ago, suppressed", [(23, True), (25, False)])
def test_dedupe_window_boundary(hours_ago, suppressed):
    with _session() as session:
        budget = _budget_with_spend(session, 10_000, [9_500])
        session.add(
            Notification(
                user_id=1,
                type=NotificationType.budget_alert,
                title="earlier",
                message="earlier",
                priority=NotificationPriority.medium,
                related_id=str(budget.id),
                created_at=to_storage(_now() - timedelta(hours=hours_ago)),
            )
        )
        session.commit()

        results = BudgetEvaluator(session).evaluate_user(1, _now())

        assert results[0].notified is not suppressed
        assert len(_alerts(session)) == (1 if suppressed else 2)


def test_alerts_for_other_budgets_do_not_suppress():
    with _session() as session:
        budget = _budget_with_spend(session, 10_000, [9_500])
        session.add(
            Notification(
                user_id=1,
                type=NotificationType.budget_alert,
                title="other",
                message="other",
                priority=NotificationPriority.medium,
                related_id=str(budget.id + 100),
                created_at=to_storage(_now() - timedelta(hours=1)),
            )
        )
        session.commit()

        assert BudgetEvaluator(session).evaluate_user(1, _now())[0].notified


def test_outside_business_hours_updates_cache_without_alert():
    with _session() as session:
        budget = _budget_with_spend(session, 10_000, [15_000])

        results = BudgetEvaluator(session).evaluate_user(1, _now(hour=19))

        session.refresh(budget)
        assert budget.status == BudgetStatus.exceeded
        assert results[0].notified is False
        assert _alerts(session) == []


def test_disabled_budget_alerts_skip_notification():
    with _session() as session:
        budget = _budget_with_spend(session, 10_000, [15_000])
        session.add(UserSettings(user_id=1, budget_alerts=False))
        session.commit()

        BudgetEvaluator(session).evaluate_user(1, _now())

        session.refresh(budget)
        assert budget.status == BudgetStatus.exceeded
        assert _alerts(session) == []


def test_zero_limit_budget_does_not_poison_cache():
    with _session() as session:
        category = CategoryService(session).create(CategoryIn(name="Food"))
        session.add(
            Budget(user_id=1, category_id=category.id, month="2024-05", limit_cents=0)
        )
        session.add(
            Expense(
                user_id=1, category_id=category.id, date=date(2024, 5, 2), amount_cents=500
            )
        )
        session.commit()

        results = BudgetEvaluator(session).evaluate_user(1, _now())

        assert results[0].spent_cents == 500
        assert math.isfinite(results[0].percentage)
        budget = session.scalars(select(Budget)).one()
        assert budget.percentage == 0.0
        assert budget.status == BudgetStatus.good


def test_failing_budget_does_not_stop_the_others(monkeypatch):
    with _session() as session:
        broken = _budget_with_spend(session, 10_000, [9_000], name="Broken")
        healthy = _budget_with_spend(session, 10_000, [9_000], name="Healthy")
        real_spent = monitoring.category_spent
        broken_category_id = broken.category_id

        def flaky_spent(session, user_id, category_id, start, end):
            if category_id == broken_category_id:
                raise RuntimeError("aggregation failed")
            return real_spent(session, user_id, category_id, start, end)

        monkeypatch.setattr(monitoring, "category_spent", flaky_spent)

        results = BudgetEvaluator(session).evaluate_user(1, _now())

        assert [r.budget_id for r in results] == [healthy.id]
        session.refresh(broken)
        assert broken.status is None


def test_only_current_month_budgets_are_evaluated():
    with _session() as session:
        category = CategoryService(session).create(CategoryIn(name="Food"))
        budgets = BudgetService(session)
        may = budgets.upsert(
            BudgetIn(category_id=category.id, month="2024-05", limit_cents=1_000)
        )
        budgets.upsert(
            BudgetIn(category_id=category.id, month="2024-04", limit_cents=1_000)
        )

        results = BudgetEvaluator(session).evaluate_user(1, _now())

        assert [r.budget_id for r in results] == [may.id]


def test_same_day_duplicate_insert_is_rejected_by_constraint(monkeypatch):
    with _session() as session:
        dedupe = AlertDeduplicator(session)
        first = dedupe.emit(
            1,
            42,
            title="t",
            message="m",
            priority=NotificationPriority.low,
            now=_now(),
        )
        assert first is not None

        # Simulate a concurrent writer that missed the first row.
        monkeypatch.setattr(dedupe, "recent_alert_exists", lambda *args: False)
        second = dedupe.emit(
            1,
            42,
            title="t",
            message="m",
            priority=NotificationPriority.low,
            now=_now(hour=11),
        )

        assert second is None
        assert len(_alerts(session)) == 1


def test_recreated_budget_does_not_inherit_deleted_budget_alerts():
    with _session() as session:
        food = _budget_with_spend(session, 10_000, [15_000], name="Food")
        BudgetEvaluator(session).evaluate_user(1, _now())
        old_id = food.id
        BudgetService(session).delete(old_id)

        car = _budget_with_spend(session, 10_000, [15_000], name="Car")
        results = BudgetEvaluator(session).evaluate_user(1, _now(hour=11))

        assert car.id != old_id
        assert [r.budget_id for r in results] == [car.id]
        assert results[0].notified
        titles = sorted(a.title for a in _alerts(session))
        assert titles == [
            "🔴 Orçamento Excedido: Car",
            "🔴 Orçamento Excedido: Food",
        ]


def test_check_user_counts_failed_budgets(monkeypatch):
    with _session() as session:
        broken = _budget_with_spend(session, 10_000, [9_000], name="Broken")
        _budget_with_spend(session, 10_000, [9_000], name="Healthy")
        real_spent = monitoring.category_spent
        broken_category_id = broken.category_id

        def flaky_spent(session, user_id, category_id, start, end):
            if category_id == broken_category_id:
                raise RuntimeError("aggregation failed")
            return real_spent(session, user_id, category_id, start, end)

        monkeypatch.setattr(monitoring, "category_spent", flaky_spent)

        check = BudgetEvaluator(session).check_user(1, _now())

        assert check.failures == 1
        assert len(check.evaluations) == 1
