"""Budget monitoring: spend aggregation, status ladder, alert emission and sweeps.

The evaluator is invoked from two places that may overlap in time: the
one-shot job enqueued after every expense mutation and the daily sweep. Each
pass recomputes the cached budget fields from the expense rows, so running it
twice gives the same result; the only non-idempotent step is notification
emission, which goes through ``AlertDeduplicator``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import Settings, get_settings
from models import (
    Budget,
    BudgetStatus,
    Expense,
    Notification,
    NotificationPriority,
    NotificationType,
    PasswordResetToken,
    UserSettings,
)
from periods import (
    current_instant,
    is_business_hour,
    is_last_day_of_month,
    month_key,
    month_period,
    parse_month_key,
    to_storage,
)


logger = logging.getLogger(__name__)


# Lower bound of each band, most severe first.
STATUS_LADDER: tuple[tuple[float, BudgetStatus], ...] = (
    (100.0, BudgetStatus.exceeded),
    (90.0, BudgetStatus.warning),
    (75.0, BudgetStatus.caution),
)

_ALERT_TEMPLATES: dict[BudgetStatus, dict[str, object]] = {
    BudgetStatus.caution: {
        "priority": NotificationPriority.low,
        "title": "⚠️ Atenção: Orçamento de {category}",
        "body": "Você já gastou {percentage:.1f}% do orçamento desta categoria.",
    },
    BudgetStatus.warning: {
        "priority": NotificationPriority.medium,
        "title": "🚨 Alerta: Orçamento de {category}",
        "body": (
            "Cuidado! Você já gastou {percentage:.1f}% do orçamento desta categoria."
        ),
    },
    BudgetStatus.exceeded: {
        "priority": NotificationPriority.high,
        "title": "🔴 Orçamento Excedido: {category}",
        "body": "Você excedeu o orçamento desta categoria em {overage:.1f}%.",
    },
}

_MONTH_NAMES_PT = (
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
)


def classify_percentage(percentage: float) -> BudgetStatus:
    for lower_bound, status in STATUS_LADDER:
        if percentage >= lower_bound:
            return status
    return BudgetStatus.good


def budget_percentage(spent_cents: int, limit_cents: int) -> float:
    """Spend as a percentage of the limit; 0.0 for a non-positive limit."""
    if limit_cents <= 0:
        return 0.0
    return spent_cents * 100 / limit_cents


def category_spent(
    session: Session, user_id: int, category_id: int, start: date, end: date
) -> int:
    stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
        Expense.user_id == user_id,
        Expense.category_id == category_id,
        Expense.date.between(start, end),
    )
    return int(session.execute(stmt).scalar_one() or 0)


def format_brl(cents: int) -> str:
    return f"R$ {cents / 100:.2f}"


def month_label(key: str) -> str:
    year, month = parse_month_key(key)
    return f"{_MONTH_NAMES_PT[month - 1]} de {year}"


def _user_settings(session: Session, user_id: int) -> Optional[UserSettings]:
    return session.scalar(select(UserSettings).where(UserSettings.user_id == user_id))


def budget_alerts_enabled(session: Session, user_id: int) -> bool:
    prefs = _user_settings(session, user_id)
    return prefs is None or prefs.budget_alerts


def monthly_reports_enabled(session: Session, user_id: int) -> bool:
    prefs = _user_settings(session, user_id)
    return prefs is None or prefs.monthly_reports


@dataclass(frozen=True)
class BudgetEvaluation:
    budget_id: int
    spent_cents: int
    percentage: float
    status: BudgetStatus
    notified: bool


@dataclass
class SweepResult:
    users: int = 0
    budgets: int = 0
    notified: int = 0
    failures: int = 0


@dataclass
class UserCheck:
    user_id: int
    evaluations: list[BudgetEvaluation] = field(default_factory=list)
    failures: int = 0


class AlertDeduplicator:
    """Inserts budget alerts unless one exists for the budget inside the window.

    The check is read-then-write. Alerts also carry the UTC day they were
    raised in, and the ``(user, type, related, day)`` unique constraint turns
    a same-day concurrent insert into an ``IntegrityError`` that is reported
    as a suppressed alert.
    """

    def __init__(self, session: Session, window_hours: Optional[int] = None) -> None:
        self.session = session
        hours = window_hours if window_hours is not None else 24
        self.window = timedelta(hours=hours)

    def recent_alert_exists(self, user_id: int, budget_id: int, now: datetime) -> bool:
        cutoff = to_storage(now) - self.window
        stmt = (
            select(Notification.id)
            .where(
                Notification.user_id == user_id,
                Notification.type == NotificationType.budget_alert,
                Notification.related_id == str(budget_id),
                Notification.created_at > cutoff,
            )
            .limit(1)
        )
        return self.session.scalar(stmt) is not None

    def emit(
        self,
        user_id: int,
        budget_id: int,
        *,
        title: str,
        message: str,
        priority: NotificationPriority,
        now: datetime,
    ) -> Optional[Notification]:
        if self.recent_alert_exists(user_id, budget_id, now):
            logger.info(
                f"budget_alert_suppressed: user_id={user_id} budget_id={budget_id}"
            )
            return None

        created_at = to_storage(now)
        dedupe_day = (
            created_at.date().isoformat() if self.window >= timedelta(days=1) else None
        )
        notification = Notification(
            user_id=user_id,
            type=NotificationType.budget_alert,
            title=title,
            message=message,
            priority=priority,
            related_id=str(budget_id),
            is_read=False,
            created_at=created_at,
            dedupe_day=dedupe_day,
        )
        self.session.add(notification)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info(
                f"budget_alert_race_suppressed: user_id={user_id} budget_id={budget_id}"
            )
            return None
        logger.info(
            f"budget_alert_created: user_id={user_id} budget_id={budget_id} "
            f"priority={priority.value}"
        )
        return notification


class BudgetEvaluator:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.alerts = AlertDeduplicator(session, self.settings.alert_dedupe_hours)

    def budgets_for(self, user_id: int, month: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == user_id, Budget.month == month)
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def check_user(self, user_id: int, now: Optional[datetime] = None) -> UserCheck:
        now = now or current_instant()
        month = month_key(now)
        budget_ids = [b.id for b in self.budgets_for(user_id, month)]
        alerts_enabled = budget_alerts_enabled(self.session, user_id)
        within_hours = is_business_hour(now, self.settings.business_hours)

        check = UserCheck(user_id=user_id)
        for budget_id in budget_ids:
            try:
                budget = self.session.get(Budget, budget_id)
                if budget is None:
                    # Deleted since the listing.
                    continue
                check.evaluations.append(
                    self._evaluate(budget, now, notify=alerts_enabled and within_hours)
                )
            except Exception:
                self.session.rollback()
                check.failures += 1
                logger.exception(
                    f"budget_check_failed: user_id={user_id} budget_id={budget_id}"
                )
        logger.info(
            f"budget_check: user_id={user_id} month={month} "
            f"budgets={len(budget_ids)} evaluated={len(check.evaluations)} "
            f"failures={check.failures}"
        )
        return check

    def evaluate_user(
        self, user_id: int, now: Optional[datetime] = None
    ) -> list[BudgetEvaluation]:
        return self.check_user(user_id, now).evaluations

    def _evaluate(self, budget: Budget, now: datetime, *, notify: bool) -> BudgetEvaluation:
        period = month_period(budget.month)
        spent = category_spent(
            self.session, budget.user_id, budget.category_id, period.start, period.end
        )
        percentage = budget_percentage(spent, budget.limit_cents)
        status = classify_percentage(percentage)

        budget.spent_cents = spent
        budget.percentage = percentage
        budget.status = status
        budget.last_checked_at = to_storage(now)
        self.session.commit()

        notified = False
        if status != BudgetStatus.good and notify:
            notified = self._raise_alert(budget, status, spent, percentage, now)
        return BudgetEvaluation(
            budget_id=budget.id,
            spent_cents=spent,
            percentage=percentage,
            status=status,
            notified=notified,
        )

    def _raise_alert(
        self,
        budget: Budget,
        status: BudgetStatus,
        spent_cents: int,
        percentage: float,
        now: datetime,
    ) -> bool:
        template = _ALERT_TEMPLATES[status]
        category = budget.category.name if budget.category else "Categoria"
        body = str(template["body"]).format(
            percentage=percentage, overage=percentage - 100
        )
        message = (
            f"{body} Gasto atual: {format_brl(spent_cents)} "
            f"de {format_brl(budget.limit_cents)}"
        )
        created = self.alerts.emit(
            budget.user_id,
            budget.id,
            title=str(template["title"]).format(category=category),
            message=message,
            priority=template["priority"],
            now=now,
        )
        return created is not None


class BudgetSweeps:
    """Fleet-wide jobs run by the scheduler."""

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def daily_budget_check(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or current_instant()
        month = month_key(now)
        rows = self.session.execute(
            select(Budget.user_id, Budget.id).where(Budget.month == month)
        ).all()
        by_user: dict[int, list[int]] = defaultdict(list)
        for row in rows:
            by_user[row.user_id].append(row.id)

        result = SweepResult(users=len(by_user))
        evaluator = BudgetEvaluator(self.session, self.settings)
        for user_id in by_user:
            try:
                check = evaluator.check_user(user_id, now)
            except Exception:
                self.session.rollback()
                result.failures += 1
                logger.exception(f"daily_budget_check_failed: user_id={user_id}")
                continue
            result.budgets += len(check.evaluations)
            result.notified += sum(1 for e in check.evaluations if e.notified)
            result.failures += check.failures
        logger.info(
            f"daily_budget_check: month={month} users={result.users} "
            f"budgets={result.budgets} notified={result.notified} "
            f"failures={result.failures}"
        )
        return result

    def users_with_expenses(self, month: str) -> list[int]:
        period = month_period(month)
        stmt = (
            select(Expense.user_id)
            .where(Expense.date.between(period.start, period.end))
            .distinct()
            .order_by(Expense.user_id)
        )
        return list(self.session.scalars(stmt).all())

    def monthly_reports(
        self, now: Optional[datetime] = None, *, require_last_day: bool = True
    ) -> int:
        now = now or current_instant()
        if require_last_day and not is_last_day_of_month(now):
            logger.info("monthly_reports: skipped, not the last day of the month")
            return 0

        month = month_key(now)
        label = month_label(month)
        created = 0
        for user_id in self.users_with_expenses(month):
            if not monthly_reports_enabled(self.session, user_id):
                continue
            try:
                self.session.add(
                    Notification(
                        user_id=user_id,
                        type=NotificationType.monthly_report,
                        title=f"📊 Relatório Mensal - {label}",
                        message=(
                            "Seu relatório mensal de despesas está disponível. "
                            "Acesse a seção de Relatórios para visualizar suas "
                            "estatísticas e análises detalhadas."
                        ),
                        priority=NotificationPriority.medium,
                        related_id=month,
                        is_read=False,
                        created_at=to_storage(now),
                    )
                )
                self.session.commit()
                created += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"monthly_report_failed: user_id={user_id}")
        logger.info(f"monthly_reports: month={month} created={created}")
        return created

    def cleanup_reset_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = to_storage(now or datetime.now(timezone.utc))
        result = self.session.execute(
            delete(PasswordResetToken).where(PasswordResetToken.expires_at < cutoff)
        )
        self.session.commit()
        count = result.rowcount or 0
        logger.info(f"reset_token_cleanup: deleted={count}")
        return count

    def cleanup_notifications(self, now: Optional[datetime] = None) -> int:
        horizon = timedelta(days=self.settings.notification_retention_days)
        cutoff = to_storage(now or datetime.now(timezone.utc)) - horizon
        result = self.session.execute(
            delete(Notification).where(Notification.created_at < cutoff)
        )
        self.session.commit()
        count = result.rowcount or 0
        logger.info(f"notification_cleanup: deleted={count}")
        return count
