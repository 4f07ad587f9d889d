from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Budget,
    Category,
    Expense,
    Notification,
    PasswordResetToken,
    SavingsGoal,
    SavingsGoalStatus,
    User,
    UserSettings,
)
from monitoring import (
    budget_percentage,
    category_spent,
    classify_percentage,
    month_label,
)
from periods import month_period, reporting_today, to_storage, utcnow
from schemas import (
    BudgetIn,
    BudgetProgressOut,
    CategoryIn,
    ExpenseIn,
    NotificationIn,
    SavingsGoalIn,
    SavingsGoalOut,
    UserSettingsIn,
)


logger = logging.getLogger(__name__)

BudgetCheckDispatcher = Callable[[int], None]

CHART_PERIODS = ("days", "weeks", "months", "year")

DEFAULT_CATEGORIES: tuple[tuple[str, str, str], ...] = (
    ("Alimentação", "🍽️", "#FF6B6B"),
    ("Transporte", "🚗", "#4ECDC4"),
    ("Moradia", "🏠", "#45B7D1"),
    ("Saúde", "🏥", "#96CEB4"),
    ("Educação", "📚", "#FFEAA7"),
    ("Lazer", "🎮", "#DDA0DD"),
    ("Roupas", "👕", "#98D8C8"),
    ("Outros", "📦", "#A0A0A0"),
)


def get_current_user_id() -> int:
    return 1


class UserSettingsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _stored(self) -> Optional[UserSettings]:
        return self.session.scalar(
            select(UserSettings).where(UserSettings.user_id == self.user_id)
        )

    def get(self) -> UserSettings:
        stored = self._stored()
        if stored:
            return stored
        # Unsaved defaults; update() persists them.
        return UserSettings(
            user_id=self.user_id,
            currency="BRL",
            language="pt-BR",
            theme="light",
            budget_alerts=True,
            monthly_reports=True,
            expense_reminders=True,
        )

    def update(self, data: UserSettingsIn) -> UserSettings:
        settings = self._stored()
        if settings is None:
            settings = self.get()
            self.session.add(settings)
        for field, value in data.model_dump(exclude_none=True).items():
            setattr(settings, field, value)
        self.session.commit()
        self.session.refresh(settings)
        return settings


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def initialize(self) -> bool:
        """Create default settings and categories once; False if already done."""
        settings_service = UserSettingsService(self.session, self.user_id)
        if settings_service._stored() is not None:
            return False
        self.session.add(settings_service.get())

        existing = {
            name.lower()
            for name in self.session.scalars(
                select(Category.name).where(Category.user_id == self.user_id)
            )
        }
        for name, icon, color in DEFAULT_CATEGORIES:
            if name.lower() in existing:
                continue
            self.session.add(
                Category(
                    user_id=self.user_id,
                    name=name,
                    icon=icon,
                    color=color,
                    is_default=True,
                )
            )
        self.session.commit()
        logger.info(f"user_initialized: user_id={self.user_id}")
        return True


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            icon=data.icon,
            color=data.color,
            is_default=False,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        if self._name_taken(data.name, exclude_id=category.id):
            raise ValueError("Category with this name already exists")
        category.name = data.name.strip()
        category.icon = data.icon
        category.color = data.color
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(Expense.id).where(Expense.category_id == category.id).limit(1)
        ) or self.session.scalar(
            select(Budget.id).where(Budget.category_id == category.id).limit(1)
        )
        if in_use:
            raise ValueError("Category is in use by expenses or budgets")
        self.session.delete(category)
        self.session.commit()


class ExpenseService:
    """Expense CRUD; every committed change hands the user id to ``on_change``."""

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        on_change: Optional[BudgetCheckDispatcher] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.on_change = on_change

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.user_id)
        except Exception:
            # The expense is already committed; a stale budget cache is
            # refreshed by the next sweep.
            logger.exception(f"budget_check_enqueue_failed: user_id={self.user_id}")

    def _check_category(self, category_id: int) -> None:
        CategoryService(self.session, self.user_id).get(category_id)

    def list(
        self, month: Optional[str] = None, category_id: Optional[int] = None
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        if month:
            period = month_period(month)
            stmt = stmt.where(Expense.date.between(period.start, period.end))
        if category_id is not None:
            stmt = stmt.where(Expense.category_id == category_id)
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 10) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.created_at.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise ValueError("Expense not found")
        return expense

    def create(self, data: ExpenseIn, now: Optional[datetime] = None) -> Expense:
        self._check_category(data.category_id)
        expense = Expense(
            user_id=self.user_id,
            date=data.date or reporting_today(now),
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            description=data.description,
            notes=data.notes,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        self._changed()
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        self._check_category(data.category_id)
        expense.amount_cents = data.amount_cents
        expense.category_id = data.category_id
        if data.date is not None:
            expense.date = data.date
        expense.description = data.description
        expense.notes = data.notes
        self.session.commit()
        self._changed()
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()
        self._changed()

    def monthly_summary(self, month: str) -> dict[str, object]:
        period = month_period(month)
        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
                func.count(Expense.id).label("count"),
            )
            .join(Category, Expense.category_id == Category.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name)
        ).all()
        breakdown = [
            {
                "category_id": row.id,
                "name": row.name,
                "total_cents": int(row.total or 0),
                "count": int(row.count or 0),
            }
            for row in rows
        ]
        breakdown.sort(key=lambda item: item["total_cents"], reverse=True)
        total = sum(item["total_cents"] for item in breakdown)
        days = (period.end - period.start).days + 1
        return {
            "month": month,
            "start": period.start.isoformat(),
            "end": period.end.isoformat(),
            "total_cents": total,
            "count": sum(item["count"] for item in breakdown),
            "daily_average_cents": round(total / days, 2),
            "categories": breakdown,
        }

    def chart_data(
        self, period: str, time_range: int, now: Optional[datetime] = None
    ) -> list[dict[str, object]]:
        """Expense totals per bucket from ``time_range`` periods back up to today.

        Buckets are calendar days, Sunday-based weeks, months or years in the
        reporting timezone; buckets without expenses are returned with zero.
        """
        if period not in CHART_PERIODS:
            raise ValueError(f"Invalid chart period: {period}")
        if time_range < 0:
            raise ValueError("Time range must not be negative")
        today = reporting_today(now)

        def add_months(d: date, count: int) -> date:
            month_index = (d.year * 12) + (d.month - 1) + count
            return date(month_index // 12, (month_index % 12) + 1, 1)

        def bucket_of(d: date) -> date:
            if period == "weeks":
                return d - timedelta(days=(d.weekday() + 1) % 7)
            if period == "months":
                return d.replace(day=1)
            if period == "year":
                return date(d.year, 1, 1)
            return d

        def next_bucket(d: date) -> date:
            if period == "weeks":
                return d + timedelta(weeks=1)
            if period == "months":
                return add_months(d, 1)
            if period == "year":
                return date(d.year + 1, 1, 1)
            return d + timedelta(days=1)

        def key_and_label(d: date) -> tuple[str, str]:
            if period == "months":
                key = f"{d.year:04d}-{d.month:02d}"
                return key, month_label(key)
            if period == "year":
                return str(d.year), str(d.year)
            return d.isoformat(), d.strftime("%d/%m")

        if period == "days":
            start = today - timedelta(days=time_range)
        elif period == "weeks":
            start = today - timedelta(weeks=time_range)
        elif period == "months":
            start = add_months(today, -time_range)
        else:
            start = date(today.year - time_range, 1, 1)

        rows = self.session.execute(
            select(Expense.date, Expense.amount_cents).where(
                Expense.user_id == self.user_id,
                Expense.date.between(start, today),
            )
        ).all()
        totals: dict[date, int] = {}
        for row in rows:
            bucket = bucket_of(row.date)
            totals[bucket] = totals.get(bucket, 0) + int(row.amount_cents)

        points: list[dict[str, object]] = []
        current = bucket_of(start)
        while current <= today:
            key, label = key_and_label(current)
            points.append(
                {"key": key, "label": label, "amount_cents": totals.get(current, 0)}
            )
            current = next_bucket(current)
        return points


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def list_for_month(self, month: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.month == month)
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        CategoryService(self.session, self.user_id).get(data.category_id)
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
            )
        )
        if existing:
            existing.limit_cents = data.limit_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            month=data.month,
            limit_cents=data.limit_cents,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update_limit(self, budget_id: int, limit_cents: int) -> Budget:
        if limit_cents <= 0:
            raise ValueError("Budget limit must be positive")
        budget = self.get(budget_id)
        budget.limit_cents = limit_cents
        self.session.commit()
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def progress_for_month(self, month: str) -> list[BudgetProgressOut]:
        """Live spend for each budget of the month, classified like the alerts."""
        period = month_period(month)
        progress: list[BudgetProgressOut] = []
        for budget in self.list_for_month(month):
            spent = category_spent(
                self.session,
                self.user_id,
                budget.category_id,
                period.start,
                period.end,
            )
            percentage = budget_percentage(spent, budget.limit_cents)
            progress.append(
                BudgetProgressOut(
                    id=budget.id,
                    category_id=budget.category_id,
                    category_name=budget.category.name,
                    month=budget.month,
                    limit_cents=budget.limit_cents,
                    spent_cents=spent,
                    remaining_cents=budget.limit_cents - spent,
                    percentage=percentage,
                    status=classify_percentage(percentage),
                    last_checked_at=budget.last_checked_at,
                )
            )
        return progress


def savings_goal_status(progress: float, days_remaining: int) -> SavingsGoalStatus:
    if progress >= 100:
        return SavingsGoalStatus.completed
    if days_remaining < 0:
        return SavingsGoalStatus.overdue
    if days_remaining <= 30:
        return SavingsGoalStatus.urgent
    return SavingsGoalStatus.on_track


class SavingsGoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Savings goal not found")
        return goal

    def list_with_progress(self, today: Optional[date] = None) -> list[SavingsGoalOut]:
        today = today or reporting_today()
        stmt = (
            select(SavingsGoal)
            .where(SavingsGoal.user_id == self.user_id)
            .order_by(SavingsGoal.id.desc())
        )
        return [self.progress(goal, today) for goal in self.session.scalars(stmt)]

    @staticmethod
    def progress(goal: SavingsGoal, today: date) -> SavingsGoalOut:
        current = goal.current_cents or 0
        percentage = budget_percentage(current, goal.target_cents)
        days_remaining = (goal.target_date - today).days
        return SavingsGoalOut(
            id=goal.id,
            name=goal.name,
            description=goal.description,
            target_cents=goal.target_cents,
            current_cents=current,
            target_date=goal.target_date,
            progress=percentage,
            remaining_cents=goal.target_cents - current,
            days_remaining=days_remaining,
            status=savings_goal_status(percentage, days_remaining),
        )

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            target_cents=data.target_cents,
            current_cents=0,
            target_date=data.target_date,
            is_completed=False,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def add_progress(
        self, goal_id: int, amount_cents: int, now: Optional[datetime] = None
    ) -> SavingsGoal:
        """Add an amount (negative withdraws); the balance never drops below 0."""
        goal = self.get(goal_id)
        goal.current_cents = max(0, (goal.current_cents or 0) + amount_cents)
        reached = goal.current_cents >= goal.target_cents
        if reached and not goal.is_completed:
            goal.completed_at = to_storage(now or datetime.now(timezone.utc))
            logger.info(
                f"savings_goal_completed: user_id={self.user_id} goal_id={goal.id}"
            )
        elif not reached:
            goal.completed_at = None
        goal.is_completed = reached
        self.session.commit()
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list(self, limit: int = 50) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == self.user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def unread_count(self) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == self.user_id,
            Notification.is_read.is_(False),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, notification_id: int) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise ValueError("Notification not found")
        return notification

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.get(notification_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            self.session.commit()
        return notification

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=utcnow())
        )
        self.session.commit()
        return result.rowcount or 0

    def delete(self, notification_id: int) -> None:
        notification = self.get(notification_id)
        self.session.delete(notification)
        self.session.commit()

    def create_custom(self, data: NotificationIn) -> Notification:
        notification = Notification(
            user_id=self.user_id,
            type=data.type,
            title=data.title,
            message=data.message,
            priority=data.priority,
            is_read=False,
        )
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        return notification


class ResetTokenError(ValueError):
    pass


class PasswordResetService:
    """Issues and redeems password-reset tokens.

    Delivering the link is outside this application; the link is logged.
    Changing the password itself belongs to the authentication provider, so
    ``consume`` only retires the token and returns the account email.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()
        self.serializer = URLSafeTimedSerializer(
            self.settings.secret_key, salt="password-reset"
        )

    def request(
        self, email: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        email = email.strip().lower()
        user = self.session.scalar(select(User).where(func.lower(User.email) == email))
        if not user:
            # Same response for unknown addresses.
            logger.info("password_reset_requested: unknown email")
            return None

        issued_at = to_storage(now or datetime.now(timezone.utc))
        token = self.serializer.dumps({"e": email, "n": secrets.token_hex(8)})
        row = PasswordResetToken(
            email=email,
            token=token,
            expires_at=issued_at
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
            used=False,
            created_at=issued_at,
        )
        self.session.add(row)
        self.session.commit()
        reset_url = f"{self.settings.site_url}/reset-password?token={token}"
        logger.info(f"password_reset_requested: user_id={user.id} url={reset_url}")
        return row

    def _lookup(self, token: str, now: Optional[datetime]) -> PasswordResetToken:
        try:
            self.serializer.loads(token)
        except BadSignature as exc:
            raise ResetTokenError("Invalid token") from exc
        row = self.session.scalar(
            select(PasswordResetToken).where(PasswordResetToken.token == token)
        )
        if not row:
            raise ResetTokenError("Invalid token")
        if row.used:
            raise ResetTokenError("Token already used")
        if row.expires_at < to_storage(now or datetime.now(timezone.utc)):
            raise ResetTokenError("Token expired")
        return row

    def validate(self, token: str, now: Optional[datetime] = None) -> str:
        return self._lookup(token, now).email

    def consume(self, token: str, now: Optional[datetime] = None) -> str:
        row = self._lookup(token, now)
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == row.email)
        )
        if not user:
            raise ValueError("User not found")
        row.used = True
        row.used_at = to_storage(now or datetime.now(timezone.utc))
        self.session.commit()
        logger.info(f"password_reset_consumed: user_id={user.id}")
        return row.email
