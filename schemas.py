import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    BudgetStatus,
    NotificationPriority,
    NotificationType,
    SavingsGoalStatus,
)
from periods import parse_month_key


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class ExpenseIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    category_id: int
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)


class BudgetIn(BaseModel):
    category_id: int
    month: str
    limit_cents: int = Field(..., gt=0)

    @field_validator("month")
    @classmethod
    def _check_month(cls, value: str) -> str:
        parse_month_key(value)
        return value


class BudgetLimitIn(BaseModel):
    limit_cents: int = Field(..., gt=0)


class BudgetProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    category_name: str
    month: str
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    percentage: float
    status: BudgetStatus
    last_checked_at: Optional[dt.datetime] = None


ChartPeriod = Literal["days", "weeks", "months", "year"]


class ChartPointOut(BaseModel):
    key: str
    label: str
    amount_cents: int


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_cents: int = Field(..., gt=0)
    target_date: dt.date
    description: Optional[str] = Field(default=None, max_length=500)


class SavingsGoalProgressIn(BaseModel):
    amount_cents: int


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    target_cents: int
    current_cents: int
    target_date: dt.date
    progress: float
    remaining_cents: int
    days_remaining: int
    status: SavingsGoalStatus


class NotificationIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    type: NotificationType = NotificationType.custom
    priority: NotificationPriority = NotificationPriority.medium


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    related_id: Optional[str]
    is_read: bool
    read_at: Optional[dt.datetime]
    created_at: dt.datetime


class UserSettingsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    language: Optional[str] = Field(default=None, max_length=10)
    theme: Optional[str] = Field(default=None, max_length=20)
    budget_alerts: Optional[bool] = None
    monthly_reports: Optional[bool] = None
    expense_reminders: Optional[bool] = None


class PasswordResetRequestIn(BaseModel):
    email: str = Field(..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class PasswordResetTokenIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)
