"""initial schema

Revision ID: 202405010900
Revises:
Create Date: 2024-05-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202405010900"
down_revision = None
branch_labels = None
depends_on = None


BUDGET_STATUS = sa.Enum(
    "good", "caution", "warning", "exceeded", name="budgetstatus"
)
NOTIFICATION_TYPE = sa.Enum(
    "budget_alert", "monthly_report", "custom", name="notificationtype"
)
NOTIFICATION_PRIORITY = sa.Enum("low", "medium", "high", name="notificationpriority")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(120)),
        *_timestamps(),
    )

    op.create_table(
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="BRL"),
        sa.Column("language", sa.String(10), nullable=False, server_default="pt-BR"),
        sa.Column("theme", sa.String(20), nullable=False, server_default="light"),
        sa.Column("budget_alerts", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("monthly_reports", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column(
            "expense_reminders", sa.Boolean(), nullable=False, server_default="1"
        ),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("icon", sa.String(16)),
        sa.Column("color", sa.String(7)),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("description", sa.String(200)),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])
    op.create_index(
        "ix_expenses_user_category_date",
        "expenses",
        ["user_id", "category_id", "date"],
    )
    op.create_index("ix_expenses_date", "expenses", ["date"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer()),
        sa.Column("percentage", sa.Float()),
        sa.Column("status", BUDGET_STATUS),
        sa.Column("last_checked_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("limit_cents >= 0", name="ck_budget_limit_positive"),
        sa.UniqueConstraint(
            "user_id", "category_id", "month", name="uq_budget_user_category_month"
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_budgets_user_month", "budgets", ["user_id", "month"])
    op.create_index("ix_budgets_month", "budgets", ["month"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("priority", NOTIFICATION_PRIORITY, nullable=False),
        sa.Column("related_id", sa.String(64)),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("read_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("dedupe_day", sa.String(10)),
        sa.UniqueConstraint(
            "user_id",
            "type",
            "related_id",
            "dedupe_day",
            name="uq_notification_alert_day",
        ),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_notifications_user_type_related",
        "notifications",
        ["user_id", "type", "related_id"],
    )

    op.create_table(
        "password_reset_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("used_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_password_reset_email", "password_reset_tokens", ["email"])
    op.create_index(
        "ix_password_reset_expires", "password_reset_tokens", ["expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_password_reset_expires", table_name="password_reset_tokens")
    op.drop_index("ix_password_reset_email", table_name="password_reset_tokens")
    op.drop_table("password_reset_tokens")
    op.drop_index("ix_notifications_user_type_related", table_name="notifications")
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_budgets_month", table_name="budgets")
    op.drop_index("ix_budgets_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_expenses_date", table_name="expenses")
    op.drop_index("ix_expenses_user_category_date", table_name="expenses")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("categories")
    op.drop_table("user_settings")
    op.drop_table("users")
