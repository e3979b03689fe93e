"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("checking", "savings", "credit", "investment", name="accounttype"),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("institution", sa.String(length=100)),
        sa.Column("account_number", sa.String(length=34)),
        sa.Column("last_four", sa.String(length=4)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_active", "accounts", ["user_id", "is_active"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_categories_user", "categories", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("merchant", sa.String(length=120)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "ai_categorized", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("ai_confidence", sa.Float()),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_user_type", "transactions", ["user_id", "type"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "yearly", name="budgetperiod"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("alert_threshold", sa.Float(), nullable=False, server_default="0.9"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "alert_threshold >= 0 AND alert_threshold <= 1",
            name="ck_budget_alert_threshold_range",
        ),
    )
    op.create_index("ix_budgets_user_period", "budgets", ["user_id", "period"])
    op.create_index("ix_budgets_user_active", "budgets", ["user_id", "is_active"])

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("deadline", sa.Date()),
        sa.Column(
            "priority",
            sa.Enum("low", "medium", "high", name="goalpriority"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=50)),
        sa.Column(
            "monthly_contribution_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("description", sa.Text()),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_amount_positive"
        ),
    )
    op.create_index(
        "ix_savings_goals_user_completed", "savings_goals", ["user_id", "is_completed"]
    )

    op.create_table(
        "savings_goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "goal_id", sa.Integer(), sa.ForeignKey("savings_goals.id"), nullable=False
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_contribution_amount_positive"),
    )
    op.create_index("ix_contributions_goal", "savings_goal_contributions", ["goal_id"])

    op.create_table(
        "ai_insights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "spending_pattern",
                "budget_recommendation",
                "anomaly_detection",
                "savings_opportunity",
                name="insighttype",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column(
            "priority",
            sa.Enum("low", "medium", "high", name="insightpriority"),
            nullable=False,
        ),
        sa.Column("data", sa.JSON()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ai_insights_user_type", "ai_insights", ["user_id", "type"])
    op.create_index("ix_ai_insights_user_read", "ai_insights", ["user_id", "is_read"])

    op.create_table(
        "ai_queries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("response", sa.Text(), nullable=False),
        sa.Column("context", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ai_queries_user", "ai_queries", ["user_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64)),
        sa.Column("stripe_customer_id", sa.String(length=64)),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=False),
        sa.Column("tier", sa.Enum("basic", "pro", name="subscriptiontier")),
        sa.Column(
            "status",
            sa.Enum(
                "trialing",
                "active",
                "past_due",
                "canceled",
                "unpaid",
                "incomplete",
                "incomplete_expired",
                "paused",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column("current_period_start", sa.DateTime()),
        sa.Column("current_period_end", sa.DateTime()),
        sa.Column("trial_end", sa.DateTime()),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "stripe_subscription_id", name="uq_subscriptions_stripe_subscription_id"
        ),
    )
    op.create_index("ix_subscriptions_user", "subscriptions", ["user_id"])


def downgrade():
    op.drop_index("ix_subscriptions_user", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_ai_queries_user", table_name="ai_queries")
    op.drop_table("ai_queries")
    op.drop_index("ix_ai_insights_user_read", table_name="ai_insights")
    op.drop_index("ix_ai_insights_user_type", table_name="ai_insights")
    op.drop_table("ai_insights")
    op.drop_index("ix_contributions_goal", table_name="savings_goal_contributions")
    op.drop_table("savings_goal_contributions")
    op.drop_index("ix_savings_goals_user_completed", table_name="savings_goals")
    op.drop_table("savings_goals")
    op.drop_index("ix_budgets_user_active", table_name="budgets")
    op.drop_index("ix_budgets_user_period", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_type", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_user", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_active", table_name="accounts")
    op.drop_table("accounts")
