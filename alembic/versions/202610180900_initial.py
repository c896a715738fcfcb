"""ledger, budgets and notifications

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


def upgrade():
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("dedup_key", sa.String(length=64), nullable=False),
        sa.Column(
            "source",
            sa.Enum("bank_sync", "manual", name="entrysource"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_ledger_user_dedup_key"),
        sa.CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
    )
    op.create_index(
        "ix_ledger_user_occurred", "ledger_entries", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_ledger_user_category_occurred",
        "ledger_entries",
        ["user_id", "category", "occurred_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column(
            "notified_for_current_period",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("period_key", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "category", name="uq_budget_user_category"),
        sa.CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "budget_alert", "monthly_summary", "general", name="notificationkind"
            ),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("budgets")
    op.drop_index("ix_ledger_user_category_occurred", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_occurred", table_name="ledger_entries")
    op.drop_table("ledger_entries")
