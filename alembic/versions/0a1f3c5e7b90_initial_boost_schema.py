"""Initial Boost schema

End users, commission plans/ledger, referrals, loyalty ledger, streak
rules/state/history, progression rules, reward catalog, redemptions and
the event outbox.

Revision ID: 0a1f3c5e7b90
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "0a1f3c5e7b90"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return cols


def upgrade() -> None:
    op.create_table(
        "commission_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(20), nullable=False, server_default="PERCENTAGE"),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false()),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
    )

    op.create_table(
        "end_users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "commission_plan_id", sa.String(36),
            sa.ForeignKey("commission_plans.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        *_timestamps(updated=True),
        sa.UniqueConstraint("project_id", "external_id", name="uq_end_users_project_external"),
    )
    op.create_index("ix_end_users_project", "end_users", ["project_id"])

    op.create_table(
        "commission_ledger",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "end_user_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("commission_plan_id", sa.String(36), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("source_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        *_timestamps(),
    )
    op.create_index("ix_commission_ledger_end_user", "commission_ledger", ["end_user_id"])

    op.create_table(
        "referral_tracking",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "referrer_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("referred_external_id", sa.String(255), nullable=False),
        sa.Column("referral_code", sa.String(100), nullable=False, server_default=""),
        *_timestamps(),
        sa.UniqueConstraint(
            "project_id", "referred_external_id", name="uq_referral_project_referred",
        ),
    )
    op.create_index("ix_referral_tracking_referrer", "referral_tracking", ["referrer_id"])

    op.create_table(
        "loyalty_ledger",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "end_user_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_loyalty_ledger_reference",
        "loyalty_ledger",
        ["reference_type", "reference_id"],
        unique=True,
        postgresql_where=sa.text("reference_id IS NOT NULL"),
    )
    op.create_index(
        "ix_loyalty_ledger_end_user", "loyalty_ledger", ["end_user_id", "created_at"],
    )

    op.create_table(
        "streak_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("event_name", sa.String(255), nullable=False),
        sa.Column("frequency", sa.String(10), nullable=False, server_default="daily"),
        sa.Column("milestones", postgresql.JSONB(), nullable=True),
        sa.Column("default_freeze_count", sa.Integer(), server_default="0"),
        sa.Column("timezone_offset_minutes", sa.Integer(), server_default="0"),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_streak_rules_project_event", "streak_rules", ["project_id", "event_name"],
    )

    op.create_table(
        "user_streaks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "end_user_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "streak_rule_id", sa.String(36),
            sa.ForeignKey("streak_rules.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("current_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_date", sa.Date(), nullable=True),
        sa.Column("freeze_inventory", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("freeze_used_today", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_milestone_day", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(10), nullable=False, server_default="inactive"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(updated=True),
        sa.UniqueConstraint("end_user_id", "streak_rule_id", name="uq_user_streaks_user_rule"),
    )
    op.create_index(
        "ix_user_streaks_project_status", "user_streaks", ["project_id", "status"],
    )

    op.create_table(
        "streak_history",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "end_user_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("streak_rule_id", sa.String(36), nullable=False),
        sa.Column(
            "user_streak_id", sa.String(36),
            sa.ForeignKey("user_streaks.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("streak_count", sa.Integer(), nullable=False),
        sa.Column("milestone_day", sa.Integer(), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_streak_history_user_streak", "streak_history", ["user_streak_id", "created_at"],
    )
    op.create_index(
        "ix_streak_history_end_user", "streak_history", ["end_user_id", "created_at"],
    )

    op.create_table(
        "progression_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("trigger_metric", sa.String(100), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column(
            "target_plan_id", sa.String(36),
            sa.ForeignKey("commission_plans.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("priority", sa.Integer(), server_default="0"),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_progression_rules_project_active", "progression_rules", ["project_id", "active"],
    )

    op.create_table(
        "reward_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sku", sa.String(100), nullable=True),
        sa.Column("cost_points", sa.Integer(), nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("prerequisite_badge_id", sa.String(255), nullable=True),
        sa.Column("fulfillment_type", sa.String(20), nullable=False),
        sa.Column("fulfillment_config", postgresql.JSONB(), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "sku", name="uq_reward_items_project_sku"),
    )
    op.create_index(
        "ix_reward_items_project_active", "reward_items", ["project_id", "active"],
    )

    op.create_table(
        "redemption_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column(
            "end_user_id", sa.String(36),
            sa.ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "reward_item_id", sa.String(36),
            sa.ForeignKey("reward_items.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("cost_at_time", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(12), nullable=False, server_default="PROCESSING"),
        sa.Column("fulfillment_data", postgresql.JSONB(), nullable=True),
        sa.Column("webhook_retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index(
        "ix_redemptions_project_status", "redemption_transactions", ["project_id", "status"],
    )
    op.create_index(
        "ix_redemptions_end_user", "redemption_transactions", ["end_user_id", "created_at"],
    )

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_event_outbox_unpublished", "event_outbox", ["published_at", "id"])


def downgrade() -> None:
    op.drop_table("event_outbox")
    op.drop_table("redemption_transactions")
    op.drop_table("reward_items")
    op.drop_table("progression_rules")
    op.drop_table("streak_history")
    op.drop_table("user_streaks")
    op.drop_table("streak_rules")
    op.drop_table("loyalty_ledger")
    op.drop_table("referral_tracking")
    op.drop_table("commission_ledger")
    op.drop_table("end_users")
    op.drop_table("commission_plans")
