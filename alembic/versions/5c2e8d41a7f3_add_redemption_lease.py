"""Add lease_until to redemption_transactions

Revision ID: 5c2e8d41a7f3
Revises: 0a1f3c5e7b90
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "5c2e8d41a7f3"
down_revision = "0a1f3c5e7b90"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add the fulfillment claim column.

    A worker sets ``lease_until`` before sending a webhook or picking a
    promo code, so the API task and the maintenance sweep never fulfill
    the same transaction at the same time.
    """
    op.add_column(
        "redemption_transactions",
        sa.Column("lease_until", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_redemptions_pending",
        "redemption_transactions",
        ["status", "lease_until"],
    )


def downgrade() -> None:
    op.drop_index("ix_redemptions_pending", table_name="redemption_transactions")
    op.drop_column("redemption_transactions", "lease_until")
