"""
boost.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- end_users              — Host-application users (external id per project)
- commission_plans       — Tier/plan definitions targeted by progression
- commission_ledger      — Commission entries (source of earnings stats)
- referral_tracking      — Referral attributions (source of referral stats)
- loyalty_ledger         — Append-only point ledger with running balance
- streak_rules           — Project-scoped streak definitions + milestones
- user_streaks           — Per (user, rule) streak counters
- streak_history         — Append-only streak action journal
- progression_rules      — Threshold → target plan rules
- reward_items           — Redeemable catalog entries
- redemption_transactions — One row per redeem attempt
- event_outbox           — Emitted events awaiting relay to the bus
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Boost ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class StreakFrequency(enum.StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"


class StreakStatus(enum.StrEnum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    AT_RISK = "at_risk"
    FROZEN = "frozen"


class StreakAction(enum.StrEnum):
    """Outcome of applying one activity to a streak."""
    STARTED = "started"
    EXTENDED = "extended"
    SAME_DAY = "same_day"
    FROZEN = "frozen"
    BROKEN = "broken"
    MILESTONE = "milestone"  # history only


class FulfillmentType(enum.StrEnum):
    WEBHOOK = "WEBHOOK"
    PROMO_CODE = "PROMO_CODE"
    MANUAL = "MANUAL"


class RedemptionStatus(enum.StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LedgerEntryType(enum.StrEnum):
    EARN = "earn"
    BONUS = "bonus"
    REDEEM = "redeem"
    ADJUST = "adjust"


class CommissionStatus(enum.StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    REJECTED = "REJECTED"


# ---------------------------------------------------------------------------
# EndUser — one row per (project, external id)
# ---------------------------------------------------------------------------
class EndUser(Base):
    __tablename__ = "end_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    loyalty_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commission_plan_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("commission_plans.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    streaks: Mapped[list[UserStreak]] = relationship(back_populates="end_user")

    __table_args__ = (
        UniqueConstraint("project_id", "external_id", name="uq_end_users_project_external"),
        Index("ix_end_users_project", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<EndUser id={self.id} external={self.external_id!r} pts={self.loyalty_points}>"


# ---------------------------------------------------------------------------
# CommissionPlan — tier targeted by progression rules
# ---------------------------------------------------------------------------
class CommissionPlan(Base):
    __tablename__ = "commission_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="PERCENTAGE")
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<CommissionPlan id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# CommissionLedger — earnings per end user
# ---------------------------------------------------------------------------
class CommissionLedger(Base):
    __tablename__ = "commission_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    end_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    commission_plan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # cents
    source_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CommissionStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_commission_ledger_end_user", "end_user_id"),
    )


# ---------------------------------------------------------------------------
# ReferralTracking — referrer → referred attribution
# ---------------------------------------------------------------------------
class ReferralTracking(Base):
    __tablename__ = "referral_tracking"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    referrer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    referred_external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "project_id", "referred_external_id", name="uq_referral_project_referred",
        ),
        Index("ix_referral_tracking_referrer", "referrer_id"),
    )


# ---------------------------------------------------------------------------
# LoyaltyLedger — append-only point journal
# ---------------------------------------------------------------------------
class LoyaltyLedger(Base):
    __tablename__ = "loyalty_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    end_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # A given reference (e.g. one streak milestone) credits at most once.
        Index(
            "ix_loyalty_ledger_reference",
            "reference_type",
            "reference_id",
            unique=True,
            postgresql_where=reference_id.isnot(None),
            sqlite_where=reference_id.isnot(None),
        ),
        Index("ix_loyalty_ledger_end_user", "end_user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LoyaltyLedger id={self.id} user={self.end_user_id} amount={self.amount}>"


# ---------------------------------------------------------------------------
# StreakRule — what a streak counts and what it pays out
# ---------------------------------------------------------------------------
class StreakRule(Base):
    """Project-scoped streak definition.

    ``milestones`` is a JSON list of ``{"day": int, "reward_points": int,
    "badge_id": str | None}`` objects.
    """
    __tablename__ = "streak_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    frequency: Mapped[str] = mapped_column(
        String(10), nullable=False, default=StreakFrequency.DAILY.value
    )
    milestones: Mapped[list | None] = mapped_column(JSONB, default=list)
    default_freeze_count: Mapped[int] = mapped_column(Integer, default=0)
    timezone_offset_minutes: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_streak_rules_project_event", "project_id", "event_name"),
    )

    def __repr__(self) -> str:
        return f"<StreakRule id={self.id} name={self.name!r} event={self.event_name!r}>"


# ---------------------------------------------------------------------------
# UserStreak — per (user, rule) mutable counters
# ---------------------------------------------------------------------------
class UserStreak(Base):
    __tablename__ = "user_streaks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    end_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    streak_rule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("streak_rules.id", ondelete="CASCADE"), nullable=False
    )
    current_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    freeze_inventory: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    freeze_used_today: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_milestone_day: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=StreakStatus.INACTIVE.value
    )
    # Compare-and-set token for apply_activity
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    end_user: Mapped[EndUser] = relationship(back_populates="streaks")

    __table_args__ = (
        UniqueConstraint("end_user_id", "streak_rule_id", name="uq_user_streaks_user_rule"),
        Index("ix_user_streaks_project_status", "project_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserStreak id={self.id} user={self.end_user_id} "
            f"count={self.current_count} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# StreakHistory — append-only action journal
# ---------------------------------------------------------------------------
class StreakHistory(Base):
    __tablename__ = "streak_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    end_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    streak_rule_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_streak_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_streaks.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    streak_count: Mapped[int] = mapped_column(Integer, nullable=False)
    milestone_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    points_awarded: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_streak_history_user_streak", "user_streak_id", "created_at"),
        Index("ix_streak_history_end_user", "end_user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<StreakHistory id={self.id} action={self.action} count={self.streak_count}>"


# ---------------------------------------------------------------------------
# ProgressionRule — metric threshold → target plan
# ---------------------------------------------------------------------------
class ProgressionRule(Base):
    __tablename__ = "progression_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_metric: Mapped[str] = mapped_column(String(100), nullable=False)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    target_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("commission_plans.id", ondelete="CASCADE"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_progression_rules_project_active", "project_id", "active"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProgressionRule id={self.id} {self.trigger_metric}>={self.threshold} "
            f"→ {self.target_plan_id}>"
        )


# ---------------------------------------------------------------------------
# RewardItem — redeemable catalog entry
# ---------------------------------------------------------------------------
class RewardItem(Base):
    """Catalog entry.

    ``fulfillment_config`` by type:
      * WEBHOOK:    ``{"url": str, "secret": str?, "headers": {str: str}?}``
      * PROMO_CODE: ``{"codes": [str, ...]}``
      * MANUAL:     free-form operator flags
    """
    __tablename__ = "reward_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cost_points: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prerequisite_badge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fulfillment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    fulfillment_config: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("project_id", "sku", name="uq_reward_items_project_sku"),
        Index("ix_reward_items_project_active", "project_id", "active"),
    )

    def __repr__(self) -> str:
        return f"<RewardItem id={self.id} name={self.name!r} cost={self.cost_points}>"


# ---------------------------------------------------------------------------
# RedemptionTransaction — one row per redeem attempt
# ---------------------------------------------------------------------------
class RedemptionTransaction(Base):
    __tablename__ = "redemption_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    end_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("end_users.id", ondelete="CASCADE"), nullable=False
    )
    reward_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("reward_items.id", ondelete="CASCADE"), nullable=False
    )
    cost_at_time: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(12), nullable=False, default=RedemptionStatus.PROCESSING.value
    )
    fulfillment_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    webhook_retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Set while a worker owns the fulfillment attempt
    lease_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    reward_item: Mapped[RewardItem] = relationship()

    __table_args__ = (
        Index("ix_redemptions_project_status", "project_id", "status"),
        Index("ix_redemptions_end_user", "end_user_id", "created_at"),
        Index("ix_redemptions_pending", "status", "lease_until"),
    )

    def __repr__(self) -> str:
        return f"<RedemptionTransaction id={self.id} status={self.status}>"


# ---------------------------------------------------------------------------
# EventOutbox — emitted envelopes awaiting relay
# ---------------------------------------------------------------------------
class EventOutbox(Base):
    __tablename__ = "event_outbox"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_event_outbox_unpublished", "published_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<EventOutbox id={self.id} event={self.event!r}>"
