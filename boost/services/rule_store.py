"""
boost.services.rule_store — Rule Store over SQLAlchemy
=======================================================

The single data-layer collaborator for the three processors.  Every
method is **synchronous** and opens its own short session; processors
call them through :func:`boost.database.engine.run_db`.

All counter, balance, stock and tier mutations are single conditional
statements (``UPDATE ... WHERE <guard>``) checked by ``rowcount``, so no
engine-side lock is needed and two workers racing on the same row can
never both win:

* ``apply_activity``          compare-and-set on ``user_streaks.version``
* ``advance_milestone_marker`` ``WHERE last_milestone_day < :day``
* ``credit_ledger``           unique ``(reference_type, reference_id)``
* ``assign_plan``             ``WHERE commission_plan_id IS DISTINCT FROM :plan``
* ``atomic_redeem``           ``WHERE stock > 0`` + ``WHERE points >= cost``
* ``claim_fulfillment``       ``WHERE lease_until IS NULL OR lease_until < now``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from boost.constants import MAX_WEBHOOK_ATTEMPTS, REDEMPTION_REFERENCE
from boost.database.engine import get_session
from boost.database.models import (
    CommissionLedger,
    CommissionPlan,
    CommissionStatus,
    EndUser,
    FulfillmentType,
    LedgerEntryType,
    LoyaltyLedger,
    ProgressionRule,
    RedemptionStatus,
    RedemptionTransaction,
    ReferralTracking,
    RewardItem,
    StreakHistory,
    StreakAction,
    StreakRule,
    StreakStatus,
    UserStreak,
)
from boost.engine.events import utcnow
from boost.engine.progression import UserStats
from boost.engine.streaks import StreakOutcome, StreakState, activity_date, evaluate_activity
from boost.errors import NotFoundError, StreakConflictError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class CreditResult:
    credited: bool
    balance: int


@dataclass(frozen=True, slots=True)
class RedeemResult:
    success: bool
    transaction: RedemptionTransaction | None = None
    balance: int | None = None
    error: str | None = None


class _RedeemRefused(Exception):
    """Internal: aborts the atomic redeem transaction with a reason."""


class RuleStore:
    """Data access for rules, streaks, ledgers and redemptions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # End users
    # ------------------------------------------------------------------
    def find_end_user(self, project_id: str, external_id: str) -> EndUser | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.scalar(
                select(EndUser).where(
                    EndUser.project_id == project_id,
                    EndUser.external_id == external_id,
                )
            )

    def find_or_create_end_user(self, project_id: str, external_id: str) -> EndUser:
        """Return the end user, inserting it on first sight.

        A concurrent insert of the same ``(project, external id)`` loses on
        the unique constraint and re-reads the winner's row.
        """
        existing = self.find_end_user(project_id, external_id)
        if existing is not None:
            return existing
        try:
            with get_session(self.engine) as session:
                user = EndUser(project_id=project_id, external_id=external_id)
                session.add(user)
                session.flush()
                session.refresh(user)
                return user
        except IntegrityError:
            logger.debug("End user %s/%s created concurrently", project_id, external_id)
            user = self.find_end_user(project_id, external_id)
            if user is None:
                raise
            return user

    def get_end_user(self, end_user_id: str) -> EndUser | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(EndUser, end_user_id)

    # ------------------------------------------------------------------
    # Loyalty ledger
    # ------------------------------------------------------------------
    def credit_ledger(
        self,
        project_id: str,
        end_user_id: str,
        amount: int,
        *,
        entry_type: str = LedgerEntryType.EARN.value,
        reference_type: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditResult:
        """Add *amount* to the balance and journal it, in one transaction.

        When a ``(reference_type, reference_id)`` pair has already been
        journaled, nothing is written and ``credited`` is False.  The
        unique index catches the case where two workers race past the
        pre-check; the loser's whole transaction rolls back.
        """
        if reference_id is not None and self._reference_exists(reference_type, reference_id):
            logger.debug("Ledger reference %s:%s already credited", reference_type, reference_id)
            return CreditResult(credited=False, balance=self._balance(end_user_id))

        try:
            with get_session(self.engine) as session:
                result = session.execute(
                    update(EndUser)
                    .where(EndUser.id == end_user_id)
                    .values(loyalty_points=EndUser.loyalty_points + amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"End user {end_user_id} not found")
                balance = session.scalar(
                    select(EndUser.loyalty_points).where(EndUser.id == end_user_id)
                )
                session.add(LoyaltyLedger(
                    project_id=project_id,
                    end_user_id=end_user_id,
                    amount=amount,
                    balance=balance,
                    type=entry_type,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    description=description,
                    metadata_=metadata,
                ))
                session.flush()
        except IntegrityError:
            if reference_id is None:
                raise
            logger.debug("Ledger reference %s:%s credited concurrently", reference_type, reference_id)
            return CreditResult(credited=False, balance=self._balance(end_user_id))
        return CreditResult(credited=True, balance=balance)

    def _reference_exists(self, reference_type: str | None, reference_id: str) -> bool:
        with Session(self.engine) as session:
            return session.scalar(
                select(LoyaltyLedger.id).where(
                    LoyaltyLedger.reference_type == reference_type,
                    LoyaltyLedger.reference_id == reference_id,
                )
            ) is not None

    def _balance(self, end_user_id: str) -> int:
        with Session(self.engine) as session:
            return session.scalar(
                select(EndUser.loyalty_points).where(EndUser.id == end_user_id)
            ) or 0

    def list_ledger(self, end_user_id: str, limit: int = 50) -> list[LoyaltyLedger]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(LoyaltyLedger)
                .where(LoyaltyLedger.end_user_id == end_user_id)
                .order_by(LoyaltyLedger.created_at.desc())
                .limit(limit)
            ))

    # ------------------------------------------------------------------
    # Streak rules & user streaks
    # ------------------------------------------------------------------
    def find_streak_rules_by_event_type(
        self, project_id: str, event_name: str,
    ) -> list[StreakRule]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(StreakRule).where(
                    StreakRule.project_id == project_id,
                    StreakRule.event_name == event_name,
                    StreakRule.active.is_(True),
                )
            ))

    def _find_user_streak(self, end_user_id: str, rule_id: str) -> UserStreak | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.scalar(
                select(UserStreak).where(
                    UserStreak.end_user_id == end_user_id,
                    UserStreak.streak_rule_id == rule_id,
                )
            )

    def find_or_create_user_streak(
        self, project_id: str, end_user_id: str, rule: StreakRule,
    ) -> UserStreak:
        """Return the (user, rule) streak, seeding freezes on creation."""
        existing = self._find_user_streak(end_user_id, rule.id)
        if existing is not None:
            return existing
        try:
            with get_session(self.engine) as session:
                streak = UserStreak(
                    project_id=project_id,
                    end_user_id=end_user_id,
                    streak_rule_id=rule.id,
                    current_count=0,
                    max_streak=0,
                    freeze_inventory=rule.default_freeze_count or 0,
                    freeze_used_today=False,
                    last_milestone_day=0,
                    status=StreakStatus.INACTIVE.value,
                    version=0,
                )
                session.add(streak)
                session.flush()
                session.refresh(streak)
                return streak
        except IntegrityError:
            streak = self._find_user_streak(end_user_id, rule.id)
            if streak is None:
                raise
            return streak

    def get_user_streak(self, streak_id: str) -> UserStreak | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(UserStreak, streak_id)

    def list_user_streaks(self, end_user_id: str) -> list[UserStreak]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(UserStreak).where(UserStreak.end_user_id == end_user_id)
            ))

    def apply_activity(
        self, streak_id: str, when: datetime, tz_offset_minutes: int = 0,
    ) -> StreakOutcome:
        """Apply one activity to a streak with optimistic concurrency.

        Reads the row, runs :func:`evaluate_activity`, then writes the new
        state only if ``version`` is unchanged.  A lost race re-reads and
        re-decides, up to ``MAX_CAS_ATTEMPTS`` times.
        """
        day = activity_date(when, tz_offset_minutes)
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            with get_session(self.engine) as session:
                row = session.get(UserStreak, streak_id)
                if row is None:
                    raise NotFoundError(f"User streak {streak_id} not found")

                state = StreakState(
                    current_count=row.current_count,
                    max_streak=row.max_streak,
                    last_activity_date=row.last_activity_date,
                    freeze_inventory=row.freeze_inventory,
                    freeze_used_today=row.freeze_used_today,
                    status=row.status,
                )
                outcome = evaluate_activity(state, day)
                if outcome.action is StreakAction.SAME_DAY:
                    return outcome

                new = outcome.state
                result = session.execute(
                    update(UserStreak)
                    .where(UserStreak.id == streak_id, UserStreak.version == row.version)
                    .values(
                        current_count=new.current_count,
                        max_streak=new.max_streak,
                        last_activity_date=new.last_activity_date,
                        freeze_inventory=new.freeze_inventory,
                        freeze_used_today=new.freeze_used_today,
                        status=new.status,
                        version=UserStreak.version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return outcome
            logger.debug("Streak %s changed concurrently (attempt %d)", streak_id, attempt)

        raise StreakConflictError(
            f"Streak {streak_id} still contended after {MAX_CAS_ATTEMPTS} attempts"
        )

    def advance_milestone_marker(self, streak_id: str, day: int) -> bool:
        """Move ``last_milestone_day`` forward to *day*; never backwards."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(UserStreak)
                .where(UserStreak.id == streak_id, UserStreak.last_milestone_day < day)
                .values(last_milestone_day=day)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def add_freeze_tokens(self, streak_id: str, count: int) -> int:
        """Grant *count* freezes; returns the new inventory."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(UserStreak)
                .where(UserStreak.id == streak_id)
                .values(
                    freeze_inventory=UserStreak.freeze_inventory + count,
                    version=UserStreak.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"User streak {streak_id} not found")
            return session.scalar(
                select(UserStreak.freeze_inventory).where(UserStreak.id == streak_id)
            )

    def _rules_for_maintenance(self, session: Session, project_id: str | None) -> list[StreakRule]:
        stmt = select(StreakRule).where(StreakRule.active.is_(True))
        if project_id is not None:
            stmt = stmt.where(StreakRule.project_id == project_id)
        return list(session.scalars(stmt))

    def mark_at_risk_streaks(
        self, project_id: str | None = None, now: datetime | None = None,
    ) -> int:
        """Flag active streaks that missed yesterday (rule-local) as ``at_risk``.

        Returns the number of streaks updated.
        """
        now = now or utcnow()
        updated = 0
        with get_session(self.engine) as session:
            for rule in self._rules_for_maintenance(session, project_id):
                yesterday = activity_date(now, rule.timezone_offset_minutes or 0) - timedelta(days=1)
                result = session.execute(
                    update(UserStreak)
                    .where(
                        UserStreak.streak_rule_id == rule.id,
                        UserStreak.status == StreakStatus.ACTIVE.value,
                        UserStreak.last_activity_date < yesterday,
                    )
                    .values(status=StreakStatus.AT_RISK.value, version=UserStreak.version + 1)
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount
        if updated:
            logger.info("Marked %d streak(s) at risk", updated)
        return updated

    def reset_daily_freeze_flags(
        self, project_id: str | None = None, now: datetime | None = None,
    ) -> int:
        """Clear ``freeze_used_today`` on streaks whose frozen day has passed."""
        now = now or utcnow()
        updated = 0
        with get_session(self.engine) as session:
            for rule in self._rules_for_maintenance(session, project_id):
                today = activity_date(now, rule.timezone_offset_minutes or 0)
                result = session.execute(
                    update(UserStreak)
                    .where(
                        UserStreak.streak_rule_id == rule.id,
                        UserStreak.freeze_used_today.is_(True),
                        or_(
                            UserStreak.last_activity_date.is_(None),
                            UserStreak.last_activity_date < today,
                        ),
                    )
                    .values(freeze_used_today=False, version=UserStreak.version + 1)
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount
        if updated:
            logger.debug("Reset freeze flag on %d streak(s)", updated)
        return updated

    # ------------------------------------------------------------------
    # Streak history
    # ------------------------------------------------------------------
    def record_streak_history(
        self,
        streak: UserStreak,
        action: str,
        streak_count: int,
        *,
        milestone_day: int | None = None,
        points_awarded: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StreakHistory:
        with get_session(self.engine) as session:
            entry = StreakHistory(
                project_id=streak.project_id,
                end_user_id=streak.end_user_id,
                streak_rule_id=streak.streak_rule_id,
                user_streak_id=streak.id,
                action=str(action),
                streak_count=streak_count,
                milestone_day=milestone_day,
                points_awarded=points_awarded,
                metadata_=metadata,
            )
            session.add(entry)
            session.flush()
            session.refresh(entry)
            return entry

    def list_streak_history(
        self,
        end_user_id: str,
        *,
        streak_rule_id: str | None = None,
        limit: int = 50,
    ) -> list[StreakHistory]:
        """Newest-first history for a user, optionally for one rule."""
        stmt = select(StreakHistory).where(StreakHistory.end_user_id == end_user_id)
        if streak_rule_id is not None:
            stmt = stmt.where(StreakHistory.streak_rule_id == streak_rule_id)
        stmt = stmt.order_by(StreakHistory.id.desc()).limit(limit)
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(stmt))

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------
    def find_active_progression_rules(self, project_id: str) -> list[ProgressionRule]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(ProgressionRule)
                .where(
                    ProgressionRule.project_id == project_id,
                    ProgressionRule.active.is_(True),
                )
                .order_by(ProgressionRule.priority.desc(), ProgressionRule.threshold.desc())
            ))

    def compute_user_stats(self, end_user_id: str) -> UserStats:
        """Fresh lifetime stats: referrals and commission totals."""
        with Session(self.engine) as session:
            referrals = session.scalar(
                select(func.count())
                .select_from(ReferralTracking)
                .where(ReferralTracking.referrer_id == end_user_id)
            ) or 0
            rows = session.execute(
                select(
                    CommissionLedger.status,
                    func.count().label("cnt"),
                    func.coalesce(func.sum(CommissionLedger.amount), 0).label("total"),
                )
                .where(CommissionLedger.end_user_id == end_user_id)
                .group_by(CommissionLedger.status)
            ).all()

        by_status = {row.status: (row.cnt, int(row.total)) for row in rows}
        return UserStats(
            referral_count=int(referrals),
            total_earnings=sum(total for _, total in by_status.values()),
            total_paid=by_status.get(CommissionStatus.PAID.value, (0, 0))[1],
            total_pending=by_status.get(CommissionStatus.PENDING.value, (0, 0))[1],
            commission_count=sum(cnt for cnt, _ in by_status.values()),
        )

    def find_plan(self, plan_id: str) -> CommissionPlan | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(CommissionPlan, plan_id)

    def assign_plan(self, end_user_id: str, plan_id: str) -> bool:
        """Set the user's plan unless it already is *plan_id*.

        Returns False when nothing changed, so a replayed trigger is a
        silent no-op.
        """
        with get_session(self.engine) as session:
            result = session.execute(
                update(EndUser)
                .where(
                    EndUser.id == end_user_id,
                    or_(
                        EndUser.commission_plan_id.is_(None),
                        EndUser.commission_plan_id != plan_id,
                    ),
                )
                .values(commission_plan_id=plan_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Reward catalog
    # ------------------------------------------------------------------
    def get_reward_item(self, item_id: str) -> RewardItem | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(RewardItem, item_id)

    def list_active_items(self, project_id: str) -> list[RewardItem]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(RewardItem)
                .where(RewardItem.project_id == project_id, RewardItem.active.is_(True))
                .order_by(RewardItem.display_order, RewardItem.name)
            ))

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------
    def atomic_redeem(
        self,
        project_id: str,
        end_user_id: str,
        item: RewardItem,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> RedeemResult:
        """Debit, decrement stock and open a PROCESSING transaction atomically.

        Any refused guard rolls the whole unit back and returns
        ``success=False`` with a readable ``error``.
        """
        cost = item.cost_points
        try:
            with get_session(self.engine) as session:
                if item.stock_quantity is not None:
                    result = session.execute(
                        update(RewardItem)
                        .where(RewardItem.id == item.id, RewardItem.stock_quantity > 0)
                        .values(stock_quantity=RewardItem.stock_quantity - 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise _RedeemRefused("This reward is out of stock")

                result = session.execute(
                    update(EndUser)
                    .where(EndUser.id == end_user_id, EndUser.loyalty_points >= cost)
                    .values(loyalty_points=EndUser.loyalty_points - cost)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise _RedeemRefused("Insufficient points")

                balance = session.scalar(
                    select(EndUser.loyalty_points).where(EndUser.id == end_user_id)
                )
                tx = RedemptionTransaction(
                    project_id=project_id,
                    end_user_id=end_user_id,
                    reward_item_id=item.id,
                    cost_at_time=cost,
                    status=RedemptionStatus.PROCESSING.value,
                    webhook_retries=0,
                    metadata_=metadata,
                )
                session.add(tx)
                session.flush()
                session.refresh(tx)
                session.add(LoyaltyLedger(
                    project_id=project_id,
                    end_user_id=end_user_id,
                    amount=-cost,
                    balance=balance,
                    type=LedgerEntryType.REDEEM.value,
                    reference_type=REDEMPTION_REFERENCE,
                    reference_id=tx.id,
                    description=f"Redeemed {item.name}",
                ))
        except _RedeemRefused as exc:
            logger.info("Redeem of %s by %s refused: %s", item.id, end_user_id, exc)
            return RedeemResult(success=False, error=str(exc))
        return RedeemResult(success=True, transaction=tx, balance=balance)

    def get_redemption(self, transaction_id: str) -> RedemptionTransaction | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(RedemptionTransaction, transaction_id)

    def list_redemptions(
        self,
        project_id: str,
        *,
        status: str | None = None,
        end_user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RedemptionTransaction]:
        stmt = select(RedemptionTransaction).where(
            RedemptionTransaction.project_id == project_id
        )
        if status is not None:
            stmt = stmt.where(RedemptionTransaction.status == status)
        if end_user_id is not None:
            stmt = stmt.where(RedemptionTransaction.end_user_id == end_user_id)
        stmt = stmt.order_by(RedemptionTransaction.created_at.desc()).offset(offset).limit(limit)
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(stmt))

    def redemption_stats(self, project_id: str) -> dict[str, int]:
        """Counts per status plus ``total``."""
        with Session(self.engine) as session:
            rows = session.execute(
                select(RedemptionTransaction.status, func.count().label("cnt"))
                .where(RedemptionTransaction.project_id == project_id)
                .group_by(RedemptionTransaction.status)
            ).all()
        counts = {row.status: row.cnt for row in rows}
        return {
            "total": sum(counts.values()),
            "completed": counts.get(RedemptionStatus.COMPLETED.value, 0),
            "processing": counts.get(RedemptionStatus.PROCESSING.value, 0),
            "failed": counts.get(RedemptionStatus.FAILED.value, 0),
        }

    def _transition(
        self, transaction_id: str, values: dict[str, Any],
    ) -> RedemptionTransaction | None:
        """Apply *values* unless the transaction is already COMPLETED."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(RedemptionTransaction)
                .where(
                    RedemptionTransaction.id == transaction_id,
                    RedemptionTransaction.status != RedemptionStatus.COMPLETED.value,
                )
                .values(**values, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return session.get(RedemptionTransaction, transaction_id)

    def mark_completed(
        self, transaction_id: str, fulfillment_data: dict[str, Any] | None = None,
    ) -> RedemptionTransaction | None:
        """COMPLETED with *fulfillment_data*; None if already COMPLETED or missing."""
        return self._transition(transaction_id, {
            "status": RedemptionStatus.COMPLETED.value,
            "fulfillment_data": fulfillment_data,
            "fulfilled_at": utcnow(),
            "error_message": None,
            "lease_until": None,
        })

    def mark_failed(
        self, transaction_id: str, error_message: str,
    ) -> RedemptionTransaction | None:
        """FAILED with *error_message*; None if already COMPLETED or missing."""
        return self._transition(transaction_id, {
            "status": RedemptionStatus.FAILED.value,
            "error_message": error_message,
            "lease_until": None,
        })

    def claim_fulfillment(
        self,
        transaction_id: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """Take exclusive ownership of a PROCESSING transaction.

        Succeeds only when no other worker holds an unexpired lease.  The
        caller must not deliver anything when this returns False.
        """
        now = now or utcnow()
        with get_session(self.engine) as session:
            result = session.execute(
                update(RedemptionTransaction)
                .where(
                    RedemptionTransaction.id == transaction_id,
                    RedemptionTransaction.status == RedemptionStatus.PROCESSING.value,
                    or_(
                        RedemptionTransaction.lease_until.is_(None),
                        RedemptionTransaction.lease_until < now,
                    ),
                )
                .values(lease_until=now + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release_fulfillment(self, transaction_id: str) -> None:
        """Drop the lease so the next sweep may retry the transaction."""
        with get_session(self.engine) as session:
            session.execute(
                update(RedemptionTransaction)
                .where(RedemptionTransaction.id == transaction_id)
                .values(lease_until=None)
                .execution_options(synchronize_session=False)
            )

    def increment_webhook_retry(self, transaction_id: str) -> int:
        """Bump the persisted attempt counter; returns the new value."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(RedemptionTransaction)
                .where(RedemptionTransaction.id == transaction_id)
                .values(webhook_retries=RedemptionTransaction.webhook_retries + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Redemption {transaction_id} not found")
            return session.scalar(
                select(RedemptionTransaction.webhook_retries)
                .where(RedemptionTransaction.id == transaction_id)
            )

    def find_pending_fulfillments(
        self,
        limit: int = 50,
        max_attempts: int = MAX_WEBHOOK_ATTEMPTS,
        stale_before: datetime | None = None,
        now: datetime | None = None,
    ) -> list[RedemptionTransaction]:
        """Unclaimed PROCESSING redemptions the sweep should drive again.

        * WEBHOOK rows that still have attempts left.
        * PROMO_CODE rows created before *stale_before* (their original
          task never ran or died with its process).

        MANUAL rows wait for an operator and are never returned.
        """
        now = now or utcnow()
        stale_before = stale_before or now
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(RedemptionTransaction)
                .join(RewardItem, RewardItem.id == RedemptionTransaction.reward_item_id)
                .where(
                    RedemptionTransaction.status == RedemptionStatus.PROCESSING.value,
                    or_(
                        RedemptionTransaction.lease_until.is_(None),
                        RedemptionTransaction.lease_until < now,
                    ),
                    or_(
                        and_(
                            RewardItem.fulfillment_type == FulfillmentType.WEBHOOK.value,
                            RedemptionTransaction.webhook_retries < max_attempts,
                        ),
                        and_(
                            RewardItem.fulfillment_type == FulfillmentType.PROMO_CODE.value,
                            RedemptionTransaction.created_at < stale_before,
                        ),
                    ),
                )
                .order_by(RedemptionTransaction.created_at)
                .limit(limit)
            ))
