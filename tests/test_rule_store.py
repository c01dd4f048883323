"""
tests/test_rule_store.py — Rule Store Integration Tests
========================================================
Atomic data-layer operations against an in-memory SQLite database.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from boost.database.models import (
    CommissionLedger,
    EndUser,
    FulfillmentType,
    LoyaltyLedger,
    RedemptionStatus,
    RedemptionTransaction,
    ReferralTracking,
    RewardItem,
    StreakAction,
    StreakStatus,
    UserStreak,
)

PROJECT = "proj-1"


def _set_streak(engine, streak_id: str, **values) -> None:
    with Session(engine) as session:
        row = session.get(UserStreak, streak_id)
        for k, v in values.items():
            setattr(row, k, v)
        session.commit()


def _reload(engine, model, pk):
    with Session(engine, expire_on_commit=False) as session:
        return session.get(model, pk)


# ===========================================================================
# End users
# ===========================================================================
class TestEndUsers:
    def test_find_or_create_is_stable(self, store):
        a = store.find_or_create_end_user(PROJECT, "ext-1")
        b = store.find_or_create_end_user(PROJECT, "ext-1")
        assert a.id == b.id
        assert a.loyalty_points == 0

    def test_same_external_id_other_project_is_distinct(self, store):
        a = store.find_or_create_end_user(PROJECT, "ext-1")
        b = store.find_or_create_end_user("proj-2", "ext-1")
        assert a.id != b.id

    def test_find_missing_returns_none(self, store):
        assert store.find_end_user(PROJECT, "nobody") is None

    def test_get_by_internal_id(self, store):
        created = store.find_or_create_end_user(PROJECT, "ext-1")
        assert store.get_end_user(created.id).external_id == "ext-1"
        assert store.get_end_user("missing") is None


# ===========================================================================
# Streaks
# ===========================================================================
class TestUserStreaks:
    def test_created_with_default_freezes(self, store, make_user, make_streak_rule):
        user = make_user()
        rule = make_streak_rule(freezes=2)
        streak = store.find_or_create_user_streak(PROJECT, user.id, rule)
        assert streak.freeze_inventory == 2
        assert streak.current_count == 0
        assert streak.status == StreakStatus.INACTIVE.value
        again = store.find_or_create_user_streak(PROJECT, user.id, rule)
        assert again.id == streak.id

    def test_lookup_and_listing(self, store, make_user, make_streak_rule):
        user = make_user()
        first = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule(name="A"))
        second = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule(name="B"))
        assert store.get_user_streak(first.id).streak_rule_id == first.streak_rule_id
        assert {s.id for s in store.list_user_streaks(user.id)} == {first.id, second.id}
        assert store.list_user_streaks("someone-else") == []

    def test_apply_activity_persists_and_bumps_version(
        self, store, db_engine, make_user, make_streak_rule,
    ):
        user = make_user()
        rule = make_streak_rule()
        streak = store.find_or_create_user_streak(PROJECT, user.id, rule)

        out = store.apply_activity(streak.id, datetime(2026, 3, 10, 9, tzinfo=UTC))
        assert out.action is StreakAction.STARTED

        row = _reload(db_engine, UserStreak, streak.id)
        assert row.current_count == 1
        assert row.max_streak == 1
        assert row.last_activity_date == date(2026, 3, 10)
        assert row.status == StreakStatus.ACTIVE.value
        assert row.version == 1

    def test_same_day_does_not_write(self, store, db_engine, make_user, make_streak_rule):
        user = make_user()
        streak = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule())
        store.apply_activity(streak.id, datetime(2026, 3, 10, 9, tzinfo=UTC))
        out = store.apply_activity(streak.id, datetime(2026, 3, 10, 18, tzinfo=UTC))
        assert out.action is StreakAction.SAME_DAY
        assert _reload(db_engine, UserStreak, streak.id).version == 1

    def test_offset_applied(self, store, db_engine, make_user, make_streak_rule):
        user = make_user()
        streak = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule())
        store.apply_activity(streak.id, datetime(2026, 3, 10, 23, 30, tzinfo=UTC), 60)
        assert _reload(db_engine, UserStreak, streak.id).last_activity_date == date(2026, 3, 11)

    def test_milestone_marker_only_moves_forward(self, store, db_engine, make_user, make_streak_rule):
        user = make_user()
        streak = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule())
        assert store.advance_milestone_marker(streak.id, 7) is True
        assert store.advance_milestone_marker(streak.id, 7) is False
        assert store.advance_milestone_marker(streak.id, 3) is False
        assert _reload(db_engine, UserStreak, streak.id).last_milestone_day == 7

    def test_add_freeze_tokens(self, store, make_user, make_streak_rule):
        user = make_user()
        streak = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule(freezes=1))
        assert store.add_freeze_tokens(streak.id, 2) == 3

    def test_mark_at_risk(self, store, db_engine, make_user, make_streak_rule):
        rule = make_streak_rule()
        stale = store.find_or_create_user_streak(PROJECT, make_user("a").id, rule)
        fresh = store.find_or_create_user_streak(PROJECT, make_user("b").id, rule)
        _set_streak(db_engine, stale.id, status="active", current_count=4,
                    last_activity_date=date(2026, 3, 7))
        _set_streak(db_engine, fresh.id, status="active", current_count=4,
                    last_activity_date=date(2026, 3, 9))

        n = store.mark_at_risk_streaks(PROJECT, now=datetime(2026, 3, 10, 12, tzinfo=UTC))
        assert n == 1
        assert _reload(db_engine, UserStreak, stale.id).status == StreakStatus.AT_RISK.value
        assert _reload(db_engine, UserStreak, fresh.id).status == StreakStatus.ACTIVE.value

    def test_reset_daily_freeze_flags(self, store, db_engine, make_user, make_streak_rule):
        rule = make_streak_rule()
        old = store.find_or_create_user_streak(PROJECT, make_user("a").id, rule)
        today = store.find_or_create_user_streak(PROJECT, make_user("b").id, rule)
        _set_streak(db_engine, old.id, freeze_used_today=True, last_activity_date=date(2026, 3, 9))
        _set_streak(db_engine, today.id, freeze_used_today=True, last_activity_date=date(2026, 3, 10))

        n = store.reset_daily_freeze_flags(now=datetime(2026, 3, 10, 12, tzinfo=UTC))
        assert n == 1
        assert _reload(db_engine, UserStreak, old.id).freeze_used_today is False
        assert _reload(db_engine, UserStreak, today.id).freeze_used_today is True

    def test_history_listing_newest_first(self, store, make_user, make_streak_rule):
        user = make_user()
        streak = store.find_or_create_user_streak(PROJECT, user.id, make_streak_rule())
        store.record_streak_history(streak, "started", 1)
        store.record_streak_history(streak, "extended", 2)
        rows = store.list_streak_history(user.id)
        assert [r.action for r in rows] == ["extended", "started"]


# ===========================================================================
# Loyalty ledger
# ===========================================================================
class TestCreditLedger:
    def test_credit_updates_balance_and_journals(self, store, db_engine, make_user):
        user = make_user(points=10)
        res = store.credit_ledger(PROJECT, user.id, 50, reference_type="t", reference_id="r1")
        assert res.credited is True
        assert res.balance == 60
        with Session(db_engine) as session:
            row = session.scalar(select(LoyaltyLedger))
            assert row.amount == 50
            assert row.balance == 60

    def test_duplicate_reference_is_not_credited_twice(self, store, db_engine, make_user):
        user = make_user()
        store.credit_ledger(PROJECT, user.id, 50, reference_type="t", reference_id="r1")
        res = store.credit_ledger(PROJECT, user.id, 50, reference_type="t", reference_id="r1")
        assert res.credited is False
        assert res.balance == 50
        assert _reload(db_engine, EndUser, user.id).loyalty_points == 50

    def test_unreferenced_credits_always_apply(self, store, make_user):
        user = make_user()
        store.credit_ledger(PROJECT, user.id, 5)
        assert store.credit_ledger(PROJECT, user.id, 5).balance == 10


# ===========================================================================
# Progression
# ===========================================================================
class TestProgressionData:
    def test_compute_user_stats(self, store, db_engine, make_user):
        user = make_user()
        with Session(db_engine) as session:
            for i in range(3):
                session.add(ReferralTracking(
                    project_id=PROJECT, referrer_id=user.id, referred_external_id=f"r{i}",
                ))
            session.add(CommissionLedger(project_id=PROJECT, end_user_id=user.id,
                                         amount=1000, status="PAID"))
            session.add(CommissionLedger(project_id=PROJECT, end_user_id=user.id,
                                         amount=500, status="PENDING"))
            session.add(CommissionLedger(project_id=PROJECT, end_user_id=user.id,
                                         amount=200, status="REJECTED"))
            session.commit()

        stats = store.compute_user_stats(user.id)
        assert stats.referral_count == 3
        assert stats.total_earnings == 1700
        assert stats.total_paid == 1000
        assert stats.total_pending == 500
        assert stats.commission_count == 3
        assert stats.to_dict()["referrals"] == 3

    def test_assign_plan_only_when_different(self, store, make_user, make_plan):
        plan = make_plan()
        user = make_user()
        assert store.assign_plan(user.id, plan.id) is True
        assert store.assign_plan(user.id, plan.id) is False


# ===========================================================================
# Redemptions
# ===========================================================================
class TestAtomicRedeem:
    def test_success_debits_and_opens_transaction(self, store, db_engine, make_user, make_item):
        user = make_user(points=500)
        item = make_item(cost=200, stock=2)
        res = store.atomic_redeem(PROJECT, user.id, item)
        assert res.success is True
        assert res.balance == 300
        assert res.transaction.status == RedemptionStatus.PROCESSING.value
        assert res.transaction.cost_at_time == 200
        assert _reload(db_engine, RewardItem, item.id).stock_quantity == 1
        with Session(db_engine) as session:
            ledger = session.scalar(select(LoyaltyLedger))
            assert ledger.amount == -200
            assert ledger.type == "redeem"
            assert ledger.reference_id == res.transaction.id

    def test_insufficient_points_rolls_back_stock(self, store, db_engine, make_user, make_item):
        user = make_user(points=50)
        item = make_item(cost=200, stock=2)
        res = store.atomic_redeem(PROJECT, user.id, item)
        assert res.success is False
        assert "Insufficient" in res.error
        assert _reload(db_engine, RewardItem, item.id).stock_quantity == 2
        assert _reload(db_engine, EndUser, user.id).loyalty_points == 50
        with Session(db_engine) as session:
            assert session.scalar(select(RedemptionTransaction)) is None

    def test_out_of_stock_refused(self, store, db_engine, make_user, make_item):
        user = make_user(points=500)
        item = make_item(cost=100, stock=0)
        res = store.atomic_redeem(PROJECT, user.id, item)
        assert res.success is False
        assert _reload(db_engine, EndUser, user.id).loyalty_points == 500

    def test_unlimited_stock_untouched(self, store, db_engine, make_user, make_item):
        user = make_user(points=500)
        item = make_item(cost=100, stock=None)
        assert store.atomic_redeem(PROJECT, user.id, item).success is True
        assert _reload(db_engine, RewardItem, item.id).stock_quantity is None


class TestRedemptionTransitions:
    def _tx(self, store, make_user, make_item):
        user = make_user(points=500)
        return store.atomic_redeem(PROJECT, user.id, make_item(cost=100)).transaction

    def test_mark_completed_then_refuses_further_changes(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        done = store.mark_completed(tx.id, {"promoCode": "X"})
        assert done.status == RedemptionStatus.COMPLETED.value
        assert done.fulfillment_data == {"promoCode": "X"}
        assert done.fulfilled_at is not None
        assert store.mark_failed(tx.id, "late") is None
        assert store.mark_completed(tx.id, {}) is None

    def test_failed_can_still_complete(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        failed = store.mark_failed(tx.id, "boom")
        assert failed.status == RedemptionStatus.FAILED.value
        assert failed.error_message == "boom"
        assert store.mark_completed(tx.id, None).status == RedemptionStatus.COMPLETED.value

    def test_increment_webhook_retry(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        assert store.increment_webhook_retry(tx.id) == 1
        assert store.increment_webhook_retry(tx.id) == 2

    def test_stats(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        store.mark_failed(tx.id, "x")
        stats = store.redemption_stats(PROJECT)
        assert stats == {"total": 1, "completed": 0, "processing": 0, "failed": 1}

    def test_list_filters_by_end_user(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        other = make_user(external_id="user-2", points=500)
        store.atomic_redeem(PROJECT, other.id, make_item(cost=100))

        rows = store.list_redemptions(PROJECT, end_user_id=tx.end_user_id)
        assert [r.id for r in rows] == [tx.id]
        assert len(store.list_redemptions(PROJECT)) == 2


class TestFulfillmentClaims:
    def _tx(self, store, make_user, make_item, fulfillment=FulfillmentType.WEBHOOK):
        user = make_user(points=500)
        item = make_item(cost=100, fulfillment=fulfillment, config={"url": "https://x.test/h"})
        return store.atomic_redeem(PROJECT, user.id, item).transaction

    def test_second_claim_refused_until_lease_expires(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        now = datetime.now(UTC)
        assert store.claim_fulfillment(tx.id, 60, now=now) is True
        assert store.claim_fulfillment(tx.id, 60, now=now + timedelta(seconds=30)) is False
        assert store.claim_fulfillment(tx.id, 60, now=now + timedelta(seconds=61)) is True

    def test_release_allows_reclaim(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        assert store.claim_fulfillment(tx.id, 60)
        store.release_fulfillment(tx.id)
        assert store.claim_fulfillment(tx.id, 60)

    def test_terminal_rows_cannot_be_claimed(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        store.claim_fulfillment(tx.id, 60)
        done = store.mark_completed(tx.id, {})
        assert done.lease_until is None
        assert store.claim_fulfillment(tx.id, 60) is False

    def test_pending_excludes_claimed_and_exhausted(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item)
        assert [r.id for r in store.find_pending_fulfillments()] == [tx.id]

        store.claim_fulfillment(tx.id, 60)
        assert store.find_pending_fulfillments() == []

        store.release_fulfillment(tx.id)
        for _ in range(3):
            store.increment_webhook_retry(tx.id)
        assert store.find_pending_fulfillments(max_attempts=3) == []

    def test_pending_promo_codes_only_when_stale(self, store, make_user, make_item):
        tx = self._tx(store, make_user, make_item, fulfillment=FulfillmentType.PROMO_CODE)
        now = datetime.now(UTC)
        assert store.find_pending_fulfillments(stale_before=now - timedelta(minutes=5)) == []
        later = now + timedelta(minutes=10)
        rows = store.find_pending_fulfillments(stale_before=later - timedelta(minutes=5), now=later)
        assert [r.id for r in rows] == [tx.id]

    def test_pending_never_returns_manual(self, store, make_user, make_item):
        self._tx(store, make_user, make_item, fulfillment=FulfillmentType.MANUAL)
        later = datetime.now(UTC) + timedelta(hours=1)
        assert store.find_pending_fulfillments(stale_before=later, now=later) == []
