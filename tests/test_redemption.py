"""
tests/test_redemption.py — Redemption Pipeline Tests
=====================================================
Availability, atomic redeem, background fulfillment and operator
transitions.  Webhooks are served by ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import json
import random
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from boost.database.models import (
    EndUser,
    FulfillmentType,
    RedemptionStatus,
    RedemptionTransaction,
)
from boost.engine.availability import (
    REASON_INACTIVE,
    REASON_INSUFFICIENT_POINTS,
    REASON_MISSING_BADGE,
    REASON_OUT_OF_STOCK,
    check_item_availability,
)
from boost.engine.events import utcnow
from boost.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    RedemptionUnavailableError,
)
from boost.services.redemption_service import RedemptionPipeline, sign_payload

PROJECT = "proj-1"
HOOK_URL = "https://partner.example.com/hooks/redeem"


def run_async(coro):
    """Helper to run a coroutine on a fresh event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _redeem_and_drain(pipeline: RedemptionPipeline, item_id: str, user: str = "user-1", **kw):
    async def _go():
        outcome = await pipeline.redeem(PROJECT, user, item_id, **kw)
        await pipeline.drain()
        return outcome
    return run_async(_go())


def _tx(db_engine, tx_id: str) -> RedemptionTransaction:
    with Session(db_engine, expire_on_commit=False) as session:
        return session.get(RedemptionTransaction, tx_id)


def _points(db_engine, user_id: str) -> int:
    with Session(db_engine) as session:
        return session.get(EndUser, user_id).loyalty_points


class _Recorder:
    """MockTransport handler that answers with a fixed status and keeps requests."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": self.status < 300})


# ===========================================================================
# Availability (pure)
# ===========================================================================
class TestAvailability:
    def test_inactive_beats_everything(self, make_item):
        item = make_item(cost=1000, stock=0, badge="vip", active=False)
        assert check_item_availability(item, 0).reason == REASON_INACTIVE

    def test_out_of_stock_before_points(self, make_item):
        item = make_item(cost=1000, stock=0)
        assert check_item_availability(item, 0).reason == REASON_OUT_OF_STOCK

    def test_insufficient_points_reports_shortfall(self, make_item):
        item = make_item(cost=1000)
        result = check_item_availability(item, 500)
        assert result.reason == REASON_INSUFFICIENT_POINTS
        assert result.points_needed == 500
        assert result.message == "Insufficient points. You need 500 more points"

    def test_missing_badge_last(self, make_item):
        item = make_item(cost=10, badge="vip")
        result = check_item_availability(item, 50, ["other"])
        assert result.reason == REASON_MISSING_BADGE
        assert result.required_badge_id == "vip"
        assert check_item_availability(item, 50, ["vip"]).available

    def test_unlimited_stock_available(self, make_item):
        result = check_item_availability(make_item(cost=10, stock=None), 10)
        assert result.available
        assert result.message is None


# ===========================================================================
# Redeem request path
# ===========================================================================
class TestRedeem:
    def test_insufficient_points_rejected_without_writes(self, store, db_engine, make_user, make_item):
        """Cost 1000, balance 500 → insufficient_points, needs 500, nothing written."""
        user = make_user(points=500)
        item = make_item(cost=1000)
        pipeline = RedemptionPipeline(store)

        with pytest.raises(RedemptionUnavailableError) as exc_info:
            _redeem_and_drain(pipeline, item.id)

        assert exc_info.value.reason == REASON_INSUFFICIENT_POINTS
        assert exc_info.value.points_needed == 500
        assert _points(db_engine, user.id) == 500
        assert run_async(pipeline.get_redemption_stats(PROJECT))["total"] == 0

    def test_unknown_item(self, store):
        with pytest.raises(NotFoundError):
            run_async(RedemptionPipeline(store).redeem(PROJECT, "user-1", "missing"))

    def test_item_from_other_project(self, store, make_user, make_item):
        make_user(points=1000)
        item = make_item(cost=10, project_id="proj-2")
        with pytest.raises(AccessDeniedError):
            run_async(RedemptionPipeline(store).redeem(PROJECT, "user-1", item.id))

    def test_manual_stays_processing(self, store, db_engine, make_user, make_item):
        user = make_user(points=300)
        item = make_item(cost=100, stock=2)

        outcome = _redeem_and_drain(RedemptionPipeline(store), item.id, metadata={"size": "L"})

        assert outcome.new_balance == 200
        assert _points(db_engine, user.id) == 200
        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.PROCESSING.value
        assert tx.cost_at_time == 100
        assert tx.metadata_ == {"size": "L"}
        assert store.get_reward_item(item.id).stock_quantity == 1
        [entry] = store.list_ledger(user.id)
        assert (entry.amount, entry.balance, entry.reference_id) == (-100, 200, tx.id)

    def test_missing_badge_surfaces_required_badge(self, store, make_user, make_item):
        make_user(points=300)
        item = make_item(cost=100, badge="vip")
        with pytest.raises(RedemptionUnavailableError) as exc_info:
            _redeem_and_drain(RedemptionPipeline(store), item.id, badges=["gold"])
        assert exc_info.value.required_badge_id == "vip"

    def test_customer_store_lists_availability(self, store, make_user, make_item):
        make_user(points=150)
        make_item(cost=100, name="A")
        make_item(cost=500, name="B")
        make_item(cost=10, name="Hidden", active=False)

        result = run_async(RedemptionPipeline(store).get_customer_store(PROJECT, "user-1"))

        assert result.balance == 150
        by_name = {s.item.name: s.availability for s in result.items}
        assert set(by_name) == {"A", "B"}
        assert by_name["A"].available
        assert by_name["B"].points_needed == 350

    def test_customer_store_for_unknown_user(self, store, make_item):
        make_item(cost=100)
        result = run_async(RedemptionPipeline(store).get_customer_store(PROJECT, "nobody"))
        assert result.balance == 0
        assert not result.items[0].availability.available


# ===========================================================================
# Promo codes
# ===========================================================================
class TestPromoFulfillment:
    def test_promo_code_completes(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        codes = ["AAA", "BBB", "CCC"]
        item = make_item(cost=50, fulfillment=FulfillmentType.PROMO_CODE, config={"codes": codes})
        pipeline = RedemptionPipeline(store, rng=random.Random(7))

        outcome = _redeem_and_drain(pipeline, item.id)

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.COMPLETED.value
        assert tx.fulfillment_data["promoCode"] in codes
        assert "deliveredAt" in tx.fulfillment_data
        assert tx.fulfilled_at is not None

    def test_empty_pool_fails_transaction(self, store, db_engine, make_user, make_item):
        user = make_user(points=100)
        item = make_item(cost=50, fulfillment=FulfillmentType.PROMO_CODE, config={"codes": []})

        outcome = _redeem_and_drain(RedemptionPipeline(store), item.id)

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.FAILED.value
        assert tx.error_message == "No promo codes available"
        # no automatic refund
        assert _points(db_engine, user.id) == 50


# ===========================================================================
# Webhooks
# ===========================================================================
class TestWebhookFulfillment:
    def _item(self, make_item, **config):
        return make_item(
            cost=10, sku="SKU-1", fulfillment=FulfillmentType.WEBHOOK,
            config={"url": HOOK_URL, **config},
        )

    def test_success_completes_with_status(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        item = self._item(make_item)
        recorder = _Recorder(200)
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(recorder))

        outcome = _redeem_and_drain(pipeline, item.id)

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.COMPLETED.value
        assert tx.fulfillment_data["webhookStatus"] == 200

        [request] = recorder.requests
        assert str(request.url) == HOOK_URL
        body = json.loads(request.content)
        assert body["event"] == "redemption.success"
        assert body["redemptionId"] == tx.id
        assert body["rewardSku"] == "SKU-1"
        assert body["rewardId"] == item.id

    def test_signature_and_custom_headers(self, store, make_user, make_item):
        make_user(points=100)
        item = self._item(make_item, secret="s3cret", headers={"X-Partner": "acme"})
        recorder = _Recorder(202)
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(recorder))

        _redeem_and_drain(pipeline, item.id)

        [request] = recorder.requests
        assert request.headers["X-Signature"] == sign_payload(request.content, "s3cret")
        assert request.headers["X-Partner"] == "acme"
        assert request.headers["Content-Type"] == "application/json"

    def test_no_signature_without_secret(self, store, make_user, make_item):
        make_user(points=100)
        item = self._item(make_item)
        recorder = _Recorder(200)
        _redeem_and_drain(
            RedemptionPipeline(store, transport=httpx.MockTransport(recorder)), item.id,
        )
        assert "X-Signature" not in recorder.requests[0].headers

    def test_three_failures_mark_failed(self, store, db_engine, make_user, make_item):
        """HTTP 500 on every attempt → FAILED after the third."""
        make_user(points=100)
        item = self._item(make_item)
        recorder = _Recorder(500)
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(recorder))

        outcome = _redeem_and_drain(pipeline, item.id)
        tx_id = outcome.transaction.id
        assert _tx(db_engine, tx_id).status == RedemptionStatus.PROCESSING.value
        assert _tx(db_engine, tx_id).webhook_retries == 1

        assert run_async(pipeline.retry_pending_fulfillments()) == 1
        assert _tx(db_engine, tx_id).status == RedemptionStatus.PROCESSING.value

        assert run_async(pipeline.retry_pending_fulfillments()) == 1
        tx = _tx(db_engine, tx_id)
        assert tx.status == RedemptionStatus.FAILED.value
        assert tx.webhook_retries == 3
        assert "3 attempts" in tx.error_message
        assert "500" in tx.error_message

        assert len(recorder.requests) == 3
        assert run_async(pipeline.retry_pending_fulfillments()) == 0

    def test_recovery_on_retry(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        item = self._item(make_item)
        recorder = _Recorder(503)
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(recorder))

        outcome = _redeem_and_drain(pipeline, item.id)
        recorder.status = 200
        run_async(pipeline.retry_pending_fulfillments())

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.COMPLETED.value
        assert tx.error_message is None

    def test_transport_error_fails_transaction(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        item = self._item(make_item)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(refuse))
        outcome = _redeem_and_drain(pipeline, item.id)

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.FAILED.value
        assert "connection refused" in tx.error_message

    def test_missing_url_fails_transaction(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        item = make_item(cost=10, fulfillment=FulfillmentType.WEBHOOK, config={})
        outcome = _redeem_and_drain(RedemptionPipeline(store), item.id)
        assert _tx(db_engine, outcome.transaction.id).error_message == "Webhook URL not configured"


# ===========================================================================
# Claims and the retry sweep
# ===========================================================================
def _backdate(db_engine, tx_id: str, hours: int = 1) -> None:
    with Session(db_engine) as session:
        session.execute(
            update(RedemptionTransaction)
            .where(RedemptionTransaction.id == tx_id)
            .values(created_at=utcnow() - timedelta(hours=hours))
        )
        session.commit()


class TestFulfillmentClaims:
    def test_sweep_skips_webhook_in_flight(self, store, db_engine, make_user, make_item):
        """A sweep during the first POST must not send a second one."""
        make_user(points=100)
        item = make_item(
            cost=10, fulfillment=FulfillmentType.WEBHOOK, config={"url": HOOK_URL},
        )
        requests: list[httpx.Request] = []

        async def slow(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            await asyncio.sleep(0.2)
            return httpx.Response(200, json={"ok": True})

        transport = httpx.MockTransport(slow)
        api = RedemptionPipeline(store, transport=transport)
        worker = RedemptionPipeline(store, transport=transport)

        async def _go():
            outcome = await api.redeem(PROJECT, "user-1", item.id)
            await asyncio.sleep(0.05)
            await worker.retry_pending_fulfillments()
            await api.drain()
            return outcome

        outcome = run_async(_go())

        assert len(requests) == 1
        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.COMPLETED.value
        assert tx.lease_until is None

    def test_second_fulfill_of_claimed_tx_is_skipped(self, store, make_user, make_item):
        user = make_user(points=100)
        item = make_item(cost=10, fulfillment=FulfillmentType.WEBHOOK, config={"url": HOOK_URL})
        tx = store.atomic_redeem(PROJECT, user.id, item).transaction
        recorder = _Recorder(200)
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(recorder))

        assert store.claim_fulfillment(tx.id, 60)
        assert run_async(pipeline.fulfill(tx, item)) is False
        assert recorder.requests == []

    def test_retryable_failure_releases_claim(self, store, db_engine, make_user, make_item):
        make_user(points=100)
        item = make_item(cost=10, fulfillment=FulfillmentType.WEBHOOK, config={"url": HOOK_URL})
        pipeline = RedemptionPipeline(store, transport=httpx.MockTransport(_Recorder(500)))

        outcome = _redeem_and_drain(pipeline, item.id)

        tx = _tx(db_engine, outcome.transaction.id)
        assert tx.status == RedemptionStatus.PROCESSING.value
        assert tx.lease_until is None

    def test_stalled_promo_code_is_redriven(self, store, db_engine, make_user, make_item):
        user = make_user(points=100)
        item = make_item(
            cost=10, fulfillment=FulfillmentType.PROMO_CODE, config={"codes": ["ZZZ"]},
        )
        # debit committed, but the fulfillment task never ran
        tx = store.atomic_redeem(PROJECT, user.id, item).transaction
        pipeline = RedemptionPipeline(store)

        assert run_async(pipeline.retry_pending_fulfillments()) == 0

        _backdate(db_engine, tx.id)
        assert run_async(pipeline.retry_pending_fulfillments()) == 1

        done = _tx(db_engine, tx.id)
        assert done.status == RedemptionStatus.COMPLETED.value
        assert done.fulfillment_data["promoCode"] == "ZZZ"
        assert run_async(pipeline.retry_pending_fulfillments()) == 0

    def test_stalled_manual_item_is_left_alone(self, store, db_engine, make_user, make_item):
        user = make_user(points=100)
        item = make_item(cost=10)
        tx = store.atomic_redeem(PROJECT, user.id, item).transaction
        _backdate(db_engine, tx.id)

        assert run_async(RedemptionPipeline(store).retry_pending_fulfillments()) == 0
        assert _tx(db_engine, tx.id).status == RedemptionStatus.PROCESSING.value

    def test_failing_status_write_stays_inside_task(self, store, db_engine, make_user, make_item):
        user = make_user(points=100)
        item = make_item(cost=10, fulfillment=FulfillmentType.PROMO_CODE, config={"codes": []})
        tx = store.atomic_redeem(PROJECT, user.id, item).transaction
        pipeline = RedemptionPipeline(store)

        with patch.object(store, "mark_failed", side_effect=RuntimeError("db gone")) as failed:
            assert run_async(pipeline.fulfill(tx, item)) is True

        failed.assert_called_once_with(tx.id, "No promo codes available")
        assert _tx(db_engine, tx.id).status == RedemptionStatus.PROCESSING.value


# ===========================================================================
# Operator transitions
# ===========================================================================
class TestManualTransitions:
    def _processing(self, store, make_user, make_item) -> tuple[RedemptionPipeline, str]:
        make_user(points=100)
        item = make_item(cost=10)
        pipeline = RedemptionPipeline(store)
        return pipeline, _redeem_and_drain(pipeline, item.id).transaction.id

    def test_complete_then_no_further_changes(self, store, make_user, make_item):
        pipeline, tx_id = self._processing(store, make_user, make_item)

        tx = run_async(pipeline.complete_redemption(PROJECT, tx_id, {"tracking": "1Z"}))
        assert tx.status == RedemptionStatus.COMPLETED.value
        assert tx.fulfillment_data == {"tracking": "1Z"}

        with pytest.raises(InvalidTransitionError, match="already completed"):
            run_async(pipeline.complete_redemption(PROJECT, tx_id))
        with pytest.raises(InvalidTransitionError, match="Cannot fail"):
            run_async(pipeline.fail_redemption(PROJECT, tx_id, "lost in post"))

    def test_failed_can_still_be_completed(self, store, make_user, make_item):
        pipeline, tx_id = self._processing(store, make_user, make_item)

        failed = run_async(pipeline.fail_redemption(PROJECT, tx_id, "address invalid"))
        assert failed.status == RedemptionStatus.FAILED.value
        assert failed.error_message == "address invalid"

        done = run_async(pipeline.complete_redemption(PROJECT, tx_id))
        assert done.status == RedemptionStatus.COMPLETED.value
        assert done.error_message is None

    def test_other_project_denied(self, store, make_user, make_item):
        pipeline, tx_id = self._processing(store, make_user, make_item)
        with pytest.raises(AccessDeniedError):
            run_async(pipeline.get_redemption("proj-2", tx_id))

    def test_list_and_stats(self, store, make_user, make_item):
        pipeline, tx_id = self._processing(store, make_user, make_item)
        run_async(pipeline.fail_redemption(PROJECT, tx_id, "nope"))

        failed = run_async(pipeline.list_redemptions(PROJECT, status=RedemptionStatus.FAILED.value))
        assert [t.id for t in failed] == [tx_id]
        assert run_async(pipeline.list_redemptions(PROJECT, status=RedemptionStatus.COMPLETED.value)) == []
        assert run_async(pipeline.get_redemption_stats(PROJECT)) == {
            "total": 1, "completed": 0, "processing": 0, "failed": 1,
        }

    def test_customer_redemptions_only_their_own(self, store, make_user, make_item):
        pipeline, tx_id = self._processing(store, make_user, make_item)
        other = make_user(external_id="user-2", points=100)
        store.atomic_redeem(PROJECT, other.id, make_item(cost=10, name="Pin"))

        mine = run_async(pipeline.list_customer_redemptions(PROJECT, "user-1"))
        assert [t.id for t in mine] == [tx_id]
        assert run_async(pipeline.list_customer_redemptions(PROJECT, "stranger")) == []
