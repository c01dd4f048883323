"""
boost.services.redemption_service — Redemption Fulfillment Pipeline
====================================================================

Turns a point debit into a delivered reward.

Request path (:meth:`RedemptionPipeline.redeem`)::

    load item → resolve user → availability check → atomic redeem
              → schedule fulfillment (not awaited) → return balance + tx

Fulfillment path (background task per transaction)::

    PROMO_CODE  pick a code from the pool            → COMPLETED
    WEBHOOK     signed POST; 2xx                      → COMPLETED
                non-2xx below the attempt cap         → stays PROCESSING
                non-2xx at the cap                    → FAILED
    MANUAL      operator completes or fails it later  → stays PROCESSING

Every run first claims the transaction with a short lease
(:meth:`RuleStore.claim_fulfillment`).  The API task and the maintenance
sweep both go through :meth:`RedemptionPipeline.fulfill`, and only the
claim holder sends anything.

Any other error during fulfillment marks the transaction FAILED.  Nothing
raised on the fulfillment path ever reaches the redeem caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import httpx

from boost.constants import (
    DEFAULT_SIGNATURE_HEADER,
    FULFILLMENT_GRACE_SECONDS,
    FULFILLMENT_LEASE_SECONDS,
    MAX_WEBHOOK_ATTEMPTS,
    REDEMPTION_SUCCESS_EVENT,
)
from boost.database.engine import run_db
from boost.database.models import (
    FulfillmentType,
    RedemptionStatus,
    RedemptionTransaction,
    RewardItem,
)
from boost.engine.availability import Availability, check_item_availability
from boost.engine.events import utcnow
from boost.errors import (
    AccessDeniedError,
    FulfillmentError,
    InvalidTransitionError,
    NotFoundError,
    RedemptionRejectedError,
    RedemptionUnavailableError,
    WebhookRetryableError,
)

if TYPE_CHECKING:
    from boost.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True, slots=True)
class RedeemOutcome:
    transaction: RedemptionTransaction
    new_balance: int


@dataclass(frozen=True, slots=True)
class StoreItem:
    item: RewardItem
    availability: Availability


@dataclass(frozen=True, slots=True)
class CustomerStore:
    balance: int
    items: list[StoreItem] = field(default_factory=list)


class RedemptionPipeline:
    """Redeem requests, background fulfillment and operator transitions."""

    def __init__(
        self,
        store: RuleStore,
        *,
        webhook_timeout: float = 10.0,
        max_attempts: int = MAX_WEBHOOK_ATTEMPTS,
        signature_header: str = DEFAULT_SIGNATURE_HEADER,
        lease_seconds: float = FULFILLMENT_LEASE_SECONDS,
        grace_seconds: float = FULFILLMENT_GRACE_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.webhook_timeout = webhook_timeout
        self.max_attempts = max_attempts
        self.signature_header = signature_header
        self.lease_seconds = lease_seconds
        self.grace_seconds = grace_seconds
        self._transport = transport
        self._rng = rng or random.Random()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def _load_item(self, project_id: str, item_id: str) -> RewardItem:
        item = await run_db(self.store.get_reward_item, item_id)
        if item is None:
            raise NotFoundError("Reward item not found")
        if item.project_id != project_id:
            raise AccessDeniedError("Access denied")
        return item

    async def get_redemption(self, project_id: str, transaction_id: str) -> RedemptionTransaction:
        tx = await run_db(self.store.get_redemption, transaction_id)
        if tx is None:
            raise NotFoundError("Redemption not found")
        if tx.project_id != project_id:
            raise AccessDeniedError("Access denied")
        return tx

    async def list_redemptions(
        self,
        project_id: str,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RedemptionTransaction]:
        return await run_db(
            self.store.list_redemptions, project_id, status=status, limit=limit, offset=offset,
        )

    async def list_customer_redemptions(
        self,
        project_id: str,
        external_user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RedemptionTransaction]:
        """A customer's own redemption history, newest first."""
        end_user = await run_db(self.store.find_end_user, project_id, external_user_id)
        if end_user is None:
            return []
        return await run_db(
            self.store.list_redemptions, project_id,
            end_user_id=end_user.id, limit=limit, offset=offset,
        )

    async def get_redemption_stats(self, project_id: str) -> dict[str, int]:
        return await run_db(self.store.redemption_stats, project_id)

    async def get_customer_store(
        self, project_id: str, external_user_id: str, badges: Iterable[str] = (),
    ) -> CustomerStore:
        """The user's balance and every active item with its availability."""
        end_user = await run_db(self.store.find_end_user, project_id, external_user_id)
        balance = end_user.loyalty_points if end_user is not None else 0
        items = await run_db(self.store.list_active_items, project_id)
        badges = set(badges)
        return CustomerStore(
            balance=balance,
            items=[StoreItem(i, check_item_availability(i, balance, badges)) for i in items],
        )

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------
    async def redeem(
        self,
        project_id: str,
        external_user_id: str,
        reward_item_id: str,
        *,
        badges: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> RedeemOutcome:
        """Debit the user and open a PROCESSING transaction.

        Raises
        ------
        NotFoundError / AccessDeniedError
            Unknown item, or an item from another project.
        RedemptionUnavailableError
            The availability check refused; nothing was written.
        RedemptionRejectedError
            The atomic debit lost a race (stock or balance changed).
        """
        item = await self._load_item(project_id, reward_item_id)
        end_user = await run_db(self.store.find_or_create_end_user, project_id, external_user_id)

        availability = check_item_availability(item, end_user.loyalty_points, badges)
        if not availability.available:
            raise RedemptionUnavailableError(
                availability.reason,
                availability.message,
                points_needed=availability.points_needed,
                required_badge_id=availability.required_badge_id,
            )

        result = await run_db(
            self.store.atomic_redeem, project_id, end_user.id, item, metadata=metadata,
        )
        if not result.success:
            raise RedemptionRejectedError(result.error or "Redemption failed")

        logger.info(
            "User %s redeemed %r for %d pts (tx %s)",
            external_user_id, item.name, item.cost_points, result.transaction.id,
        )
        self._schedule(result.transaction, item)
        return RedeemOutcome(transaction=result.transaction, new_balance=result.balance)

    def _schedule(self, tx: RedemptionTransaction, item: RewardItem) -> None:
        task = asyncio.create_task(self.fulfill(tx, item), name=f"fulfill-{tx.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every scheduled fulfillment task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    async def fulfill(self, tx: RedemptionTransaction, item: RewardItem) -> bool:
        """Run fulfillment for *tx*; errors end up on the transaction row.

        Returns False without doing anything when another worker holds
        the claim, or the transaction is no longer PROCESSING.
        """
        try:
            claimed = await run_db(self.store.claim_fulfillment, tx.id, self.lease_seconds)
        except Exception:
            logger.exception("Could not claim redemption %s", tx.id)
            return False
        if not claimed:
            logger.debug("Redemption %s is claimed elsewhere; skipping", tx.id)
            return False

        try:
            await self._dispatch(tx, item)
        except WebhookRetryableError as exc:
            logger.warning("Redemption %s left for retry: %s", tx.id, exc)
            await self._release(tx)
        except Exception as exc:
            logger.exception("Fulfillment error for redemption %s", tx.id)
            try:
                await run_db(self.store.mark_failed, tx.id, str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("Could not mark redemption %s failed", tx.id)
        return True

    async def _release(self, tx: RedemptionTransaction) -> None:
        try:
            await run_db(self.store.release_fulfillment, tx.id)
        except Exception:
            # The lease still expires on its own.
            logger.exception("Could not release claim on redemption %s", tx.id)

    async def _dispatch(self, tx: RedemptionTransaction, item: RewardItem) -> None:
        config = item.fulfillment_config or {}
        kind = item.fulfillment_type
        if kind == FulfillmentType.PROMO_CODE.value:
            await self._fulfill_promo_code(tx, config)
        elif kind == FulfillmentType.WEBHOOK.value:
            await self._fulfill_webhook(tx, item, config)
        elif kind == FulfillmentType.MANUAL.value:
            logger.info("Manual fulfillment required for redemption %s", tx.id)
            await self._release(tx)
        else:
            raise FulfillmentError(f"Unknown fulfillment type: {kind}")

    async def _fulfill_promo_code(self, tx: RedemptionTransaction, config: dict) -> None:
        codes = config.get("codes") or []
        if not codes:
            raise FulfillmentError("No promo codes available")
        code = self._rng.choice(codes)
        await self._complete(tx, {"promoCode": code, "deliveredAt": utcnow().isoformat()})

    def build_webhook_payload(self, tx: RedemptionTransaction, item: RewardItem) -> dict[str, Any]:
        return {
            "event": REDEMPTION_SUCCESS_EVENT,
            "redemptionId": tx.id,
            "userId": tx.end_user_id,
            "rewardId": item.id,
            "rewardSku": item.sku,
            "rewardName": item.name,
            "timestamp": utcnow().isoformat(),
            "metadata": tx.metadata_,
        }

    async def _fulfill_webhook(
        self, tx: RedemptionTransaction, item: RewardItem, config: dict,
    ) -> None:
        url = config.get("url")
        if not url:
            raise FulfillmentError("Webhook URL not configured")

        body = json.dumps(self.build_webhook_payload(tx, item), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        secret = config.get("secret")
        if secret:
            headers[self.signature_header] = sign_payload(body, secret)

        async with httpx.AsyncClient(
            timeout=self.webhook_timeout, transport=self._transport,
        ) as client:
            response = await client.post(url, content=body, headers=headers)

        if response.is_success:
            await self._complete(tx, {
                "webhookStatus": response.status_code,
                "deliveredAt": utcnow().isoformat(),
            })
            return

        attempts = await run_db(self.store.increment_webhook_retry, tx.id)
        if attempts < self.max_attempts:
            raise WebhookRetryableError(response.status_code, attempts)

        message = f"Webhook failed after {attempts} attempts: status {response.status_code}"
        logger.error("Redemption %s: %s", tx.id, message)
        await run_db(self.store.mark_failed, tx.id, message)

    async def _complete(self, tx: RedemptionTransaction, data: dict[str, Any]) -> None:
        updated = await run_db(self.store.mark_completed, tx.id, data)
        if updated is None:
            logger.warning("Redemption %s was already completed; result dropped", tx.id)
        else:
            logger.info("Redemption %s completed", tx.id)

    async def retry_pending_fulfillments(self, limit: int = 50) -> int:
        """Re-dispatch unclaimed PROCESSING redemptions.

        Picks up webhook redemptions with attempts left, and promo-code
        redemptions older than ``grace_seconds`` whose task never finished.
        Returns how many transactions this call actually ran.
        """
        stale_before = utcnow() - timedelta(seconds=self.grace_seconds)
        pending = await run_db(
            self.store.find_pending_fulfillments, limit, self.max_attempts, stale_before,
        )
        retried = 0
        for tx in pending:
            item = await run_db(self.store.get_reward_item, tx.reward_item_id)
            if item is None:
                await run_db(self.store.mark_failed, tx.id, "Reward item no longer exists")
                continue
            if await self.fulfill(tx, item):
                retried += 1
        if retried:
            logger.info("Retried %d pending redemption(s)", retried)
        return retried

    # ------------------------------------------------------------------
    # Operator transitions
    # ------------------------------------------------------------------
    async def complete_redemption(
        self,
        project_id: str,
        transaction_id: str,
        fulfillment_data: dict[str, Any] | None = None,
    ) -> RedemptionTransaction:
        tx = await self.get_redemption(project_id, transaction_id)
        if tx.status == RedemptionStatus.COMPLETED.value:
            raise InvalidTransitionError("Redemption already completed")
        updated = await run_db(self.store.mark_completed, transaction_id, fulfillment_data)
        if updated is None:
            raise InvalidTransitionError("Redemption already completed")
        return updated

    async def fail_redemption(
        self, project_id: str, transaction_id: str, error_message: str,
    ) -> RedemptionTransaction:
        tx = await self.get_redemption(project_id, transaction_id)
        if tx.status == RedemptionStatus.COMPLETED.value:
            raise InvalidTransitionError("Cannot fail a completed redemption")
        updated = await run_db(self.store.mark_failed, transaction_id, error_message)
        if updated is None:
            raise InvalidTransitionError("Cannot fail a completed redemption")
        return updated
