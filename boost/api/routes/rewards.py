"""
boost.api.routes.rewards — Reward store, redemption and operator endpoints
===========================================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from boost.api.deps import ProjectId, get_pipeline, raise_http
from boost.database.models import RedemptionStatus, RedemptionTransaction, RewardItem
from boost.errors import BoostError
from boost.services.redemption_service import RedemptionPipeline

router = APIRouter(tags=["rewards"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RedeemRequest(BaseModel):
    user_id: str = Field(alias="userId")
    reward_item_id: str = Field(alias="rewardItemId")
    badges: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class CompleteRequest(BaseModel):
    fulfillment_data: dict[str, Any] | None = Field(default=None, alias="fulfillmentData")

    model_config = {"populate_by_name": True}


class FailRequest(BaseModel):
    error_message: str = Field(alias="errorMessage")

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _item_dict(item: RewardItem) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "sku": item.sku,
        "cost_points": item.cost_points,
        "stock_quantity": item.stock_quantity,
        "prerequisite_badge_id": item.prerequisite_badge_id,
        "fulfillment_type": item.fulfillment_type,
    }


def _tx_dict(tx: RedemptionTransaction) -> dict:
    return {
        "id": tx.id,
        "end_user_id": tx.end_user_id,
        "reward_item_id": tx.reward_item_id,
        "cost_at_time": tx.cost_at_time,
        "status": tx.status,
        "fulfillment_data": tx.fulfillment_data,
        "webhook_retries": tx.webhook_retries,
        "error_message": tx.error_message,
        "fulfilled_at": tx.fulfilled_at.isoformat() if tx.fulfilled_at else None,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


# ---------------------------------------------------------------------------
# Customer-facing
# ---------------------------------------------------------------------------
@router.get("/rewards/store/{user_id}")
async def customer_store(
    user_id: str,
    project_id: ProjectId,
    badges: str = Query("", description="Comma-separated badge ids the user holds"),
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    held = [b.strip() for b in badges.split(",") if b.strip()]
    store = await pipeline.get_customer_store(project_id, user_id, held)
    return {
        "balance": store.balance,
        "items": [
            {
                **_item_dict(entry.item),
                "available": entry.availability.available,
                "reason": entry.availability.reason,
                "message": entry.availability.message,
                "points_needed": entry.availability.points_needed,
            }
            for entry in store.items
        ],
    }


@router.get("/rewards/redemptions/{user_id}")
async def customer_redemptions(
    user_id: str,
    project_id: ProjectId,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    rows = await pipeline.list_customer_redemptions(project_id, user_id, limit, offset)
    return [_tx_dict(tx) for tx in rows]


@router.post("/rewards/redeem")
async def redeem(
    body: RedeemRequest,
    project_id: ProjectId,
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    try:
        outcome = await pipeline.redeem(
            project_id,
            body.user_id,
            body.reward_item_id,
            badges=body.badges,
            metadata=body.metadata,
        )
    except BoostError as exc:
        raise_http(exc)
    return {
        "success": True,
        "transaction": _tx_dict(outcome.transaction),
        "new_balance": outcome.new_balance,
    }


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------
@router.get("/redemptions")
async def list_redemptions(
    project_id: ProjectId,
    status: RedemptionStatus | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    rows = await pipeline.list_redemptions(
        project_id, status.value if status else None, limit, offset,
    )
    return [_tx_dict(tx) for tx in rows]


@router.get("/redemptions/stats")
async def redemption_stats(
    project_id: ProjectId,
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    return await pipeline.get_redemption_stats(project_id)


@router.get("/redemptions/{transaction_id}")
async def get_redemption(
    transaction_id: str,
    project_id: ProjectId,
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    try:
        tx = await pipeline.get_redemption(project_id, transaction_id)
    except BoostError as exc:
        raise_http(exc)
    return _tx_dict(tx)


@router.post("/redemptions/{transaction_id}/complete")
async def complete_redemption(
    transaction_id: str,
    project_id: ProjectId,
    body: CompleteRequest | None = None,
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    data = body.fulfillment_data if body else None
    try:
        tx = await pipeline.complete_redemption(project_id, transaction_id, data)
    except BoostError as exc:
        raise_http(exc)
    return _tx_dict(tx)


@router.post("/redemptions/{transaction_id}/fail")
async def fail_redemption(
    transaction_id: str,
    body: FailRequest,
    project_id: ProjectId,
    pipeline: RedemptionPipeline = Depends(get_pipeline),
):
    try:
        tx = await pipeline.fail_redemption(project_id, transaction_id, body.error_message)
    except BoostError as exc:
        raise_http(exc)
    return _tx_dict(tx)
