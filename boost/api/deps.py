"""
boost.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated, NoReturn

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import Engine

from boost.config import BoostConfig, load_config
from boost.database.engine import create_db_engine
from boost.errors import (
    AccessDeniedError,
    BoostError,
    InvalidTransitionError,
    NotFoundError,
    RedemptionRejectedError,
    RedemptionUnavailableError,
)
from boost.services.dispatcher import EventDispatcher
from boost.services.event_bus import EventBus, build_event_bus
from boost.services.progression_service import ProgressionEvaluator
from boost.services.redemption_service import RedemptionPipeline
from boost.services.rule_store import RuleStore
from boost.services.streak_service import StreakProcessor


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> BoostConfig:
    return load_config(os.getenv("BOOST_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_store() -> RuleStore:
    return RuleStore(get_engine())


@lru_cache(maxsize=1)
def get_bus() -> EventBus:
    return build_event_bus(get_config(), get_engine())


@lru_cache(maxsize=1)
def get_pipeline() -> RedemptionPipeline:
    cfg = get_config()
    return RedemptionPipeline(
        get_store(),
        webhook_timeout=cfg.webhook_timeout_seconds,
        max_attempts=cfg.webhook_max_attempts,
        signature_header=cfg.webhook_signature_header,
        lease_seconds=cfg.fulfillment_lease_seconds,
        grace_seconds=cfg.fulfillment_grace_seconds,
    )


@lru_cache(maxsize=1)
def get_dispatcher() -> EventDispatcher:
    cfg = get_config()
    store, bus = get_store(), get_bus()
    return EventDispatcher([
        StreakProcessor(store, bus, cache_ttl_seconds=cfg.rule_cache_ttl_seconds),
        ProgressionEvaluator(store, bus),
    ])


def get_project_id(
    x_project_id: Annotated[str | None, Header()] = None,
) -> str:
    """Project scope for the request, taken from ``X-Project-Id``."""
    if not x_project_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing X-Project-Id header")
    return x_project_id


ProjectId = Annotated[str, Depends(get_project_id)]


def raise_http(exc: BoostError) -> NoReturn:
    """Translate an engine error into the matching HTTP error."""
    if isinstance(exc, NotFoundError):
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
    if isinstance(exc, AccessDeniedError):
        raise HTTPException(status.HTTP_403_FORBIDDEN, str(exc)) from exc
    if isinstance(exc, RedemptionUnavailableError):
        detail = {"reason": exc.reason, "message": str(exc)}
        if exc.points_needed is not None:
            detail["points_needed"] = exc.points_needed
        if exc.required_badge_id is not None:
            detail["required_badge_id"] = exc.required_badge_id
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail) from exc
    if isinstance(exc, RedemptionRejectedError):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc
    raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc)) from exc
