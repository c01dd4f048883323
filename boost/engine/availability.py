"""
boost.engine.availability — Reward Availability Check
======================================================

Decides whether a user may redeem a catalog item right now.  Checks run
in a fixed order and the first failure wins:

    inactive → out_of_stock → insufficient_points → missing_badge

This is an early, read-only rejection.  The authoritative stock and
balance checks happen again inside the atomic redeem.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from boost.database.models import RewardItem

REASON_INACTIVE = "inactive"
REASON_OUT_OF_STOCK = "out_of_stock"
REASON_INSUFFICIENT_POINTS = "insufficient_points"
REASON_MISSING_BADGE = "missing_badge"


@dataclass(frozen=True, slots=True)
class Availability:
    available: bool
    reason: str | None = None
    points_needed: int | None = None
    required_badge_id: str | None = None

    @property
    def message(self) -> str | None:
        return None if self.available else availability_message(self)


def check_item_availability(
    item: RewardItem, balance: int, badges: Iterable[str] = (),
) -> Availability:
    if not item.active:
        return Availability(False, REASON_INACTIVE)

    if item.stock_quantity is not None and item.stock_quantity <= 0:
        return Availability(False, REASON_OUT_OF_STOCK)

    if balance < item.cost_points:
        return Availability(
            False, REASON_INSUFFICIENT_POINTS,
            points_needed=item.cost_points - balance,
        )

    badge = item.prerequisite_badge_id
    if badge and badge not in set(badges):
        return Availability(False, REASON_MISSING_BADGE, required_badge_id=badge)

    return Availability(True)


def availability_message(availability: Availability) -> str:
    """Human-readable reason shown to the end user."""
    reason = availability.reason
    if reason == REASON_INACTIVE:
        return "This reward is no longer available"
    if reason == REASON_OUT_OF_STOCK:
        return "This reward is out of stock"
    if reason == REASON_INSUFFICIENT_POINTS:
        return f"Insufficient points. You need {availability.points_needed} more points"
    if reason == REASON_MISSING_BADGE:
        return f"This reward requires badge: {availability.required_badge_id}"
    return "Redemption not available"
