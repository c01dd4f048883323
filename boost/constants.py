"""
boost.constants — Shared Constants
===================================

Event names, trigger sets and fulfillment limits used across the engine,
services and API.  Import from here instead of repeating string literals.
"""

from __future__ import annotations

from boost.database.models import StreakAction

# ---------------------------------------------------------------------------
# Emitted event names
# ---------------------------------------------------------------------------
STREAK_EVENT_BY_ACTION: dict[StreakAction, str] = {
    StreakAction.STARTED: "streak.started",
    StreakAction.EXTENDED: "streak.extended",
    StreakAction.FROZEN: "streak.frozen",
    StreakAction.BROKEN: "streak.broken",
}
STREAK_MILESTONE_EVENT = "streak.milestone_reached"
LEVELED_UP_EVENT = "user.leveled_up"
REDEMPTION_SUCCESS_EVENT = "redemption.success"

# ---------------------------------------------------------------------------
# Progression triggers
# ---------------------------------------------------------------------------
# "commission.created" is emitted after the commission ledger row exists,
# so stats computed from it always include the triggering purchase.
PROGRESSION_TRIGGER_EVENTS: frozenset[str] = frozenset({
    "user_signup",
    "referral_success",
    "commission.created",
})

# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------
MAX_WEBHOOK_ATTEMPTS = 3
DEFAULT_SIGNATURE_HEADER = "X-Signature"

# A claimed fulfillment is exclusive to its worker until the lease runs out.
FULFILLMENT_LEASE_SECONDS = 60.0
# PROMO_CODE redemptions still PROCESSING after this long are re-driven by the sweep.
FULFILLMENT_GRACE_SECONDS = 300.0

# Ledger reference types
MILESTONE_REFERENCE = "streak_milestone"
REDEMPTION_REFERENCE = "reward_redemption"
