"""
boost.engine.streaks — Streak Day Math
=======================================

Pure calculation for the streak processor.  No DB I/O happens here; the
rule store calls :func:`evaluate_activity` inside its compare-and-set
loop so the decision and the write always see the same row.

Decision table (all dates are *local* to the rule's timezone offset):

    activity day == last day           → same_day   (no change)
    activity day <  last day           → same_day   (late/out-of-order, ignored)
    first activity or last day + 1     → started / extended (count + 1)
    gap > 1 day, freeze available      → frozen     (count kept, 1 token used)
    gap > 1 day, no freeze             → broken     (count restarts at 1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from boost.database.models import StreakAction, StreakStatus

logger = logging.getLogger(__name__)

__all__ = [
    "Milestone",
    "StreakOutcome",
    "StreakState",
    "activity_date",
    "evaluate_activity",
    "parse_milestones",
    "reached_milestone",
]


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Milestone:
    day: int
    reward_points: int = 0
    badge_id: str | None = None


def parse_milestones(raw: list[dict[str, Any]] | None) -> list[Milestone]:
    """Turn the rule's JSON milestone list into sorted :class:`Milestone` objects.

    Entries without a positive ``day`` are dropped.  Accepts either
    ``reward_points`` or the camelCase ``rewardPoints`` key.
    """
    milestones: list[Milestone] = []
    for entry in raw or []:
        day = int(entry.get("day") or 0)
        if day <= 0:
            logger.warning("Ignoring milestone with invalid day: %r", entry)
            continue
        points = entry.get("reward_points", entry.get("rewardPoints", 0)) or 0
        badge = entry.get("badge_id", entry.get("badgeId"))
        milestones.append(Milestone(day=day, reward_points=int(points), badge_id=badge))
    milestones.sort(key=lambda m: m.day)
    return milestones


def reached_milestone(
    milestones: list[Milestone], new_count: int, last_milestone_day: int,
) -> Milestone | None:
    """Lowest milestone with ``last_milestone_day < day <= new_count``."""
    for m in milestones:
        if last_milestone_day < m.day <= new_count:
            return m
    return None


# ---------------------------------------------------------------------------
# Day math
# ---------------------------------------------------------------------------
def activity_date(timestamp: datetime, offset_minutes: int = 0) -> date:
    """Shift *timestamp* by the rule offset and truncate to a calendar day.

    Naive timestamps are taken to be UTC.
    """
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    local = timestamp.astimezone(UTC) + timedelta(minutes=offset_minutes)
    return local.date()


# ---------------------------------------------------------------------------
# Streak state machine
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StreakState:
    """The mutable fields of a user streak, as read from the store."""

    current_count: int = 0
    max_streak: int = 0
    last_activity_date: date | None = None
    freeze_inventory: int = 0
    freeze_used_today: bool = False
    status: str = StreakStatus.INACTIVE.value


@dataclass(frozen=True, slots=True)
class StreakOutcome:
    previous_count: int
    new_count: int
    action: StreakAction
    freeze_used: bool
    max_streak_updated: bool
    state: StreakState


def evaluate_activity(state: StreakState, day: date) -> StreakOutcome:
    """Apply one activity on local *day* to *state*.

    ``freeze_used_today`` marks that the last activity was rescued by a
    freeze; a second gap directly after a frozen day breaks the streak
    instead of chaining another freeze.  The flag clears on any normal
    activity and by the daily reset job.
    """
    prev = state.current_count
    last = state.last_activity_date

    if last is not None and day <= last:
        return StreakOutcome(prev, prev, StreakAction.SAME_DAY, False, False, state)

    freeze_used = False
    inventory = state.freeze_inventory

    if last is None or (day - last).days == 1:
        action = StreakAction.STARTED if prev == 0 else StreakAction.EXTENDED
        new_count = prev + 1
    elif inventory > 0 and not state.freeze_used_today:
        action = StreakAction.FROZEN
        new_count = prev
        freeze_used = True
        inventory -= 1
    else:
        action = StreakAction.BROKEN
        new_count = 1

    max_updated = new_count > state.max_streak
    status = StreakStatus.FROZEN if action is StreakAction.FROZEN else StreakStatus.ACTIVE

    new_state = StreakState(
        current_count=new_count,
        max_streak=new_count if max_updated else state.max_streak,
        last_activity_date=day,
        freeze_inventory=inventory,
        freeze_used_today=freeze_used,
        status=status.value,
    )
    return StreakOutcome(prev, new_count, action, freeze_used, max_updated, new_state)
