"""
boost.services.streak_service — Streak Processor
=================================================

Consumes activity events and keeps one streak per (user, rule):

1. Look up active rules for ``(project, event name)`` through a short TTL
   cache shared by :meth:`StreakProcessor.should_handle` and
   :meth:`StreakProcessor.handle`.
2. Per rule: find-or-create the user streak, apply the activity with an
   atomic compare-and-set, journal the action, check milestones.
3. Emit ``streak.<action>`` for every state change and
   ``streak.milestone_reached`` when a milestone is crossed.

Each rule is processed independently; an exception while handling one
rule is logged and the remaining rules still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from boost.constants import MILESTONE_REFERENCE, STREAK_EVENT_BY_ACTION, STREAK_MILESTONE_EVENT
from boost.database.engine import run_db
from boost.database.models import (
    EndUser,
    LedgerEntryType,
    StreakAction,
    StreakFrequency,
    StreakRule,
    UserStreak,
)
from boost.engine.cache import DEFAULT_TTL_SECONDS, RuleLookupCache
from boost.engine.events import EventMessage, build_envelope
from boost.engine.streaks import Milestone, StreakOutcome, parse_milestones, reached_milestone

if TYPE_CHECKING:
    from boost.services.event_bus import EventBus
    from boost.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreakResult:
    """What happened to one (user, rule) streak for one event."""

    streak_rule_id: str
    user_streak_id: str
    action: StreakAction
    previous_count: int
    current_count: int
    freeze_used: bool = False
    milestone: Milestone | None = None


class StreakProcessor:
    """Event handler for streak rules.

    ``supported_types`` is None: which events matter is decided per
    project by the rules in the database.
    """

    name = "streaks"
    supported_types: frozenset[str] | None = None

    def __init__(
        self,
        store: RuleStore,
        bus: EventBus,
        cache: RuleLookupCache[list[StreakRule]] | None = None,
        cache_ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.bus = bus
        self.cache = cache if cache is not None else RuleLookupCache(cache_ttl_seconds)

    # ------------------------------------------------------------------
    # Rule lookup
    # ------------------------------------------------------------------
    async def _rules_for(self, project_id: str, event_name: str) -> list[StreakRule]:
        key = (project_id, event_name)
        rules = self.cache.get(key)
        if rules is None:
            rules = await run_db(self.store.find_streak_rules_by_event_type, project_id, event_name)
            self.cache.put(key, rules)
        return rules

    async def should_handle(self, event: EventMessage) -> bool:
        if not event.user_id:
            return False
        return bool(await self._rules_for(event.project_id, event.event))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle(self, event: EventMessage) -> list[StreakResult]:
        if not event.user_id:
            return []
        rules = await self._rules_for(event.project_id, event.event)
        if not rules:
            return []

        end_user = await run_db(
            self.store.find_or_create_end_user, event.project_id, event.user_id,
        )

        results: list[StreakResult] = []
        for rule in rules:
            if rule.frequency != StreakFrequency.DAILY.value:
                logger.warning(
                    "Streak rule %s uses unsupported frequency %r; skipped",
                    rule.id, rule.frequency,
                )
                continue
            try:
                result = await self._process_rule(event, end_user, rule)
            except Exception:
                logger.exception(
                    "Streak rule %s failed for user %s (project %s)",
                    rule.id, event.user_id, event.project_id,
                )
                continue
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Per-rule pipeline
    # ------------------------------------------------------------------
    async def _process_rule(
        self, event: EventMessage, end_user: EndUser, rule: StreakRule,
    ) -> StreakResult | None:
        streak = await run_db(
            self.store.find_or_create_user_streak, event.project_id, end_user.id, rule,
        )
        outcome: StreakOutcome = await run_db(
            self.store.apply_activity,
            streak.id,
            event.timestamp,
            rule.timezone_offset_minutes or 0,
        )
        if outcome.action is StreakAction.SAME_DAY:
            logger.debug("Same-day activity for streak %s; no change", streak.id)
            return None

        await run_db(
            self.store.record_streak_history,
            streak,
            outcome.action.value,
            outcome.new_count,
            metadata={
                "previous_count": outcome.previous_count,
                "freeze_used": outcome.freeze_used,
                "event": event.event,
            },
        )

        milestone = None
        if outcome.action in (StreakAction.STARTED, StreakAction.EXTENDED):
            milestone = await self._check_milestone(event, end_user, rule, streak, outcome)

        await self.bus.publish(build_envelope(
            event.project_id,
            event.user_id,
            STREAK_EVENT_BY_ACTION[outcome.action],
            {
                "streakRuleId": rule.id,
                "streakRuleName": rule.name,
                "previousCount": outcome.previous_count,
                "currentCount": outcome.new_count,
                "action": outcome.action.value,
                "freezeUsed": outcome.freeze_used,
            },
        ))

        if milestone is not None:
            properties = {
                "streakRuleId": rule.id,
                "streakRuleName": rule.name,
                "milestoneDay": milestone.day,
                "currentStreak": outcome.new_count,
                "rewardPoints": milestone.reward_points,
            }
            if milestone.badge_id:
                properties["badgeId"] = milestone.badge_id
            await self.bus.publish(build_envelope(
                event.project_id, event.user_id, STREAK_MILESTONE_EVENT, properties,
            ))

        return StreakResult(
            streak_rule_id=rule.id,
            user_streak_id=streak.id,
            action=outcome.action,
            previous_count=outcome.previous_count,
            current_count=outcome.new_count,
            freeze_used=outcome.freeze_used,
            milestone=milestone,
        )

    async def _check_milestone(
        self,
        event: EventMessage,
        end_user: EndUser,
        rule: StreakRule,
        streak: UserStreak,
        outcome: StreakOutcome,
    ) -> Milestone | None:
        """Credit and record the lowest newly reached milestone, if any.

        Points are credited before the marker moves.  A failed credit
        leaves the marker alone so the milestone is retried on the next
        qualifying activity; a credit that already exists for this
        milestone counts as success.
        """
        milestone = reached_milestone(
            parse_milestones(rule.milestones), outcome.new_count, streak.last_milestone_day,
        )
        if milestone is None:
            return None

        if milestone.reward_points > 0:
            try:
                await run_db(
                    self.store.credit_ledger,
                    event.project_id,
                    end_user.id,
                    milestone.reward_points,
                    entry_type=LedgerEntryType.BONUS.value,
                    reference_type=MILESTONE_REFERENCE,
                    reference_id=f"{streak.id}:{milestone.day}",
                    description=f"{rule.name}: day {milestone.day} streak milestone",
                )
            except Exception:
                logger.exception(
                    "Milestone credit failed for streak %s day %d", streak.id, milestone.day,
                )
                return None

        advanced = await run_db(self.store.advance_milestone_marker, streak.id, milestone.day)
        if not advanced:
            logger.debug("Milestone day %d already recorded for streak %s", milestone.day, streak.id)
            return None

        await run_db(
            self.store.record_streak_history,
            streak,
            StreakAction.MILESTONE.value,
            outcome.new_count,
            milestone_day=milestone.day,
            points_awarded=milestone.reward_points,
            metadata={"badge_id": milestone.badge_id} if milestone.badge_id else None,
        )
        logger.info(
            "User %s reached day %d of %r (+%d pts)",
            event.user_id, milestone.day, rule.name, milestone.reward_points,
        )
        return milestone
