"""
boost.services.progression_service — Progression Evaluator
===========================================================

Re-scores a user's lifetime stats after signups, referrals and
commissions and moves them to the best commission plan they qualify for.

Evaluation is idempotent.  Stats are recomputed from the ledgers every
time, and the plan assignment itself is a conditional update.  When the
best satisfied rule already targets the user's plan nothing happens, so
replaying a trigger event
therefore never emits a second ``user.leveled_up``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from boost.constants import LEVELED_UP_EVENT, PROGRESSION_TRIGGER_EVENTS
from boost.database.engine import run_db
from boost.engine.events import EventMessage, build_envelope
from boost.engine.progression import select_best_rule

if TYPE_CHECKING:
    from boost.services.event_bus import EventBus
    from boost.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LevelUp:
    end_user_id: str
    previous_plan_id: str | None
    new_plan_id: str
    rule_id: str
    stats: dict[str, Any]


class ProgressionEvaluator:
    name = "progression"
    supported_types: frozenset[str] = PROGRESSION_TRIGGER_EVENTS

    def __init__(self, store: RuleStore, bus: EventBus) -> None:
        self.store = store
        self.bus = bus

    async def should_handle(self, event: EventMessage) -> bool:
        return bool(event.user_id) and event.event in self.supported_types

    async def handle(self, event: EventMessage) -> LevelUp | None:
        if not await self.should_handle(event):
            return None
        return await self.evaluate(event.project_id, event.user_id)

    async def evaluate(self, project_id: str, external_user_id: str) -> LevelUp | None:
        """Run one evaluation pass for a user; returns the level-up, if any."""
        end_user = await run_db(self.store.find_end_user, project_id, external_user_id)
        if end_user is None:
            logger.debug("Progression: no end user %s in project %s", external_user_id, project_id)
            return None

        rules = await run_db(self.store.find_active_progression_rules, project_id)
        if not rules:
            return None

        stats = await run_db(self.store.compute_user_stats, end_user.id)
        current_plan_id = end_user.commission_plan_id
        best = select_best_rule(rules, stats, current_plan_id)
        if best is None:
            return None

        plan = await run_db(self.store.find_plan, best.target_plan_id)
        if plan is None:
            logger.warning(
                "Progression rule %s targets missing plan %s; user %s left on %s",
                best.id, best.target_plan_id, end_user.id, current_plan_id,
            )
            return None

        changed = await run_db(self.store.assign_plan, end_user.id, plan.id)
        if not changed:
            return None

        snapshot = stats.to_dict()
        logger.info(
            "User %s leveled up %s → %s via %r (%s >= %d)",
            external_user_id, current_plan_id, plan.id, best.name,
            best.trigger_metric, best.threshold,
        )
        await self.bus.publish(build_envelope(
            project_id,
            external_user_id,
            LEVELED_UP_EVENT,
            {
                "previousPlanId": current_plan_id,
                "newPlanId": plan.id,
                "newPlanName": plan.name,
                "ruleName": best.name,
                "triggerMetric": best.trigger_metric,
                "thresholdReached": best.threshold,
                "stats": snapshot,
            },
        ))
        return LevelUp(
            end_user_id=end_user.id,
            previous_plan_id=current_plan_id,
            new_plan_id=plan.id,
            rule_id=best.id,
            stats=snapshot,
        )
