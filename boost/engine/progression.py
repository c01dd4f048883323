"""
boost.engine.progression — Tier Selection
==========================================

Pure helper for the progression evaluator: given a user's lifetime stats
and the project's active rules, pick the single rule (if any) that should
move the user to a new commission plan.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol


class RuleLike(Protocol):
    id: str
    name: str
    trigger_metric: str
    threshold: int
    target_plan_id: str


@dataclass(frozen=True, slots=True)
class UserStats:
    """Lifetime metrics a progression rule can be keyed on."""

    referral_count: int = 0
    total_earnings: int = 0
    total_paid: int = 0
    total_pending: int = 0
    commission_count: int = 0

    def metric(self, name: str) -> int | None:
        """Look up a metric by rule name; None for metrics we do not track."""
        return self.to_dict().get(name)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["referrals"] = self.referral_count
        return data


def is_satisfied(rule: RuleLike, stats: UserStats) -> bool:
    value = stats.metric(rule.trigger_metric)
    return value is not None and value >= rule.threshold


def select_best_rule(
    rules: list[RuleLike], stats: UserStats, current_plan_id: str | None,
) -> RuleLike | None:
    """Highest-threshold satisfied rule, unless the user is already on its plan.

    The user's current plan is compared against the single best rule
    rather than filtered out first, so a user already on the top tier is
    never moved to a lower satisfied tier.  Ties keep the first rule in
    *rules* order, so callers pass rules sorted by priority.
    """
    best: RuleLike | None = None
    for rule in rules:
        if not is_satisfied(rule, stats):
            continue
        if best is None or rule.threshold > best.threshold:
            best = rule
    if best is None or best.target_plan_id == current_plan_id:
        return None
    return best
