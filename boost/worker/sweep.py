"""
boost.worker.sweep — Periodic maintenance
==========================================

One sweep:

1. Re-dispatch unclaimed PROCESSING redemptions: webhooks with attempts
   left, and promo codes whose original task never finished.
2. Flag active streaks whose last activity is older than yesterday
   (rule-local) as ``at_risk``.
3. Clear ``freeze_used_today`` on streaks whose frozen day has passed.

A failing step is logged and the remaining steps still run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from boost.database.engine import run_db

if TYPE_CHECKING:
    from boost.services.redemption_service import RedemptionPipeline
    from boost.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    fulfillments_retried: int = 0
    streaks_at_risk: int = 0
    freeze_flags_reset: int = 0
    errors: int = 0


async def sweep_once(
    store: RuleStore, pipeline: RedemptionPipeline, batch_size: int = 50,
) -> SweepReport:
    report = SweepReport()

    try:
        report.fulfillments_retried = await pipeline.retry_pending_fulfillments(batch_size)
    except Exception:
        logger.exception("Fulfillment retry sweep failed")
        report.errors += 1

    try:
        report.streaks_at_risk = await run_db(store.mark_at_risk_streaks)
    except Exception:
        logger.exception("At-risk streak sweep failed")
        report.errors += 1

    try:
        report.freeze_flags_reset = await run_db(store.reset_daily_freeze_flags)
    except Exception:
        logger.exception("Freeze flag reset failed")
        report.errors += 1

    logger.debug("Sweep finished: %s", report)
    return report


async def run_forever(
    store: RuleStore, pipeline: RedemptionPipeline, interval_seconds: float,
) -> None:
    """Sweep every *interval_seconds* until cancelled."""
    while True:
        await sweep_once(store, pipeline)
        await asyncio.sleep(interval_seconds)
