"""
boost.worker.__main__ — Entry point for ``python -m boost.worker``
==================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (sweep interval, webhook tuning, log level).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build the rule store and redemption pipeline.
5. Run the maintenance sweep until Ctrl+C or SIGTERM.

Run with::

    uv run python -m boost.worker
"""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from boost.config import load_config
from boost.database.engine import create_db_engine, init_db
from boost.services.redemption_service import RedemptionPipeline
from boost.services.rule_store import RuleStore
from boost.worker.sweep import run_forever

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("boost")


def main() -> None:
    """Bootstrap and run the maintenance worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logging.getLogger().setLevel(cfg.log_level)
    logger.info("Config loaded — service: %s", cfg.service_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Collaborators.
    store = RuleStore(engine)
    pipeline = RedemptionPipeline(
        store,
        webhook_timeout=cfg.webhook_timeout_seconds,
        max_attempts=cfg.webhook_max_attempts,
        signature_header=cfg.webhook_signature_header,
        lease_seconds=cfg.fulfillment_lease_seconds,
        grace_seconds=cfg.fulfillment_grace_seconds,
    )

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting sweep every %.0fs…", cfg.sweep_interval_seconds)
    try:
        asyncio.run(run_forever(store, pipeline, cfg.sweep_interval_seconds))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
