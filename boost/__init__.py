"""
Boost — Loyalty & Gamification Rules Engine
============================================
Consumes user-activity events from a host application and reacts with
streaks, tier progression and reward redemption.  Rules live in the
database; every state change is emitted as an event on the bus.

Package layout::

    boost/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Event names, trigger sets, retry cap
    ├── errors.py          # Exception taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models (12 tables)
    ├── engine/
    │   ├── events.py      # EventMessage + emitted envelope
    │   ├── cache.py       # TTL rule lookup cache
    │   ├── streaks.py     # Streak day math + milestone selection
    │   ├── progression.py # Stats → best progression rule
    │   └── availability.py # Reward availability check
    ├── services/
    │   ├── rule_store.py          # Atomic data-layer operations
    │   ├── event_bus.py           # Outbox / in-memory publish
    │   ├── streak_service.py      # StreakProcessor
    │   ├── progression_service.py # ProgressionEvaluator
    │   ├── redemption_service.py  # RedemptionPipeline + fulfillment
    │   └── dispatcher.py          # Event fan-out
    ├── worker/
    │   ├── __main__.py    # python -m boost.worker
    │   └── sweep.py       # Webhook retry + streak maintenance
    └── api/
        ├── main.py        # FastAPI app
        └── routes/        # Events, rewards, redemptions
"""

__version__ = "0.1.0"
