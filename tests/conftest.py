"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from boost.database.models import (
    Base,
    CommissionPlan,
    EndUser,
    FulfillmentType,
    ProgressionRule,
    RewardItem,
    StreakRule,
)
from boost.services.event_bus import InMemoryEventBus
from boost.services.rule_store import RuleStore

PROJECT = "proj-1"

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Boost tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def store(db_engine: Engine) -> RuleStore:
    return RuleStore(db_engine)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
def _insert(engine: Engine, row):
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


@pytest.fixture
def make_user(db_engine):
    def _make(external_id: str = "user-1", points: int = 0, plan_id: str | None = None,
              project_id: str = PROJECT) -> EndUser:
        return _insert(db_engine, EndUser(
            project_id=project_id,
            external_id=external_id,
            loyalty_points=points,
            commission_plan_id=plan_id,
        ))
    return _make


@pytest.fixture
def make_streak_rule(db_engine):
    def _make(event_name: str = "daily_login", milestones: list | None = None,
              freezes: int = 0, offset: int = 0, frequency: str = "daily",
              name: str = "Daily login", project_id: str = PROJECT) -> StreakRule:
        return _insert(db_engine, StreakRule(
            project_id=project_id,
            name=name,
            event_name=event_name,
            frequency=frequency,
            milestones=milestones or [],
            default_freeze_count=freezes,
            timezone_offset_minutes=offset,
            active=True,
        ))
    return _make


@pytest.fixture
def make_plan(db_engine):
    def _make(name: str = "Silver", project_id: str = PROJECT) -> CommissionPlan:
        return _insert(db_engine, CommissionPlan(project_id=project_id, name=name, value=10))
    return _make


@pytest.fixture
def make_progression_rule(db_engine):
    def _make(target_plan_id: str, threshold: int, metric: str = "referral_count",
              name: str | None = None, project_id: str = PROJECT) -> ProgressionRule:
        return _insert(db_engine, ProgressionRule(
            project_id=project_id,
            name=name or f"{metric} >= {threshold}",
            trigger_metric=metric,
            threshold=threshold,
            target_plan_id=target_plan_id,
            active=True,
        ))
    return _make


@pytest.fixture
def make_item(db_engine):
    def _make(cost: int = 100, fulfillment: FulfillmentType = FulfillmentType.MANUAL,
              config: dict | None = None, stock: int | None = None,
              badge: str | None = None, active: bool = True, name: str = "Sticker pack",
              sku: str | None = None, project_id: str = PROJECT) -> RewardItem:
        return _insert(db_engine, RewardItem(
            project_id=project_id,
            name=name,
            sku=sku,
            cost_points=cost,
            stock_quantity=stock,
            prerequisite_badge_id=badge,
            fulfillment_type=fulfillment.value,
            fulfillment_config=config or {},
            active=active,
        ))
    return _make
