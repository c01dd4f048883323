"""
boost.services.event_bus — Outbound Event Bus
==============================================

The only outbound coupling of the engine.  Processors ``await
bus.publish(envelope)`` and never learn where the envelope goes.

Backends:

* :class:`OutboxEventBus` appends to ``event_outbox`` (transactional
  outbox).  A relay reads :meth:`~OutboxEventBus.fetch_unpublished`,
  forwards the rows and calls :meth:`~OutboxEventBus.mark_published`.
  Delivery is therefore at-least-once; consumers de-duplicate.
* :class:`InMemoryEventBus` keeps envelopes in a list for local runs and
  tests.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from boost.database.engine import get_session, run_db
from boost.database.models import EventOutbox
from boost.engine.events import utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from boost.config import BoostConfig

logger = logging.getLogger(__name__)


class EventBus:
    """Publish primitive.  Subclasses implement :meth:`publish`."""

    async def publish(self, envelope: dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryEventBus(EventBus):
    def __init__(self) -> None:
        self.published: list[dict[str, Any]] = []

    async def publish(self, envelope: dict[str, Any]) -> None:
        self.published.append(envelope)
        logger.debug("Published %s for %s", envelope.get("event"), envelope.get("userId"))

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        """Published envelopes, optionally filtered by event name."""
        if name is None:
            return list(self.published)
        return [e for e in self.published if e.get("event") == name]

    def clear(self) -> None:
        self.published.clear()


class OutboxEventBus(EventBus):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _insert(self, envelope: dict[str, Any]) -> int:
        with get_session(self.engine) as session:
            row = EventOutbox(
                project_id=envelope["projectId"],
                event=envelope["event"],
                payload=envelope,
            )
            session.add(row)
            session.flush()
            return row.id

    async def publish(self, envelope: dict[str, Any]) -> None:
        row_id = await run_db(self._insert, envelope)
        logger.debug("Outbox row %d: %s", row_id, envelope.get("event"))

    def fetch_unpublished(self, limit: int = 100) -> list[EventOutbox]:
        """Oldest-first rows not yet relayed."""
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(
                select(EventOutbox)
                .where(EventOutbox.published_at.is_(None))
                .order_by(EventOutbox.id)
                .limit(limit)
            ))

    def mark_published(self, ids: list[int]) -> int:
        if not ids:
            return 0
        with get_session(self.engine) as session:
            result = session.execute(
                update(EventOutbox)
                .where(EventOutbox.id.in_(ids), EventOutbox.published_at.is_(None))
                .values(published_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


def build_event_bus(config: BoostConfig, engine: Engine | None = None) -> EventBus:
    """Pick the backend named by ``config.event_bus``."""
    if config.event_bus == "memory":
        return InMemoryEventBus()
    if engine is None:
        raise ValueError("The outbox event bus needs a database engine")
    return OutboxEventBus(engine)
