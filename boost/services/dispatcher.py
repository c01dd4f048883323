"""
boost.services.dispatcher — Event Fan-out
==========================================

Routes one :class:`~boost.engine.events.EventMessage` to every interested
handler concurrently.  Handlers share nothing; a failure in one is logged
and never affects the others.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from boost.engine.events import EventMessage

logger = logging.getLogger(__name__)


class EventHandler(Protocol):
    name: str
    supported_types: frozenset[str] | None

    async def should_handle(self, event: EventMessage) -> bool: ...

    async def handle(self, event: EventMessage) -> Any: ...


@dataclass(slots=True)
class DispatchReport:
    """Which handlers ran for an event and which of them raised."""

    event: str
    handled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)


class EventDispatcher:
    def __init__(self, handlers: list[EventHandler]) -> None:
        self.handlers = list(handlers)

    async def _wants(self, handler: EventHandler, event: EventMessage) -> bool:
        if handler.supported_types is not None and event.event not in handler.supported_types:
            return False
        return await handler.should_handle(event)

    async def dispatch(self, event: EventMessage) -> DispatchReport:
        report = DispatchReport(event=event.event)
        if not event.user_id:
            logger.debug("Skipping %s without a user id", event.event)
            return report

        interested: list[EventHandler] = []
        for handler in self.handlers:
            try:
                if await self._wants(handler, event):
                    interested.append(handler)
            except Exception:
                logger.exception("%s.should_handle failed for %s", handler.name, event.event)
                report.failed.append(handler.name)

        outcomes = await asyncio.gather(
            *(h.handle(event) for h in interested), return_exceptions=True,
        )
        for handler, outcome in zip(interested, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "%s failed on %s for user %s",
                    handler.name, event.event, event.user_id,
                    exc_info=outcome,
                )
                report.failed.append(handler.name)
            else:
                report.handled.append(handler.name)
                report.results[handler.name] = outcome
        return report
