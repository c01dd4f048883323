"""
boost.api.routes.events — Event ingestion
==========================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from boost.api.deps import ProjectId, get_dispatcher
from boost.engine.events import EventMessage, utcnow
from boost.services.dispatcher import EventDispatcher

router = APIRouter(tags=["events"])


class EventIn(BaseModel):
    event: str
    user_id: str | None = Field(default=None, alias="userId")
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None

    model_config = {"populate_by_name": True}


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    body: EventIn,
    project_id: ProjectId,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Fan an activity event out to the streak and progression handlers."""
    event = EventMessage(
        project_id=project_id,
        event=body.event,
        user_id=body.user_id,
        properties=body.properties,
        timestamp=body.timestamp or utcnow(),
    )
    report = await dispatcher.dispatch(event)
    return {
        "event": report.event,
        "handled": report.handled,
        "failed": report.failed,
    }
