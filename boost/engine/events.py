"""
boost.engine.events — EventMessage and emitted envelopes
=========================================================

Every inbound activity is normalized into an :class:`EventMessage` before
it reaches a processor.  Everything the engine emits is wrapped in the
same envelope shape so downstream consumers can treat derived events like
raw ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["EventMessage", "build_envelope", "utcnow"]


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# EventMessage — the inbound envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventMessage:
    """Normalized activity event from the upstream stream.

    ``user_id`` is the host application's external id, not the internal
    end-user primary key.
    """

    project_id: str
    event: str
    user_id: str | None = None
    properties: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> EventMessage:
        """Build from a camelCase wire payload."""
        ts = raw.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return cls(
            project_id=raw["projectId"],
            event=raw["event"],
            user_id=raw.get("userId"),
            properties=dict(raw.get("properties") or {}),
            timestamp=ts or utcnow(),
        )


# ---------------------------------------------------------------------------
# Emitted envelope
# ---------------------------------------------------------------------------
def build_envelope(
    project_id: str,
    user_id: str | None,
    event: str,
    properties: dict[str, Any],
) -> dict[str, Any]:
    """Return ``{projectId, userId, event, properties, timestamp, receivedAt}``."""
    now = utcnow().isoformat()
    return {
        "projectId": project_id,
        "userId": user_id,
        "event": event,
        "properties": properties,
        "timestamp": now,
        "receivedAt": now,
    }
