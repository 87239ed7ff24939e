"""Domain event schemas published to Redis Streams.

Services emit a DomainEvent after a state change commits; consumers (the
notifier) react to it out of band. Events serialize to flat string dicts
for Redis Streams and deserialize back losslessly.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Kinds of domain events emitted by the scheduler and chat store."""

    MESSAGE_SENT = "chat.message_sent"
    PARTICIPANTS_ADDED = "meeting.participants_added"
    MEETING_RESCHEDULED = "meeting.rescheduled"
    MEETING_CANCELLED = "meeting.cancelled"


class DomainEvent(BaseModel):
    """A committed state change.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: The kind of change.
        timestamp: UTC creation time.
        actor_id: User whose request caused the change, if any.
        data: Event-specific payload (ids, titles, previews).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for XADD."""
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id or "",
            "data": json.dumps(self.data, default=str),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DomainEvent:
        """Reverse ``to_stream_dict()``."""
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=EventType(raw["event_type"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            actor_id=raw.get("actor_id") or None,
            data=json.loads(raw["data"]) if raw.get("data") else {},
        )
