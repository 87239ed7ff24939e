"""Domain events over Redis Streams.

Services publish a DomainEvent after a state change commits; the
notification consumer reads the stream through a consumer group and turns
events into in-app notifications.

Exports:
    DomainEvent: Event model with flat stream encoding.
    EventType: Enum of emitted event kinds.
    EventBus: Publish/subscribe to the domain stream.
    EventConsumer: Consumer with retry logic and consumer group management.
"""

from __future__ import annotations

from src.collab.events.schemas import DomainEvent, EventType

__all__ = [
    "DomainEvent",
    "EventBus",
    "EventConsumer",
    "EventType",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load bus and consumer so importing schemas stays Redis-free."""
    if name == "EventBus":
        from src.collab.events.bus import EventBus

        return EventBus
    if name == "EventConsumer":
        from src.collab.events.consumer import EventConsumer

        return EventConsumer
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
