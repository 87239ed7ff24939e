"""Turn domain events into inbox notifications.

``Notifier.handle`` is the event handler passed to ``EventConsumer``. It
never notifies the actor about their own action.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog

from src.collab.events.consumer import EventConsumer
from src.collab.events.schemas import DomainEvent, EventType
from src.collab.notifications.schemas import NotificationCreate, NotificationType

if TYPE_CHECKING:
    from src.collab.events.bus import EventBus
    from src.collab.notifications.repository import NotificationRepository

logger = structlog.get_logger(__name__)

NOTIFIER_GROUP = "notifier"

_MEETING_EVENTS: dict[EventType, tuple[NotificationType, str]] = {
    EventType.PARTICIPANTS_ADDED: (
        NotificationType.MEETING_INVITATION,
        "You have been invited to {title}",
    ),
    EventType.MEETING_RESCHEDULED: (
        NotificationType.MEETING_RESCHEDULED,
        "{title} has been rescheduled",
    ),
    EventType.MEETING_CANCELLED: (
        NotificationType.MEETING_CANCELLED,
        "{title} has been cancelled",
    ),
}


def _as_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class Notifier:
    """Map events to notification rows.

    Args:
        repository: NotificationRepository (or an in-memory equivalent).
    """

    def __init__(self, repository: NotificationRepository) -> None:
        self._repository = repository

    def build(self, event: DomainEvent) -> list[NotificationCreate]:
        """Notifications an event produces; empty for unrelated events."""
        data = event.data
        if event.event_type == EventType.MESSAGE_SENT:
            recipient = _as_uuid(data.get("recipient_id"))
            if recipient is None or str(recipient) == event.actor_id:
                return []
            return [
                NotificationCreate(
                    user_id=recipient,
                    type=NotificationType.NEW_MESSAGE,
                    message="You have a new message",
                    content=data.get("preview"),
                    entity_type="conversation",
                    entity_id=_as_uuid(data.get("conversation_id")),
                )
            ]

        mapping = _MEETING_EVENTS.get(event.event_type)
        if mapping is None:
            return []
        notification_type, template = mapping
        message = template.format(title=data.get("title") or "A meeting")
        meeting_id = _as_uuid(data.get("meeting_id"))

        notifications = []
        for participant_id in dict.fromkeys(data.get("participant_ids") or []):
            user_id = _as_uuid(participant_id)
            if user_id is None or str(user_id) == event.actor_id:
                continue
            notifications.append(
                NotificationCreate(
                    user_id=user_id,
                    type=notification_type,
                    message=message,
                    content=data.get("start_time"),
                    entity_type="meeting",
                    entity_id=meeting_id,
                )
            )
        return notifications

    async def handle(self, event: DomainEvent) -> None:
        notifications = self.build(event)
        if not notifications:
            return
        written = await self._repository.create_many(notifications)
        logger.info(
            "notifications.created",
            event_type=event.event_type.value,
            event_id=event.event_id,
            count=written,
        )


def create_notification_consumer(
    bus: EventBus, notifier: Notifier, consumer_name: str
) -> tuple[EventConsumer, object]:
    """Build the consumer and the coroutine that drives it.

    Returns:
        ``(consumer, loop_coroutine)``; schedule the coroutine as a task and
        call ``consumer.stop()`` on shutdown.
    """
    consumer = EventConsumer(bus, group=NOTIFIER_GROUP, consumer_name=consumer_name)
    return consumer, consumer.process_loop(notifier.handle)
