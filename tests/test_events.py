"""Tests for domain events, the Redis Streams bus, the consumer, and the notifier.

Covers:
- DomainEvent stream encoding
- EventBus xadd/xgroup/xack calls against a mocked Redis client
- publish_quietly swallowing delivery failures
- EventConsumer ack, retry re-add, and drop after MAX_RETRIES
- Notifier mapping events to notifications (actor excluded)
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ResponseError

from src.collab.events.bus import EventBus, publish_quietly
from src.collab.events.consumer import EventConsumer
from src.collab.events.schemas import DomainEvent, EventType
from src.collab.notifications.notifier import (
    NOTIFIER_GROUP,
    Notifier,
    create_notification_consumer,
)
from src.collab.notifications.schemas import NotificationType


def _message_event(sender: str, recipient: str) -> DomainEvent:
    return DomainEvent(
        event_type=EventType.MESSAGE_SENT,
        actor_id=sender,
        data={
            "conversation_id": str(uuid.uuid4()),
            "message_id": str(uuid.uuid4()),
            "sender_id": sender,
            "recipient_id": recipient,
            "preview": "hello there",
        },
    )


# ── Schema Tests ──────────────────────────────────────────────────────────


class TestDomainEvent:
    def test_defaults(self):
        event = DomainEvent(event_type=EventType.MEETING_CANCELLED)
        assert event.event_id
        assert event.version == "1.0"
        assert event.actor_id is None
        assert event.data == {}

    def test_stream_dict_is_flat_strings(self):
        event = _message_event("a", "b")
        raw = event.to_stream_dict()

        assert all(isinstance(v, str) for v in raw.values())
        assert raw["event_type"] == "chat.message_sent"

        restored = DomainEvent.from_stream_dict(raw)
        assert restored.event_id == event.event_id
        assert restored.timestamp == event.timestamp
        assert restored.data == event.data

    def test_missing_actor_decodes_to_none(self):
        raw = DomainEvent(event_type=EventType.MEETING_RESCHEDULED).to_stream_dict()
        assert raw["actor_id"] == ""
        assert DomainEvent.from_stream_dict(raw).actor_id is None


# ── EventBus Tests ────────────────────────────────────────────────────────


class TestEventBus:
    def test_stream_key_format(self):
        bus = EventBus(redis=MagicMock(), stream="collab")
        assert bus.stream_key() == "events:collab"
        assert bus.stream_key("audit") == "events:audit"

    @pytest.mark.asyncio
    async def test_publish_calls_xadd(self):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(return_value="1700000000000-0")
        bus = EventBus(redis=mock_redis)

        msg_id = await bus.publish(_message_event("a", "b"))

        assert msg_id == "1700000000000-0"
        call_args = mock_redis.xadd.call_args
        assert call_args[0][0] == "events:collab"
        assert call_args[0][1]["event_type"] == "chat.message_sent"
        assert call_args[1]["maxlen"] == EventBus.MAXLEN
        assert call_args[1]["approximate"] is True

    @pytest.mark.asyncio
    async def test_subscribe_tolerates_existing_group(self):
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(
            side_effect=ResponseError("BUSYGROUP Consumer Group name already exists")
        )
        mock_redis.xreadgroup = AsyncMock(return_value=[])
        bus = EventBus(redis=mock_redis)

        result = await bus.subscribe("notifier", "worker-1")

        assert result == []
        mock_redis.xgroup_create.assert_called_once_with(
            "events:collab", "notifier", id="0", mkstream=True
        )

    @pytest.mark.asyncio
    async def test_subscribe_propagates_other_errors(self):
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        bus = EventBus(redis=mock_redis)

        with pytest.raises(ResponseError):
            await bus.subscribe("notifier", "worker-1")

    @pytest.mark.asyncio
    async def test_ack_calls_xack(self):
        mock_redis = AsyncMock()
        bus = EventBus(redis=mock_redis)

        await bus.ack("notifier", "1234-0")

        mock_redis.xack.assert_called_once_with("events:collab", "notifier", "1234-0")


class TestPublishQuietly:
    @pytest.mark.asyncio
    async def test_no_bus_is_a_noop(self):
        await publish_quietly(None, _message_event("a", "b"))

    @pytest.mark.asyncio
    async def test_redis_failure_is_swallowed(self):
        bus = MagicMock()
        bus.publish = AsyncMock(side_effect=ConnectionError("redis down"))

        await publish_quietly(bus, _message_event("a", "b"))

        bus.publish.assert_awaited_once()


# ── EventConsumer Tests ──────────────────────────────────────────────────


class TestEventConsumer:
    def _consumer(self, mock_redis) -> EventConsumer:
        return EventConsumer(bus=EventBus(redis=mock_redis), group="notifier", consumer_name="w1")

    def _data(self, retry_count: int = 0) -> dict[str, str]:
        data = _message_event("a", "b").to_stream_dict()
        if retry_count:
            data["_retry_count"] = str(retry_count)
        return data

    @pytest.mark.asyncio
    async def test_success_acks(self):
        mock_redis = AsyncMock()
        handler = AsyncMock()

        await self._consumer(mock_redis).process_message("1-0", self._data(), handler)

        handler.assert_awaited_once()
        assert handler.call_args[0][0].event_type == EventType.MESSAGE_SENT
        mock_redis.xack.assert_called_once_with("events:collab", "notifier", "1-0")
        mock_redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_requeues_with_incremented_count(self):
        mock_redis = AsyncMock()
        handler = AsyncMock(side_effect=RuntimeError("db down"))

        with patch("src.collab.events.consumer.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await self._consumer(mock_redis).process_message("1-0", self._data(1), handler)

        sleep.assert_awaited_once_with(EventConsumer.RETRY_DELAYS[1])
        requeued = mock_redis.xadd.call_args[0][1]
        assert requeued["_retry_count"] == "2"
        mock_redis.xack.assert_called_once()

    @pytest.mark.asyncio
    async def test_dropped_after_max_retries(self):
        mock_redis = AsyncMock()
        handler = AsyncMock(side_effect=RuntimeError("still failing"))

        await self._consumer(mock_redis).process_message(
            "1-0", self._data(EventConsumer.MAX_RETRIES), handler
        )

        mock_redis.xadd.assert_not_called()
        mock_redis.xack.assert_called_once()

    def test_stop(self):
        consumer = self._consumer(MagicMock())
        consumer._running = True
        consumer.stop()
        assert consumer._running is False


# ── Notifier Tests ───────────────────────────────────────────────────────


class TestNotifier:
    def test_message_notifies_recipient(self):
        sender, recipient = str(uuid.uuid4()), str(uuid.uuid4())

        built = Notifier(MagicMock()).build(_message_event(sender, recipient))

        assert len(built) == 1
        assert str(built[0].user_id) == recipient
        assert built[0].type == NotificationType.NEW_MESSAGE
        assert built[0].content == "hello there"
        assert built[0].entity_type == "conversation"

    def test_meeting_event_skips_actor_and_duplicates(self):
        organizer, guest = str(uuid.uuid4()), str(uuid.uuid4())
        event = DomainEvent(
            event_type=EventType.PARTICIPANTS_ADDED,
            actor_id=organizer,
            data={
                "meeting_id": str(uuid.uuid4()),
                "title": "Planning",
                "participant_ids": [organizer, guest, guest, "not-a-uuid"],
            },
        )

        built = Notifier(MagicMock()).build(event)

        assert [str(n.user_id) for n in built] == [guest]
        assert built[0].type == NotificationType.MEETING_INVITATION
        assert built[0].message == "You have been invited to Planning"
        assert built[0].entity_type == "meeting"

    @pytest.mark.asyncio
    async def test_handle_writes_notifications(self):
        repository = MagicMock()
        repository.create_many = AsyncMock(return_value=1)
        event = DomainEvent(
            event_type=EventType.MEETING_CANCELLED,
            data={"title": "Retro", "participant_ids": [str(uuid.uuid4())]},
        )

        await Notifier(repository).handle(event)

        written = repository.create_many.call_args[0][0]
        assert written[0].message == "Retro has been cancelled"

    @pytest.mark.asyncio
    async def test_handle_skips_empty(self):
        repository = MagicMock()
        repository.create_many = AsyncMock()
        sender = str(uuid.uuid4())

        await Notifier(repository).handle(_message_event(sender, sender))

        repository.create_many.assert_not_called()

    def test_consumer_factory(self):
        consumer, loop = create_notification_consumer(
            EventBus(redis=MagicMock()), Notifier(MagicMock()), "api-1"
        )
        assert consumer._group == NOTIFIER_GROUP
        loop.close()
