"""Domain event bus using Redis Streams.

Stream key pattern: events:{stream_name}
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.collab.events.schemas import DomainEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Publish and consume domain events on Redis Streams.

    Args:
        redis: Async Redis client created with ``decode_responses=True``.
        stream: Default stream name for publish/subscribe.
    """

    MAXLEN: int = 10000

    def __init__(self, redis: aioredis.Redis, stream: str = "collab") -> None:
        self._redis = redis
        self._stream = stream

    @property
    def stream(self) -> str:
        return self._stream

    def stream_key(self, stream: str | None = None) -> str:
        return f"events:{stream or self._stream}"

    async def publish(self, event: DomainEvent, stream: str | None = None) -> str:
        """Append an event to the stream with approximate trimming.

        Returns:
            Redis message ID assigned by XADD.
        """
        stream_key = self.stream_key(stream)
        message_id = await self.add_raw(stream_key, event.to_stream_dict())
        logger.debug(
            "event_published",
            stream=stream_key,
            event_type=event.event_type.value,
            event_id=event.event_id,
            message_id=message_id,
        )
        return message_id

    async def add_raw(self, stream_key: str, data: dict[str, str]) -> str:
        """XADD an already-encoded entry (used for retries)."""
        return await self._redis.xadd(
            stream_key,
            data,
            maxlen=self.MAXLEN,
            approximate=True,
        )

    async def subscribe(
        self,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new events as a consumer in a consumer group.

        Creates the consumer group if it does not already exist.
        """
        stream_key = self.stream_key()
        try:
            await self._redis.xgroup_create(stream_key, group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

        return await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream_key: ">"},
            count=count,
            block=block,
        )

    async def ack(self, group: str, message_id: str) -> None:
        """Acknowledge a processed message."""
        await self._redis.xack(self.stream_key(), group, message_id)


async def publish_quietly(bus: EventBus | None, event: DomainEvent) -> None:
    """Publish without letting delivery problems fail the caller.

    The state change has already committed when events are emitted, so a
    Redis outage only costs the downstream notification.
    """
    if bus is None:
        return
    try:
        await bus.publish(event)
    except Exception:
        logger.warning(
            "event_publish_failed",
            event_type=event.event_type.value,
            event_id=event.event_id,
            exc_info=True,
        )
