"""Event consumer with retry logic and consumer group management.

Reads events from the domain stream via a consumer group, deserializes
them into DomainEvent instances, and invokes a handler. A failed event is
re-queued with an incremented retry counter and backoff; after MAX_RETRIES
it is acknowledged and dropped with an error log.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.collab.events.bus import EventBus
from src.collab.events.schemas import DomainEvent

logger = structlog.get_logger(__name__)


class EventConsumer:
    """Consumer that processes domain events with retry logic.

    Args:
        bus: EventBus for reading events.
        group: Consumer group name.
        consumer_name: Unique consumer identifier within the group.
    """

    MAX_RETRIES: int = 3
    RETRY_DELAYS: list[int] = [1, 4, 16]

    def __init__(self, bus: EventBus, group: str, consumer_name: str) -> None:
        self._bus = bus
        self._group = group
        self._consumer_name = consumer_name
        self._running = False

    async def process_loop(
        self,
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Read, deserialize, handle, ack until stopped.

        Args:
            handler: Async callable that processes a single DomainEvent.
                Must raise on failure for retry to engage.
        """
        self._running = True
        logger.info(
            "consumer_started",
            stream=self._bus.stream_key(),
            group=self._group,
            consumer=self._consumer_name,
        )

        while self._running:
            messages = await self._bus.subscribe(self._group, self._consumer_name)
            for _stream_key, stream_messages in messages or []:
                for message_id, raw_data in stream_messages:
                    await self.process_message(message_id, raw_data, handler)

    async def process_message(
        self,
        message_id: str,
        raw_data: dict[str, str],
        handler: Callable[[DomainEvent], Awaitable[None]],
    ) -> None:
        """Handle one stream entry, acking it whatever the outcome.

        On failure below MAX_RETRIES the entry is re-added with
        ``_retry_count`` incremented after a backoff delay.
        """
        retry_count = int(raw_data.get("_retry_count", "0"))

        try:
            event = DomainEvent.from_stream_dict(raw_data)
            await handler(event)
            await self._bus.ack(self._group, message_id)
            logger.debug(
                "event_processed",
                event_id=event.event_id,
                event_type=event.event_type.value,
                message_id=message_id,
            )
        except Exception as exc:
            logger.warning(
                "event_processing_failed",
                message_id=message_id,
                retry_count=retry_count,
                error=str(exc),
            )

            if retry_count >= self.MAX_RETRIES:
                await self._bus.ack(self._group, message_id)
                logger.error(
                    "event_dropped",
                    message_id=message_id,
                    event_type=raw_data.get("event_type"),
                    retry_count=retry_count,
                    error=str(exc),
                )
                return

            delay = self.RETRY_DELAYS[min(retry_count, len(self.RETRY_DELAYS) - 1)]
            await asyncio.sleep(delay)

            retry_data = dict(raw_data)
            retry_data["_retry_count"] = str(retry_count + 1)
            await self._bus.add_raw(self._bus.stream_key(), retry_data)
            await self._bus.ack(self._group, message_id)
            logger.info(
                "event_retried",
                message_id=message_id,
                retry_count=retry_count + 1,
                delay=delay,
            )

    def stop(self) -> None:
        """Signal the processing loop to stop after current iteration."""
        self._running = False
