"""Notification repository -- inserts from the notifier, reads for the inbox."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.collab.notifications.models import NotificationModel
from src.collab.notifications.schemas import (
    Notification,
    NotificationCreate,
    NotificationType,
)


def _model_to_notification(model: NotificationModel) -> Notification:
    return Notification(
        id=model.id,
        user_id=model.user_id,
        type=NotificationType(model.type),
        message=model.message,
        content=model.content,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        is_read=model.is_read,
        created_at=model.created_at,
    )


class NotificationRepository:
    """Async persistence for notifications.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create_many(self, items: Sequence[NotificationCreate]) -> int:
        """Insert a batch of notifications; returns how many were written."""
        if not items:
            return 0
        async for session in self._session_factory():
            session.add_all(
                [
                    NotificationModel(
                        user_id=item.user_id,
                        type=item.type.value,
                        message=item.message,
                        content=item.content,
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                    )
                    for item in items
                ]
            )
            await session.commit()
            return len(items)
        return 0

    async def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        async for session in self._session_factory():
            stmt = select(NotificationModel).where(
                NotificationModel.user_id == uuid.UUID(user_id)
            )
            if unread_only:
                stmt = stmt.where(NotificationModel.is_read == False)  # noqa: E712
            stmt = stmt.order_by(NotificationModel.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_notification(m) for m in result.scalars().all()]
        return []

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Mark one of the user's notifications read. False if not theirs or absent."""
        async for session in self._session_factory():
            result = await session.execute(
                update(NotificationModel)
                .where(
                    NotificationModel.id == uuid.UUID(notification_id),
                    NotificationModel.user_id == uuid.UUID(user_id),
                )
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0
        return False
