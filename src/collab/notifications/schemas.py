"""Pydantic v2 schemas for notifications."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class NotificationType(str, Enum):
    NEW_MESSAGE = "NEW_MESSAGE"
    MEETING_INVITATION = "MEETING_INVITATION"
    MEETING_RESCHEDULED = "MEETING_RESCHEDULED"
    MEETING_CANCELLED = "MEETING_CANCELLED"


class NotificationCreate(BaseModel):
    user_id: uuid.UUID
    type: NotificationType
    message: str
    content: str | None = None
    entity_type: str | None = None
    entity_id: uuid.UUID | None = None


class Notification(NotificationCreate):
    id: uuid.UUID
    is_read: bool = False
    created_at: datetime
