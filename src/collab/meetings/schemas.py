"""Pydantic v2 schemas for the meeting scheduling domain.

Defines the data contracts for meetings, participants, video rooms, and
provider webhook events. Time fields are timezone-aware instants; naive
input is rejected at the schema boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AwareDatetime, BaseModel, Field, field_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting."""

    SCHEDULED = "SCHEDULED"
    WAITING_ROOM = "WAITING_ROOM"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    DELETED = "DELETED"


# Meetings in these states no longer occupy the organizer's calendar.
TERMINAL_STATUSES: frozenset[MeetingStatus] = frozenset(
    {MeetingStatus.COMPLETED, MeetingStatus.CANCELLED, MeetingStatus.DELETED}
)


def reopens(current: MeetingStatus | str, target: MeetingStatus | str) -> bool:
    """True when a status change puts a closed meeting back on the calendar."""
    return (
        MeetingStatus(current) in TERMINAL_STATUSES
        and MeetingStatus(target) not in TERMINAL_STATUSES
    )


class ParticipantRole(str, Enum):
    HOST = "HOST"
    PARTICIPANT = "PARTICIPANT"
    OBSERVER = "OBSERVER"


class ParticipantStatus(str, Enum):
    INVITED = "INVITED"
    JOINED = "JOINED"
    LEFT = "LEFT"
    REJECTED = "REJECTED"


# ── Meeting Models ───────────────────────────────────────────────────────────


class MeetingCreate(BaseModel):
    """Scheduling request for a new meeting."""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    start_time: AwareDatetime
    end_time: AwareDatetime
    project_id: uuid.UUID | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "title must not be blank"
            raise ValueError(msg)
        return value


class MeetingUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    status: MeetingStatus | None = None
    project_id: uuid.UUID | None = None

    def changes(self) -> dict[str, Any]:
        """Fields the caller actually supplied.

        An explicit null only clears the optional columns; for required
        columns it is treated as "not supplied".
        """
        supplied = self.model_dump(exclude_unset=True)
        return {
            key: value
            for key, value in supplied.items()
            if value is not None or key in _CLEARABLE_FIELDS
        }

    def touches_schedule(self) -> bool:
        supplied = self.changes()
        return "start_time" in supplied or "end_time" in supplied


_CLEARABLE_FIELDS = frozenset({"description", "project_id"})


class Meeting(BaseModel):
    """A persisted meeting."""

    id: uuid.UUID
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    status: MeetingStatus = MeetingStatus.SCHEDULED
    project_id: uuid.UUID | None = None
    created_by_id: uuid.UUID
    room_url: str | None = None
    room_name: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES


# ── Participant Models ───────────────────────────────────────────────────────


class MeetingParticipant(BaseModel):
    """A user on a meeting's roster."""

    id: uuid.UUID
    meeting_id: uuid.UUID
    user_id: uuid.UUID
    role: ParticipantRole = ParticipantRole.PARTICIPANT
    status: ParticipantStatus = ParticipantStatus.INVITED
    joined_at: datetime | None = None
    left_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ParticipantsAdd(BaseModel):
    """Batch of users to invite with a shared role."""

    user_ids: list[str] = Field(min_length=1)
    role: ParticipantRole = ParticipantRole.PARTICIPANT


class ParticipantUpdate(BaseModel):
    role: ParticipantRole | None = None
    status: ParticipantStatus | None = None


# ── Video Provider Models ────────────────────────────────────────────────────


class VideoRoom(BaseModel):
    """A provisioned provider room."""

    url: str
    name: str


class WebhookParticipant(BaseModel):
    user_id: str | None = None
    user_name: str | None = None


class WebhookPayload(BaseModel):
    room: str
    participant: WebhookParticipant | None = None


class VideoWebhookEvent(BaseModel):
    """Callback delivered by the video provider."""

    type: str
    payload: WebhookPayload
    id: str | None = None
    event_ts: float | None = None
