"""Shared in-memory test doubles.

Provides dict-backed stand-ins for the repositories, the user directory,
the video provider and the event bus, so service and API tests run
without PostgreSQL, Redis or the Daily API. Each mirrors the interface of
the real class it replaces, including the conflict and ordering rules the
real SQL enforces.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import pytest

from src.collab.chat.repository import next_sent_at
from src.collab.chat.schemas import Conversation, Message
from src.collab.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.collab.events.schemas import DomainEvent
from src.collab.meetings.overlap import MeetingConflictError, find_conflict
from src.collab.meetings.schemas import (
    TERMINAL_STATUSES,
    Meeting,
    MeetingCreate,
    MeetingParticipant,
    MeetingStatus,
    ParticipantRole,
    ParticipantStatus,
    VideoRoom,
    reopens,
)
from src.collab.users.directory import UserSummary


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Users ────────────────────────────────────────────────────────────────────


class InMemoryUserDirectory:
    """UserDirectory backed by a dict of active users."""

    def __init__(self) -> None:
        self.users: dict[str, UserSummary] = {}

    def add(self, name: str, email: str | None = None) -> UserSummary:
        user = UserSummary(
            id=uuid.uuid4(), name=name, email=email or f"{name.lower()}@example.com"
        )
        self.users[str(user.id)] = user
        return user

    async def resolve_user(self, user_id: str) -> UserSummary | None:
        return self.users.get(str(user_id))

    async def resolve_users(self, user_ids) -> dict[str, UserSummary]:
        return {
            str(uid): self.users[str(uid)] for uid in user_ids if str(uid) in self.users
        }


# ── Meetings ─────────────────────────────────────────────────────────────────


class InMemoryMeetingRepository:
    """MeetingRepository double with the same overlap and roster rules."""

    def __init__(self) -> None:
        self.meetings: dict[str, Meeting] = {}
        self.participants: dict[tuple[str, str], MeetingParticipant] = {}
        self.create_error: Exception | None = None

    def _active_for(self, organizer_id: str) -> list[Meeting]:
        return [
            m
            for m in self.meetings.values()
            if str(m.created_by_id) == str(organizer_id) and m.is_active
        ]

    async def create_meeting(
        self, organizer_id: str, data: MeetingCreate, room: VideoRoom
    ) -> Meeting:
        if self.create_error is not None:
            raise self.create_error
        conflict = find_conflict(self._active_for(organizer_id), data.start_time, data.end_time)
        if conflict is not None:
            raise MeetingConflictError(str(conflict.id))
        now = _now()
        meeting = Meeting(
            id=uuid.uuid4(),
            title=data.title,
            description=data.description,
            start_time=data.start_time,
            end_time=data.end_time,
            status=MeetingStatus.SCHEDULED,
            project_id=data.project_id,
            created_by_id=uuid.UUID(organizer_id),
            room_url=room.url,
            room_name=room.name,
            created_at=now,
            updated_at=now,
        )
        self.meetings[str(meeting.id)] = meeting
        return meeting

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        return self.meetings.get(str(meeting_id))

    async def list_meetings(
        self,
        created_by_id: str | None = None,
        project_id: str | None = None,
        status: MeetingStatus | None = None,
    ) -> list[Meeting]:
        result = list(self.meetings.values())
        if created_by_id:
            result = [m for m in result if str(m.created_by_id) == created_by_id]
        if project_id:
            result = [m for m in result if str(m.project_id) == project_id]
        if status:
            result = [m for m in result if m.status == status]
        return sorted(result, key=lambda m: m.start_time)

    async def list_active_meetings(self, organizer_id: str) -> list[Meeting]:
        return sorted(self._active_for(organizer_id), key=lambda m: m.start_time)

    async def find_by_room(self, room: str) -> Meeting | None:
        for meeting in self.meetings.values():
            if room in (meeting.room_name, meeting.room_url):
                return meeting
        return None

    async def update_meeting(
        self, meeting_id: str, changes: dict[str, Any], check_overlap: bool = False
    ) -> Meeting:
        current = self.meetings.get(str(meeting_id))
        if current is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        start = changes.get("start_time", current.start_time)
        end = changes.get("end_time", current.end_time)
        if end <= start:
            raise ValidationFailedError("end_time must be after start_time")
        status = MeetingStatus(changes.get("status", current.status))
        if (
            check_overlap or reopens(current.status, status)
        ) and status not in TERMINAL_STATUSES:
            conflict = find_conflict(
                self._active_for(str(current.created_by_id)), start, end, exclude_id=meeting_id
            )
            if conflict is not None:
                raise MeetingConflictError(str(conflict.id))
        updated = current.model_copy(update={**changes, "updated_at": _now()})
        self.meetings[str(meeting_id)] = updated
        return updated

    async def update_status(self, meeting_id: str, status: MeetingStatus) -> Meeting | None:
        current = self.meetings.get(str(meeting_id))
        if current is None:
            return None
        if reopens(current.status, status):
            return current
        updated = current.model_copy(update={"status": status, "updated_at": _now()})
        self.meetings[str(meeting_id)] = updated
        return updated

    async def delete_meeting(self, meeting_id: str) -> bool:
        if self.meetings.pop(str(meeting_id), None) is None:
            return False
        for key in [k for k in self.participants if k[0] == str(meeting_id)]:
            del self.participants[key]
        return True

    async def list_participants(self, meeting_id: str) -> list[MeetingParticipant]:
        return [p for (mid, _), p in self.participants.items() if mid == str(meeting_id)]

    async def get_participant(self, meeting_id: str, user_id: str) -> MeetingParticipant | None:
        return self.participants.get((str(meeting_id), str(user_id)))

    async def add_participants(
        self,
        meeting_id: str,
        user_ids: Sequence[str],
        role: ParticipantRole = ParticipantRole.PARTICIPANT,
    ) -> list[MeetingParticipant]:
        if str(meeting_id) not in self.meetings:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        for user_id in user_ids:
            if (str(meeting_id), str(user_id)) in self.participants:
                raise ConflictError(
                    f"User {user_id} is already a participant of meeting {meeting_id}"
                )
        added = []
        for user_id in user_ids:
            now = _now()
            participant = MeetingParticipant(
                id=uuid.uuid4(),
                meeting_id=uuid.UUID(meeting_id),
                user_id=uuid.UUID(user_id),
                role=role,
                status=ParticipantStatus.INVITED,
                created_at=now,
                updated_at=now,
            )
            self.participants[(str(meeting_id), str(user_id))] = participant
            added.append(participant)
        return added

    async def update_participant(
        self, meeting_id: str, user_id: str, changes: dict[str, Any]
    ) -> MeetingParticipant | None:
        key = (str(meeting_id), str(user_id))
        current = self.participants.get(key)
        if current is None:
            return None
        update: dict[str, Any] = {"updated_at": _now()}
        if changes.get("role") is not None:
            update["role"] = ParticipantRole(changes["role"])
        if changes.get("status") is not None:
            new_status = ParticipantStatus(changes["status"])
            update["status"] = new_status
            if new_status == ParticipantStatus.JOINED:
                update["joined_at"] = _now()
            elif new_status == ParticipantStatus.LEFT:
                update["left_at"] = _now()
        updated = current.model_copy(update=update)
        self.participants[key] = updated
        return updated

    async def remove_participant(self, meeting_id: str, user_id: str) -> bool:
        return self.participants.pop((str(meeting_id), str(user_id)), None) is not None


class FakeVideoProvider:
    """Records room calls; failures are injected by setting the error fields."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.create_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.delete_result = True

    async def create_room(
        self, name: str, is_private: bool = False, exp: int | None = None
    ) -> VideoRoom:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(name)
        return VideoRoom(url=f"https://collab.daily.co/{name}", name=name)

    async def delete_room(self, name: str) -> bool:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(name)
        return self.delete_result


class RecordingEventBus:
    """EventBus double that keeps published events in order."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent, stream: str | None = None) -> str:
        self.events.append(event)
        return f"{len(self.events)}-0"

    def of_type(self, event_type) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]


# ── Chat ─────────────────────────────────────────────────────────────────────


class InMemoryChatRepository:
    """ChatRepository double; ``sent_at`` assignment matches the real one."""

    def __init__(self, users: InMemoryUserDirectory) -> None:
        self._users = users
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self.conversations.get(str(conversation_id))

    async def get_or_create_conversation(
        self, user_one_id: str, user_two_id: str
    ) -> tuple[Conversation, bool]:
        for conversation in self.conversations.values():
            if (str(conversation.user_one_id), str(conversation.user_two_id)) == (
                user_one_id,
                user_two_id,
            ):
                return conversation, False
        now = _now()
        conversation = Conversation(
            id=uuid.uuid4(),
            user_one_id=uuid.UUID(user_one_id),
            user_two_id=uuid.UUID(user_two_id),
            created_at=now,
            updated_at=now,
        )
        self.conversations[str(conversation.id)] = conversation
        return conversation, True

    async def list_conversations(self, user_id: str, offset: int, limit: int):
        mine = [c for c in self.conversations.values() if c.has_participant(user_id)]
        never = datetime.min.replace(tzinfo=timezone.utc)
        mine.sort(
            key=lambda c: (c.last_message_at is not None, c.last_message_at or never, c.updated_at),
            reverse=True,
        )
        rows = []
        for conversation in mine[offset : offset + limit]:
            other = conversation.other_participant(user_id)
            unread = sum(
                1
                for m in self.messages
                if m.conversation_id == conversation.id
                and str(m.sender_id) != str(user_id)
                and m.read_at is None
            )
            rows.append((conversation, self._users.users.get(other), unread))
        return rows

    async def append_message(
        self, conversation_id: str, sender_id: str, content: str, preview: str
    ) -> Message:
        conversation = self.conversations.get(str(conversation_id))
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        sent_at = next_sent_at(conversation.last_message_at, _now())
        message = Message(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            sender_id=uuid.UUID(sender_id),
            content=content,
            sent_at=sent_at,
        )
        self.messages.append(message)
        self.conversations[str(conversation_id)] = conversation.model_copy(
            update={
                "last_message_at": sent_at,
                "last_message_preview": preview,
                "updated_at": sent_at,
            }
        )
        return message

    async def list_messages(
        self, conversation_id: str, limit: int, before: datetime | None = None
    ):
        rows = [
            m
            for m in self.messages
            if str(m.conversation_id) == str(conversation_id)
            and (before is None or m.sent_at < before)
        ]
        rows.sort(key=lambda m: m.sent_at, reverse=True)
        return [(m, self._users.users.get(str(m.sender_id))) for m in rows[:limit]]

    async def mark_read(
        self, conversation_id: str, reader_id: str, message_ids: Sequence[str] | None = None
    ) -> int:
        wanted = {str(m) for m in message_ids} if message_ids else None
        now = _now()
        updated = 0
        for index, message in enumerate(self.messages):
            if (
                str(message.conversation_id) == str(conversation_id)
                and str(message.sender_id) != str(reader_id)
                and message.read_at is None
                and (wanted is None or str(message.id) in wanted)
            ):
                self.messages[index] = message.model_copy(update={"read_at": now})
                updated += 1
        return updated


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture
def meeting_repo() -> InMemoryMeetingRepository:
    return InMemoryMeetingRepository()


@pytest.fixture
def video() -> FakeVideoProvider:
    return FakeVideoProvider()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def chat_repo(users) -> InMemoryChatRepository:
    return InMemoryChatRepository(users)
