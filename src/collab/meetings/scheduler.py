"""MeetingScheduler -- meeting lifecycle with no double-booking per organizer.

Create runs as a small saga:

1. validate the time window
2. scan the organizer's active meetings for an overlap
3. provision a video room
4. persist the meeting (the repository re-checks overlap under a lock)

If step 4 fails the room from step 3 is deleted again before the error
propagates, so a failed create never leaves a room or a row behind.

Remove is fail-closed: the provider room is deleted first and the record
is only removed once that succeeded (or the room was already gone).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import structlog

from src.collab.core.errors import NotFoundError, ValidationFailedError
from src.collab.core.monitoring import meeting_conflicts_total, meetings_scheduled_total
from src.collab.events.bus import publish_quietly
from src.collab.events.schemas import DomainEvent, EventType
from src.collab.meetings.overlap import MeetingConflictError, find_conflict
from src.collab.meetings.schemas import (
    TERMINAL_STATUSES,
    Meeting,
    MeetingCreate,
    MeetingStatus,
    MeetingUpdate,
    VideoRoom,
    reopens,
)
from src.collab.meetings.video.daily_client import generate_room_name

if TYPE_CHECKING:
    from datetime import datetime

    from src.collab.events.bus import EventBus
    from src.collab.meetings.repository import MeetingRepository

logger = structlog.get_logger(__name__)


class VideoRoomProvider(Protocol):
    """What the scheduler needs from a video provider (DailyClient)."""

    async def create_room(
        self, name: str, is_private: bool = False, exp: int | None = None
    ) -> VideoRoom: ...

    async def delete_room(self, name: str) -> bool: ...


def _validate_window(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationFailedError("end_time must be after start_time")


class MeetingScheduler:
    """Create, reschedule, and remove meetings.

    Args:
        repository: MeetingRepository (or an in-memory equivalent).
        video: Video room provider.
        room_prefix: Prefix for generated room names.
        event_bus: Optional EventBus for participant notifications.
    """

    def __init__(
        self,
        repository: MeetingRepository,
        video: VideoRoomProvider,
        room_prefix: str = "meeting",
        event_bus: EventBus | None = None,
    ) -> None:
        self._repository = repository
        self._video = video
        self._room_prefix = room_prefix
        self._event_bus = event_bus

    async def _check_slot(
        self,
        organizer_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> None:
        calendar = await self._repository.list_active_meetings(organizer_id)
        conflict = find_conflict(calendar, start, end, exclude_id=exclude_id)
        if conflict is not None:
            meeting_conflicts_total.inc()
            logger.info(
                "meeting.conflict",
                organizer_id=organizer_id,
                conflicting_id=str(conflict.id),
            )
            raise MeetingConflictError(str(conflict.id))

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, meeting_id: str) -> Meeting:
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    async def list_meetings(
        self,
        created_by_id: str | None = None,
        project_id: str | None = None,
        status: MeetingStatus | None = None,
    ) -> list[Meeting]:
        return await self._repository.list_meetings(
            created_by_id=created_by_id, project_id=project_id, status=status
        )

    # ── Create ───────────────────────────────────────────────────────────

    async def create(self, data: MeetingCreate, organizer_id: str) -> Meeting:
        """Schedule a meeting for ``organizer_id``.

        Raises:
            ValidationFailedError: end_time is not after start_time.
            MeetingConflictError: The slot overlaps an active meeting.
            VideoProviderError: Room provisioning failed; nothing persisted.
        """
        _validate_window(data.start_time, data.end_time)
        await self._check_slot(organizer_id, data.start_time, data.end_time)

        room = await self._video.create_room(
            generate_room_name(self._room_prefix), is_private=False
        )

        try:
            meeting = await self._repository.create_meeting(organizer_id, data, room)
        except Exception as exc:
            await self._release_room(room, reason=type(exc).__name__)
            if isinstance(exc, MeetingConflictError):
                meeting_conflicts_total.inc()
            raise

        meetings_scheduled_total.inc()
        logger.info(
            "meeting.created",
            meeting_id=str(meeting.id),
            organizer_id=organizer_id,
            room_name=room.name,
        )
        return meeting

    async def _release_room(self, room: VideoRoom, reason: str) -> None:
        """Compensate a provisioned room after a failed persist."""
        try:
            await self._video.delete_room(room.name)
            logger.info("meeting.room_compensated", room_name=room.name, reason=reason)
        except Exception:
            logger.error(
                "meeting.room_compensation_failed",
                room_name=room.name,
                reason=reason,
                exc_info=True,
            )

    # ── Update ───────────────────────────────────────────────────────────

    async def update(
        self, meeting_id: str, changes: MeetingUpdate, actor_id: str | None = None
    ) -> Meeting:
        """Apply a partial update.

        Schedule changes are validated against the merged start/end and
        re-checked for overlap (the meeting itself excluded). So is a status
        change that reopens a cancelled, completed or deleted meeting, since
        its slot may have been taken in the meantime. Other fields are
        applied without touching the calendar check.
        """
        current = await self.get(meeting_id)
        fields = changes.changes()
        reschedule = changes.touches_schedule()
        reopening = "status" in fields and reopens(current.status, fields["status"])
        status = MeetingStatus(fields.get("status", current.status))
        check_slot = (reschedule or reopening) and status not in TERMINAL_STATUSES

        if check_slot:
            start = fields.get("start_time", current.start_time)
            end = fields.get("end_time", current.end_time)
            _validate_window(start, end)
            await self._check_slot(
                str(current.created_by_id), start, end, exclude_id=meeting_id
            )

        try:
            meeting = await self._repository.update_meeting(
                meeting_id, fields, check_overlap=check_slot
            )
        except MeetingConflictError:
            meeting_conflicts_total.inc()
            raise

        logger.info(
            "meeting.updated",
            meeting_id=meeting_id,
            fields=sorted(fields),
            rescheduled=reschedule,
            reopened=reopening,
        )

        if reschedule and (
            meeting.start_time != current.start_time or meeting.end_time != current.end_time
        ):
            await self._notify_participants(
                EventType.MEETING_RESCHEDULED, meeting, actor_id
            )
        return meeting

    # ── Remove ───────────────────────────────────────────────────────────

    async def remove(self, meeting_id: str, actor_id: str | None = None) -> dict:
        """Delete the provider room, then the meeting.

        Raises:
            NotFoundError: Meeting does not exist.
            VideoProviderError: Room deletion failed; the meeting is kept.
        """
        meeting = await self.get(meeting_id)
        participants = await self._repository.list_participants(meeting_id)

        if meeting.room_name:
            # Raises before the record is touched if the provider fails
            await self._video.delete_room(meeting.room_name)

        deleted = await self._repository.delete_meeting(meeting_id)
        if not deleted:
            raise NotFoundError(f"Meeting not found: {meeting_id}")

        logger.info("meeting.removed", meeting_id=meeting_id, room_name=meeting.room_name)
        await publish_quietly(
            self._event_bus,
            DomainEvent(
                event_type=EventType.MEETING_CANCELLED,
                actor_id=actor_id,
                data={
                    "meeting_id": meeting_id,
                    "title": meeting.title,
                    "participant_ids": [str(p.user_id) for p in participants],
                },
            ),
        )
        return {"message": f"Meeting {meeting_id} has been removed"}

    async def _notify_participants(
        self, event_type: EventType, meeting: Meeting, actor_id: str | None
    ) -> None:
        participants = await self._repository.list_participants(str(meeting.id))
        await publish_quietly(
            self._event_bus,
            DomainEvent(
                event_type=event_type,
                actor_id=actor_id,
                data={
                    "meeting_id": str(meeting.id),
                    "title": meeting.title,
                    "start_time": meeting.start_time.isoformat(),
                    "end_time": meeting.end_time.isoformat(),
                    "participant_ids": [str(p.user_id) for p in participants],
                },
            ),
        )
