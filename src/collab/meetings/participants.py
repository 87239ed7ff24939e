"""ParticipantRoster -- who is invited to a meeting and whether they showed up.

Explicit roster edits are strict: unknown meetings, unknown users, and
duplicates are errors, and a batch add is all or nothing. The join/leave
helpers used by provider callbacks are lenient: a callback for someone who
is not on the roster is logged and ignored.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from src.collab.core.errors import NotFoundError, ValidationFailedError
from src.collab.events.bus import publish_quietly
from src.collab.events.schemas import DomainEvent, EventType
from src.collab.meetings.schemas import (
    Meeting,
    MeetingParticipant,
    ParticipantRole,
    ParticipantStatus,
    ParticipantUpdate,
)

if TYPE_CHECKING:
    from src.collab.events.bus import EventBus
    from src.collab.meetings.repository import MeetingRepository
    from src.collab.users.directory import UserDirectory

logger = structlog.get_logger(__name__)


def _is_uuid(value: str) -> bool:
    # Provider callbacks carry whatever user_id the client joined with
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        return False
    return True


class ParticipantRoster:
    """Manage meeting participants.

    Args:
        repository: MeetingRepository holding roster rows.
        users: UserDirectory used to validate user ids.
        event_bus: Optional EventBus for invitation notifications.
    """

    def __init__(
        self,
        repository: MeetingRepository,
        users: UserDirectory,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repository = repository
        self._users = users
        self._event_bus = event_bus

    async def _require_meeting(self, meeting_id: str) -> Meeting:
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    async def add_participants(
        self,
        meeting_id: str,
        user_ids: Sequence[str],
        role: ParticipantRole = ParticipantRole.PARTICIPANT,
        actor_id: str | None = None,
    ) -> list[MeetingParticipant]:
        """Invite users to a meeting.

        Repeated ids inside one request are collapsed. The whole batch is
        rejected if any user is unknown or already on the roster.

        Raises:
            NotFoundError: Meeting does not exist.
            ValidationFailedError: One or more user ids do not resolve.
            ConflictError: A user is already a participant.
        """
        meeting = await self._require_meeting(meeting_id)
        unique_ids = list(dict.fromkeys(str(uid) for uid in user_ids))

        resolved = await self._users.resolve_users(unique_ids)
        unknown = [uid for uid in unique_ids if uid not in resolved]
        if unknown:
            raise ValidationFailedError(f"Unknown user ids: {', '.join(unknown)}")

        added = await self._repository.add_participants(meeting_id, unique_ids, role)
        logger.info(
            "meeting.participants_added",
            meeting_id=meeting_id,
            count=len(added),
            role=role.value,
        )
        await publish_quietly(
            self._event_bus,
            DomainEvent(
                event_type=EventType.PARTICIPANTS_ADDED,
                actor_id=actor_id,
                data={
                    "meeting_id": meeting_id,
                    "title": meeting.title,
                    "start_time": meeting.start_time.isoformat(),
                    "participant_ids": [str(p.user_id) for p in added],
                },
            ),
        )
        return added

    async def list_participants(self, meeting_id: str) -> list[MeetingParticipant]:
        await self._require_meeting(meeting_id)
        return await self._repository.list_participants(meeting_id)

    async def update_participant(
        self, meeting_id: str, user_id: str, changes: ParticipantUpdate
    ) -> MeetingParticipant:
        participant = await self._repository.update_participant(
            meeting_id, user_id, changes.model_dump(exclude_none=True)
        )
        if participant is None:
            raise NotFoundError(
                f"Participant {user_id} not found in meeting {meeting_id}"
            )
        return participant

    async def remove_participant(self, meeting_id: str, user_id: str) -> dict:
        removed = await self._repository.remove_participant(meeting_id, user_id)
        if not removed:
            raise NotFoundError(
                f"Participant {user_id} not found in meeting {meeting_id}"
            )
        logger.info("meeting.participant_removed", meeting_id=meeting_id, user_id=user_id)
        return {"message": f"Participant {user_id} removed from meeting {meeting_id}"}

    # ── Provider callbacks ───────────────────────────────────────────────

    async def _mark(
        self, meeting_id: str, user_id: str, status: ParticipantStatus
    ) -> MeetingParticipant | None:
        participant = None
        if _is_uuid(user_id):
            participant = await self._repository.update_participant(
                meeting_id, user_id, {"status": status}
            )
        if participant is None:
            logger.info(
                "meeting.participant_callback_ignored",
                meeting_id=meeting_id,
                user_id=user_id,
                status=status.value,
            )
        return participant

    async def mark_as_joined(
        self, meeting_id: str, user_id: str
    ) -> MeetingParticipant | None:
        return await self._mark(meeting_id, user_id, ParticipantStatus.JOINED)

    async def mark_as_left(
        self, meeting_id: str, user_id: str
    ) -> MeetingParticipant | None:
        return await self._mark(meeting_id, user_id, ParticipantStatus.LEFT)
