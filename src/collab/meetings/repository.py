"""Meeting repository -- async persistence for meetings and their rosters.

Provides MeetingRepository with the session_factory callable pattern.
Multi-statement writes run inside one transaction:

- create/reschedule lock the organizer's users row (SELECT ... FOR UPDATE)
  and re-check overlap in SQL before writing, so two concurrent requests
  for the same organizer cannot both pass the check.
- roster batches insert every row or none.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.collab.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.collab.meetings.models import MeetingModel, MeetingParticipantModel
from src.collab.meetings.overlap import MeetingConflictError
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
from src.collab.models.user import User

logger = structlog.get_logger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        title=model.title,
        description=model.description,
        start_time=model.start_time,
        end_time=model.end_time,
        status=MeetingStatus(model.status),
        project_id=model.project_id,
        created_by_id=model.created_by_id,
        room_url=model.room_url,
        room_name=model.room_name,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_participant(model: MeetingParticipantModel) -> MeetingParticipant:
    """Convert MeetingParticipantModel to MeetingParticipant schema."""
    return MeetingParticipant(
        id=model.id,
        meeting_id=model.meeting_id,
        user_id=model.user_id,
        role=ParticipantRole(model.role),
        status=ParticipantStatus(model.status),
        joined_at=model.joined_at,
        left_at=model.left_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _apply_participant_status(
    model: MeetingParticipantModel, new_status: ParticipantStatus
) -> None:
    """Set status and stamp the matching join/leave timestamp."""
    now = datetime.now(timezone.utc)
    model.status = new_status.value
    if new_status == ParticipantStatus.JOINED:
        model.joined_at = now
    elif new_status == ParticipantStatus.LEFT:
        model.left_at = now


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingRepository:
    """Async CRUD operations for meetings and meeting participants.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Overlap guard ────────────────────────────────────────────────────

    @staticmethod
    async def _lock_organizer(session: AsyncSession, organizer_id: uuid.UUID) -> None:
        """Serialize calendar writes for one organizer on their users row."""
        result = await session.execute(
            select(User.id).where(User.id == organizer_id).with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError(f"Organizer not found: {organizer_id}")

    @staticmethod
    async def _assert_slot_free(
        session: AsyncSession,
        organizer_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(MeetingModel.id).where(
            MeetingModel.created_by_id == organizer_id,
            MeetingModel.status.notin_(_TERMINAL_VALUES),
            MeetingModel.start_time < end,
            MeetingModel.end_time > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(MeetingModel.id != exclude_id)
        result = await session.execute(stmt.limit(1))
        conflicting = result.scalar_one_or_none()
        if conflicting is not None:
            raise MeetingConflictError(str(conflicting))

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(
        self, organizer_id: str, data: MeetingCreate, room: VideoRoom
    ) -> Meeting:
        """Insert a SCHEDULED meeting after re-checking the organizer's calendar.

        Raises:
            MeetingConflictError: Another active meeting overlaps the slot.
            NotFoundError: The organizer does not exist.
        """
        organizer = uuid.UUID(organizer_id)
        async for session in self._session_factory():
            async with session.begin():
                await self._lock_organizer(session, organizer)
                await self._assert_slot_free(
                    session, organizer, data.start_time, data.end_time
                )
                model = MeetingModel(
                    title=data.title,
                    description=data.description,
                    start_time=data.start_time,
                    end_time=data.end_time,
                    status=MeetingStatus.SCHEDULED.value,
                    project_id=data.project_id,
                    created_by_id=organizer,
                    room_url=room.url,
                    room_name=room.name,
                )
                session.add(model)
                await session.flush()
                await session.refresh(model)
            return _model_to_meeting(model)

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        """Get a meeting by ID."""
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.id == uuid.UUID(meeting_id))
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_meeting(model)

    async def list_meetings(
        self,
        created_by_id: str | None = None,
        project_id: str | None = None,
        status: MeetingStatus | None = None,
    ) -> list[Meeting]:
        """List meetings ordered by start time, optionally filtered."""
        async for session in self._session_factory():
            stmt = select(MeetingModel)
            if created_by_id:
                stmt = stmt.where(MeetingModel.created_by_id == uuid.UUID(created_by_id))
            if project_id:
                stmt = stmt.where(MeetingModel.project_id == uuid.UUID(project_id))
            if status:
                stmt = stmt.where(MeetingModel.status == status.value)
            stmt = stmt.order_by(MeetingModel.start_time.asc())
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]
        return []

    async def list_active_meetings(self, organizer_id: str) -> list[Meeting]:
        """Non-terminal meetings of one organizer, the overlap scan's input."""
        async for session in self._session_factory():
            stmt = (
                select(MeetingModel)
                .where(
                    MeetingModel.created_by_id == uuid.UUID(organizer_id),
                    MeetingModel.status.notin_(_TERMINAL_VALUES),
                )
                .order_by(MeetingModel.start_time.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]
        return []

    async def find_by_room(self, room: str) -> Meeting | None:
        """Resolve a provider room reference by exact URL or name match."""
        async for session in self._session_factory():
            stmt = select(MeetingModel).where(
                or_(MeetingModel.room_name == room, MeetingModel.room_url == room)
            )
            result = await session.execute(stmt.limit(1))
            model = result.scalar_one_or_none()
            return _model_to_meeting(model) if model else None

    async def update_meeting(
        self, meeting_id: str, changes: dict[str, Any], check_overlap: bool = False
    ) -> Meeting:
        """Apply a partial update.

        When ``check_overlap`` is set, or the change reopens a closed
        meeting, the organizer row is locked and the effective slot is
        re-checked against the organizer's other active meetings before the
        write. A meeting that stays closed is never checked.

        Raises:
            NotFoundError: Meeting does not exist.
            MeetingConflictError: The new slot overlaps another meeting.
            ValidationFailedError: Effective end is not after start.
        """
        async for session in self._session_factory():
            async with session.begin():
                result = await session.execute(
                    select(MeetingModel)
                    .where(MeetingModel.id == uuid.UUID(meeting_id))
                    .with_for_update()
                )
                model = result.scalar_one_or_none()
                if model is None:
                    raise NotFoundError(f"Meeting not found: {meeting_id}")

                start = changes.get("start_time", model.start_time)
                end = changes.get("end_time", model.end_time)
                if end <= start:
                    raise ValidationFailedError("end_time must be after start_time")

                status = MeetingStatus(changes.get("status", model.status))
                if (
                    check_overlap or reopens(model.status, status)
                ) and status not in TERMINAL_STATUSES:
                    await self._lock_organizer(session, model.created_by_id)
                    await self._assert_slot_free(
                        session, model.created_by_id, start, end, exclude_id=model.id
                    )

                for key, value in changes.items():
                    setattr(model, key, _column_value(value))
                await session.flush()
                await session.refresh(model)
            return _model_to_meeting(model)

    async def update_status(
        self, meeting_id: str, status: MeetingStatus
    ) -> Meeting | None:
        """Set a meeting's status from a provider callback.

        A closed meeting is never reopened this way; the stored meeting is
        returned unchanged. Returns None if it no longer exists.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel)
                .where(MeetingModel.id == uuid.UUID(meeting_id))
                .with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            if reopens(model.status, status):
                unchanged = _model_to_meeting(model)
                await session.rollback()
                logger.info(
                    "meeting.reopen_refused",
                    meeting_id=meeting_id,
                    status=unchanged.status.value,
                    requested=status.value,
                )
                return unchanged
            model.status = status.value
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def delete_meeting(self, meeting_id: str) -> bool:
        """Hard-delete a meeting; its roster goes with it (ON DELETE CASCADE)."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(MeetingModel).where(MeetingModel.id == uuid.UUID(meeting_id))
            )
            await session.commit()
            return result.rowcount > 0
        return False

    # ── Participants ─────────────────────────────────────────────────────

    async def list_participants(self, meeting_id: str) -> list[MeetingParticipant]:
        async for session in self._session_factory():
            stmt = (
                select(MeetingParticipantModel)
                .where(MeetingParticipantModel.meeting_id == uuid.UUID(meeting_id))
                .order_by(MeetingParticipantModel.created_at.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_participant(m) for m in result.scalars().all()]
        return []

    async def get_participant(
        self, meeting_id: str, user_id: str
    ) -> MeetingParticipant | None:
        async for session in self._session_factory():
            stmt = select(MeetingParticipantModel).where(
                MeetingParticipantModel.meeting_id == uuid.UUID(meeting_id),
                MeetingParticipantModel.user_id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_participant(model) if model else None

    async def add_participants(
        self,
        meeting_id: str,
        user_ids: Sequence[str],
        role: ParticipantRole = ParticipantRole.PARTICIPANT,
    ) -> list[MeetingParticipant]:
        """Insert one roster row per user, all or nothing.

        Raises:
            NotFoundError: Meeting does not exist.
            ConflictError: Any user is already on the roster.
        """
        meeting_uuid = uuid.UUID(meeting_id)
        user_uuids = [uuid.UUID(uid) for uid in user_ids]
        async for session in self._session_factory():
            try:
                async with session.begin():
                    # Lock the meeting so concurrent batches for it serialize
                    found = await session.execute(
                        select(MeetingModel.id)
                        .where(MeetingModel.id == meeting_uuid)
                        .with_for_update()
                    )
                    if found.scalar_one_or_none() is None:
                        raise NotFoundError(f"Meeting not found: {meeting_id}")

                    existing = await session.execute(
                        select(MeetingParticipantModel.user_id).where(
                            MeetingParticipantModel.meeting_id == meeting_uuid,
                            MeetingParticipantModel.user_id.in_(user_uuids),
                        )
                    )
                    duplicate = existing.scalars().first()
                    if duplicate is not None:
                        raise ConflictError(
                            f"User {duplicate} is already a participant of meeting {meeting_id}"
                        )

                    models = [
                        MeetingParticipantModel(
                            meeting_id=meeting_uuid,
                            user_id=user_uuid,
                            role=role.value,
                            status=ParticipantStatus.INVITED.value,
                        )
                        for user_uuid in user_uuids
                    ]
                    session.add_all(models)
                    await session.flush()
                    for model in models:
                        await session.refresh(model)
            except IntegrityError as exc:
                raise ConflictError(
                    f"One or more users are already participants of meeting {meeting_id}"
                ) from exc
            return [_model_to_participant(m) for m in models]
        return []

    async def update_participant(
        self, meeting_id: str, user_id: str, changes: dict[str, Any]
    ) -> MeetingParticipant | None:
        """Apply role/status changes. Returns None if the pair is absent."""
        async for session in self._session_factory():
            stmt = select(MeetingParticipantModel).where(
                MeetingParticipantModel.meeting_id == uuid.UUID(meeting_id),
                MeetingParticipantModel.user_id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            if changes.get("role") is not None:
                model.role = _column_value(changes["role"])
            if changes.get("status") is not None:
                _apply_participant_status(model, ParticipantStatus(changes["status"]))
            await session.commit()
            await session.refresh(model)
            return _model_to_participant(model)

    async def remove_participant(self, meeting_id: str, user_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(MeetingParticipantModel).where(
                    MeetingParticipantModel.meeting_id == uuid.UUID(meeting_id),
                    MeetingParticipantModel.user_id == uuid.UUID(user_id),
                )
            )
            await session.commit()
            return result.rowcount > 0
        return False
