"""REST endpoints for meeting scheduling, rosters, and video provider callbacks.

All endpoints except the provider webhook require a Bearer token. Domain
errors raised by the scheduler and roster are translated to HTTP responses
by the handlers installed in ``core.errors``.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ValidationError

from src.collab.api.deps import get_current_user
from src.collab.config import get_settings
from src.collab.meetings.schemas import (
    Meeting,
    MeetingCreate,
    MeetingParticipant,
    MeetingStatus,
    MeetingUpdate,
    ParticipantsAdd,
    ParticipantUpdate,
    VideoWebhookEvent,
)
from src.collab.meetings.webhooks import verify_webhook_signature
from src.collab.models.user import User

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


# ── Response Schemas ─────────────────────────────────────────────────────────


class MeetingResponse(BaseModel):
    """Meeting data with datetimes serialized to ISO strings."""

    id: str
    title: str
    description: str | None = None
    start_time: str
    end_time: str
    status: str
    project_id: str | None = None
    created_by_id: str
    room_url: str | None = None
    room_name: str | None = None
    created_at: str
    updated_at: str


class ParticipantResponse(BaseModel):
    id: str
    meeting_id: str
    user_id: str
    role: str
    status: str
    joined_at: str | None = None
    left_at: str | None = None


class MessageResponse(BaseModel):
    message: str


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_scheduler(request: Request) -> Any:
    """Retrieve MeetingScheduler from app.state, 503 if not available."""
    scheduler = getattr(request.app.state, "meeting_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting scheduler not initialized (video provider may not be configured)",
        )
    return scheduler


def _get_roster(request: Request) -> Any:
    """Retrieve ParticipantRoster from app.state, 503 if not available."""
    roster = getattr(request.app.state, "participant_roster", None)
    if roster is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Participant roster not initialized",
        )
    return roster


def _get_webhook_handler(request: Request) -> Any:
    handler = getattr(request.app.state, "video_webhook_handler", None)
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not initialized",
        )
    return handler


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _meeting_to_response(m: Meeting) -> MeetingResponse:
    return MeetingResponse(
        id=str(m.id),
        title=m.title,
        description=m.description,
        start_time=m.start_time.isoformat(),
        end_time=m.end_time.isoformat(),
        status=m.status.value,
        project_id=str(m.project_id) if m.project_id else None,
        created_by_id=str(m.created_by_id),
        room_url=m.room_url,
        room_name=m.room_name,
        created_at=m.created_at.isoformat(),
        updated_at=m.updated_at.isoformat(),
    )


def _participant_to_response(p: MeetingParticipant) -> ParticipantResponse:
    return ParticipantResponse(
        id=str(p.id),
        meeting_id=str(p.meeting_id),
        user_id=str(p.user_id),
        role=p.role.value,
        status=p.status.value,
        joined_at=p.joined_at.isoformat() if p.joined_at else None,
        left_at=p.left_at.isoformat() if p.left_at else None,
    )


# ── Provider Webhook ─────────────────────────────────────────────────────────


@router.post("/webhook")
async def receive_webhook(request: Request) -> dict:
    """Video provider callback receiver.

    No Bearer auth: the provider calls this directly. When
    ``DAILY_WEBHOOK_SECRET`` is configured the HMAC signature headers are
    required. Malformed payloads are acknowledged and ignored so the
    provider does not retry them.
    """
    handler = _get_webhook_handler(request)
    body = await request.body()

    secret = get_settings().DAILY_WEBHOOK_SECRET
    if secret and not verify_webhook_signature(
        secret,
        body,
        request.headers.get(TIMESTAMP_HEADER),
        request.headers.get(SIGNATURE_HEADER),
    ):
        logger.warning("webhook.invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        event = VideoWebhookEvent.model_validate_json(body)
    except ValidationError:
        logger.info("webhook.invalid_payload")
        return {"status": "ignored", "reason": "invalid payload"}

    return await handler.handle(event)


# ── Meetings ─────────────────────────────────────────────────────────────────


@router.post("", response_model=MeetingResponse, status_code=status.HTTP_201_CREATED)
async def create_meeting(
    body: MeetingCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> MeetingResponse:
    """Schedule a meeting for the current user and provision its room."""
    scheduler = _get_scheduler(request)
    meeting = await scheduler.create(body, organizer_id=str(user.id))
    return _meeting_to_response(meeting)


@router.get("", response_model=list[MeetingResponse])
async def list_meetings(
    request: Request,
    created_by: uuid.UUID | None = Query(default=None),
    project_id: uuid.UUID | None = Query(default=None),
    status_filter: MeetingStatus | None = Query(default=None, alias="status"),
    user: User = Depends(get_current_user),
) -> list[MeetingResponse]:
    scheduler = _get_scheduler(request)
    meetings = await scheduler.list_meetings(
        created_by_id=str(created_by) if created_by else None,
        project_id=str(project_id) if project_id else None,
        status=status_filter,
    )
    return [_meeting_to_response(m) for m in meetings]


@router.get("/{meeting_id}", response_model=MeetingResponse)
async def get_meeting(
    meeting_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> MeetingResponse:
    scheduler = _get_scheduler(request)
    return _meeting_to_response(await scheduler.get(str(meeting_id)))


@router.patch("/{meeting_id}", response_model=MeetingResponse)
async def update_meeting(
    meeting_id: uuid.UUID,
    body: MeetingUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> MeetingResponse:
    """Partially update a meeting; time changes are re-checked for overlap."""
    scheduler = _get_scheduler(request)
    meeting = await scheduler.update(str(meeting_id), body, actor_id=str(user.id))
    return _meeting_to_response(meeting)


@router.delete("/{meeting_id}", response_model=MessageResponse)
async def remove_meeting(
    meeting_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> MessageResponse:
    """Delete the meeting's room, then the meeting itself."""
    scheduler = _get_scheduler(request)
    result = await scheduler.remove(str(meeting_id), actor_id=str(user.id))
    return MessageResponse(**result)


# ── Participants ─────────────────────────────────────────────────────────────


@router.post(
    "/{meeting_id}/participants",
    response_model=list[ParticipantResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_participants(
    meeting_id: uuid.UUID,
    body: ParticipantsAdd,
    request: Request,
    user: User = Depends(get_current_user),
) -> list[ParticipantResponse]:
    roster = _get_roster(request)
    added = await roster.add_participants(
        str(meeting_id), body.user_ids, role=body.role, actor_id=str(user.id)
    )
    return [_participant_to_response(p) for p in added]


@router.get("/{meeting_id}/participants", response_model=list[ParticipantResponse])
async def list_participants(
    meeting_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> list[ParticipantResponse]:
    roster = _get_roster(request)
    participants = await roster.list_participants(str(meeting_id))
    return [_participant_to_response(p) for p in participants]


@router.patch(
    "/{meeting_id}/participants/{user_id}", response_model=ParticipantResponse
)
async def update_participant(
    meeting_id: uuid.UUID,
    user_id: uuid.UUID,
    body: ParticipantUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> ParticipantResponse:
    roster = _get_roster(request)
    participant = await roster.update_participant(str(meeting_id), str(user_id), body)
    return _participant_to_response(participant)


@router.delete("/{meeting_id}/participants/{user_id}", response_model=MessageResponse)
async def remove_participant(
    meeting_id: uuid.UUID,
    user_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> MessageResponse:
    roster = _get_roster(request)
    result = await roster.remove_participant(str(meeting_id), str(user_id))
    return MessageResponse(**result)
