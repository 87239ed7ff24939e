"""REST endpoints for direct conversations, messages, and realtime credentials.

Message delivery to connected clients happens through the hosted realtime
backend; these endpoints own the writes and hand out the credentials the
clients subscribe with.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.collab.api.deps import get_current_user
from src.collab.chat.schemas import (
    DEFAULT_CONVERSATION_PAGE,
    DEFAULT_MESSAGE_PAGE,
    Conversation,
    ConversationCreate,
    ConversationResult,
    ConversationSummary,
    MarkReadRequest,
    Message,
    MessageCreate,
    MessagePage,
    RealtimeClientConfig,
    RealtimeToken,
)
from src.collab.models.user import User

router = APIRouter(prefix="/chat", tags=["chat"])


class MarkReadResponse(BaseModel):
    updated: int


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_chat_service(request: Request) -> Any:
    """Retrieve ChatService from app.state, 503 if not available."""
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat service not initialized",
        )
    return service


def _get_realtime_issuer(request: Request) -> Any:
    issuer = getattr(request.app.state, "realtime_issuer", None)
    if issuer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime credentials not configured",
        )
    return issuer


# ── Conversations ────────────────────────────────────────────────────────────


@router.post(
    "/conversations",
    response_model=ConversationResult,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    body: ConversationCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> ConversationResult:
    """Open (or fetch) the conversation with ``recipient_id``."""
    service = _get_chat_service(request)
    return await service.create_or_get_conversation(
        str(user.id), body.recipient_id, body.initial_message
    )


@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_CONVERSATION_PAGE, ge=1),
    user: User = Depends(get_current_user),
) -> list[ConversationSummary]:
    service = _get_chat_service(request)
    return await service.get_user_conversations(str(user.id), page=page, limit=limit)


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> Conversation:
    service = _get_chat_service(request)
    return await service.get_conversation(str(conversation_id), str(user.id))


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
async def get_messages(
    conversation_id: uuid.UUID,
    request: Request,
    limit: int = Query(default=DEFAULT_MESSAGE_PAGE, ge=1),
    cursor: datetime | None = Query(
        default=None,
        description="sent_at of the oldest message already loaded",
    ),
    user: User = Depends(get_current_user),
) -> MessagePage:
    """Newest-first page of messages; pass ``next_cursor`` back for older ones."""
    service = _get_chat_service(request)
    return await service.get_messages(
        str(conversation_id), str(user.id), limit=limit, cursor=cursor
    )


# ── Messages ─────────────────────────────────────────────────────────────────


@router.post("/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> Message:
    service = _get_chat_service(request)
    return await service.send_message(str(body.conversation_id), str(user.id), body.content)


@router.patch("/messages/mark-read", response_model=MarkReadResponse)
async def mark_read(
    body: MarkReadRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> MarkReadResponse:
    service = _get_chat_service(request)
    updated = await service.mark_messages_as_read(
        str(body.conversation_id),
        str(user.id),
        [str(m) for m in body.message_ids] if body.message_ids else None,
    )
    return MarkReadResponse(updated=updated)


# ── Realtime ─────────────────────────────────────────────────────────────────


@router.get("/realtime-token", response_model=RealtimeToken)
async def realtime_token(
    request: Request,
    user: User = Depends(get_current_user),
) -> RealtimeToken:
    issuer = _get_realtime_issuer(request)
    return issuer.issue(str(user.id), user.email)


@router.get("/realtime-config", response_model=RealtimeClientConfig)
async def realtime_config(
    request: Request,
    user: User = Depends(get_current_user),
) -> RealtimeClientConfig:
    issuer = _get_realtime_issuer(request)
    return issuer.client_config(str(user.id), user.email)
