"""Notification inbox endpoints for the current user."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.collab.api.deps import get_current_user
from src.collab.models.user import User
from src.collab.notifications.schemas import Notification

router = APIRouter(prefix="/notifications", tags=["notifications"])


class MarkReadResponse(BaseModel):
    id: str
    is_read: bool = True


def _get_notification_repository(request: Request) -> Any:
    repo = getattr(request.app.state, "notification_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification repository not initialized",
        )
    return repo


@router.get("", response_model=list[Notification])
async def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=100),
    user: User = Depends(get_current_user),
) -> list[Notification]:
    """The current user's notifications, newest first."""
    repo = _get_notification_repository(request)
    return await repo.list_for_user(str(user.id), unread_only=unread_only, limit=limit)


@router.patch("/{notification_id}/read", response_model=MarkReadResponse)
async def mark_notification_read(
    notification_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
) -> MarkReadResponse:
    repo = _get_notification_repository(request)
    if not await repo.mark_read(str(notification_id), str(user.id)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification not found: {notification_id}",
        )
    return MarkReadResponse(id=str(notification_id))
