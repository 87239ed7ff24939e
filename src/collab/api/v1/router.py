"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.collab.api.v1 import chat, meetings, notifications

router = APIRouter(prefix="/api/v1")

router.include_router(meetings.router)
router.include_router(chat.router)
router.include_router(notifications.router)
