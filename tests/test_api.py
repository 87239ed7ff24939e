"""Integration tests for the v1 HTTP API.

Builds a FastAPI app with the v1 router and the domain exception
handlers, puts in-memory services on app.state, and overrides
get_current_user so requests can act as any directory user.
"""

from __future__ import annotations

import base64
import json
import time
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.collab.api.deps import get_current_user
from src.collab.api.v1 import health
from src.collab.api.v1.router import router as v1_router
from src.collab.chat.realtime import RealtimeTokenIssuer
from src.collab.chat.service import ChatService
from src.collab.core.errors import install_exception_handlers
from src.collab.meetings.participants import ParticipantRoster
from src.collab.meetings.scheduler import MeetingScheduler
from src.collab.meetings.webhooks import VideoWebhookHandler, compute_signature
from src.collab.notifications.schemas import Notification, NotificationType

WEBHOOK_SECRET = base64.b64encode(b"api-webhook-secret").decode()


class InMemoryNotificationRepository:
    def __init__(self) -> None:
        self.items: list[Notification] = []

    def add(self, user_id: uuid.UUID, message: str) -> Notification:
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            type=NotificationType.NEW_MESSAGE,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        self.items.append(notification)
        return notification

    async def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50):
        mine = [n for n in self.items if str(n.user_id) == user_id]
        if unread_only:
            mine = [n for n in mine if not n.is_read]
        return list(reversed(mine))[:limit]

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        for index, n in enumerate(self.items):
            if str(n.id) == notification_id and str(n.user_id) == user_id:
                self.items[index] = n.model_copy(update={"is_read": True})
                return True
        return False


def _settings(secret: str = "") -> MagicMock:
    settings = MagicMock()
    settings.DAILY_WEBHOOK_SECRET = secret
    return settings


@pytest_asyncio.fixture
async def api(users, meeting_repo, video, chat_repo, event_bus):
    """Client plus the in-memory state behind it; ``act_as`` switches user."""
    app = FastAPI()
    install_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(v1_router)

    roster = ParticipantRoster(meeting_repo, users, event_bus=event_bus)
    notifications = InMemoryNotificationRepository()
    app.state.meeting_scheduler = MeetingScheduler(
        meeting_repo, video, room_prefix="meeting", event_bus=event_bus
    )
    app.state.participant_roster = roster
    app.state.video_webhook_handler = VideoWebhookHandler(meeting_repo, roster)
    app.state.chat_service = ChatService(chat_repo, users, event_bus=event_bus)
    app.state.notification_repository = notifications
    app.state.realtime_issuer = RealtimeTokenIssuer(
        url="https://realtime.collab.test", anon_key="anon", jwt_secret="rt-secret"
    )

    acting: dict = {}

    def _current_user():
        mock_user = MagicMock()
        mock_user.id = acting["user"].id
        mock_user.email = acting["user"].email
        mock_user.is_active = True
        return mock_user

    app.dependency_overrides[get_current_user] = _current_user

    alice = users.add("Alice")
    acting["user"] = alice
    ctx = SimpleNamespace(
        app=app,
        users=users,
        alice=alice,
        meetings=meeting_repo,
        notifications=notifications,
        act_as=lambda user: acting.__setitem__("user", user),
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, ctx


MEETING_BODY = {
    "title": "Design review",
    "start_time": "2026-11-02T10:00:00+00:00",
    "end_time": "2026-11-02T11:00:00+00:00",
}


async def _create_meeting(client, body=None) -> dict:
    response = await client.post("/api/v1/meetings", json=body or MEETING_BODY)
    assert response.status_code == 201
    return response.json()


# ── Health ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_liveness(api):
    client, _ = api
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ── Meetings ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_meeting(api):
    client, ctx = api

    data = await _create_meeting(client)

    assert data["status"] == "SCHEDULED"
    assert data["created_by_id"] == str(ctx.alice.id)
    assert data["room_url"].startswith("https://collab.daily.co/meeting-")


@pytest.mark.asyncio
async def test_overlapping_meeting_returns_409(api):
    client, _ = api
    await _create_meeting(client)

    response = await client.post(
        "/api/v1/meetings",
        json={**MEETING_BODY, "start_time": "2026-11-02T10:30:00+00:00",
              "end_time": "2026-11-02T11:30:00+00:00"},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_reopening_cancelled_meeting_into_taken_slot_returns_409(api):
    client, ctx = api
    first = await _create_meeting(client)
    path = f"/api/v1/meetings/{first['id']}"
    cancelled = await client.patch(path, json={"status": "CANCELLED"})
    assert cancelled.status_code == 200
    await _create_meeting(client)

    response = await client.patch(path, json={"status": "SCHEDULED"})

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"
    assert ctx.meetings.meetings[first["id"]].status == "CANCELLED"


@pytest.mark.asyncio
async def test_reversed_window_returns_400(api):
    client, _ = api
    response = await client.post(
        "/api/v1/meetings",
        json={**MEETING_BODY, "end_time": "2026-11-02T09:00:00+00:00"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_get_update_delete_meeting(api):
    client, ctx = api
    meeting = await _create_meeting(client)
    path = f"/api/v1/meetings/{meeting['id']}"

    assert (await client.get(path)).json()["title"] == "Design review"

    patched = await client.patch(path, json={"title": "Final review"})
    assert patched.status_code == 200
    assert patched.json()["title"] == "Final review"

    deleted = await client.delete(path)
    assert deleted.status_code == 200
    assert meeting["id"] not in ctx.meetings.meetings

    missing = await client.get(path)
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_list_meetings_by_status(api):
    client, _ = api
    await _create_meeting(client)

    scheduled = await client.get("/api/v1/meetings", params={"status": "SCHEDULED"})
    cancelled = await client.get("/api/v1/meetings", params={"status": "CANCELLED"})

    assert len(scheduled.json()) == 1
    assert cancelled.json() == []


@pytest.mark.asyncio
async def test_invalid_meeting_id_returns_422(api):
    client, _ = api
    response = await client.get("/api/v1/meetings/not-a-uuid")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_scheduler_missing_returns_503(api):
    client, ctx = api
    ctx.app.state.meeting_scheduler = None

    response = await client.post("/api/v1/meetings", json=MEETING_BODY)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_participant_endpoints(api):
    client, ctx = api
    meeting = await _create_meeting(client)
    bob = ctx.users.add("Bob")
    path = f"/api/v1/meetings/{meeting['id']}/participants"

    added = await client.post(path, json={"user_ids": [str(bob.id)]})
    assert added.status_code == 201
    assert added.json()[0]["status"] == "INVITED"

    again = await client.post(path, json={"user_ids": [str(bob.id)]})
    assert again.status_code == 409

    updated = await client.patch(f"{path}/{bob.id}", json={"role": "HOST"})
    assert updated.json()["role"] == "HOST"

    removed = await client.delete(f"{path}/{bob.id}")
    assert removed.status_code == 200
    assert (await client.get(path)).json() == []


# ── Webhook ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_without_secret_processes_event(api):
    client, ctx = api
    meeting = await _create_meeting(client)
    body = {"type": "meeting.started", "payload": {"room": meeting["room_name"]}}

    with patch("src.collab.api.v1.meetings.get_settings", return_value=_settings()):
        response = await client.post("/api/v1/meetings/webhook", json=body)

    assert response.json() == {"status": "processed", "meeting_id": meeting["id"]}
    assert ctx.meetings.meetings[meeting["id"]].status.value == "IN_PROGRESS"


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(api):
    client, _ = api
    body = json.dumps({"type": "meeting.started", "payload": {"room": "x"}}).encode()

    with patch(
        "src.collab.api.v1.meetings.get_settings", return_value=_settings(WEBHOOK_SECRET)
    ):
        response = await client.post(
            "/api/v1/meetings/webhook",
            content=body,
            headers={
                "X-Webhook-Timestamp": str(int(time.time())),
                "X-Webhook-Signature": "bm90LXRoZS1zaWduYXR1cmU=",
            },
        )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_webhook_accepts_valid_signature(api):
    client, _ = api
    body = json.dumps({"type": "meeting.started", "payload": {"room": "unknown"}}).encode()
    ts = str(int(time.time()))

    with patch(
        "src.collab.api.v1.meetings.get_settings", return_value=_settings(WEBHOOK_SECRET)
    ):
        response = await client.post(
            "/api/v1/meetings/webhook",
            content=body,
            headers={
                "X-Webhook-Timestamp": ts,
                "X-Webhook-Signature": compute_signature(WEBHOOK_SECRET, ts, body),
            },
        )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "unknown room"}


@pytest.mark.asyncio
async def test_webhook_malformed_payload_is_acknowledged(api):
    client, _ = api

    with patch("src.collab.api.v1.meetings.get_settings", return_value=_settings()):
        response = await client.post("/api/v1/meetings/webhook", content=b"{not json")

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


# ── Chat ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_conversation_message_flow(api):
    client, ctx = api
    bob = ctx.users.add("Bob")

    opened = await client.post(
        "/api/v1/chat/conversations", json={"recipient_id": str(bob.id)}
    )
    assert opened.status_code == 201
    assert opened.json()["is_new"] is True
    conversation_id = opened.json()["conversation"]["id"]

    sent = await client.post(
        "/api/v1/chat/messages",
        json={"conversation_id": conversation_id, "content": "Hi Bob"},
    )
    assert sent.status_code == 201

    ctx.act_as(bob)
    listing = await client.get("/api/v1/chat/conversations")
    assert listing.json()[0]["unread_count"] == 1
    assert listing.json()[0]["other_user"]["name"] == "Alice"

    page = await client.get(f"/api/v1/chat/conversations/{conversation_id}/messages")
    assert page.json()["has_more"] is False
    assert page.json()["messages"][0]["is_mine"] is False

    marked = await client.patch(
        "/api/v1/chat/messages/mark-read", json={"conversation_id": conversation_id}
    )
    assert marked.json() == {"updated": 1}

    reopened = await client.post(
        "/api/v1/chat/conversations", json={"recipient_id": str(ctx.alice.id)}
    )
    assert reopened.json()["is_new"] is False
    assert reopened.json()["conversation"]["id"] == conversation_id


@pytest.mark.asyncio
async def test_chat_access_errors(api):
    client, ctx = api
    bob = ctx.users.add("Bob")
    opened = await client.post(
        "/api/v1/chat/conversations", json={"recipient_id": str(bob.id)}
    )
    conversation_id = opened.json()["conversation"]["id"]

    empty = await client.post(
        "/api/v1/chat/messages", json={"conversation_id": conversation_id, "content": "  "}
    )
    assert empty.status_code == 400
    assert empty.json()["code"] == "validation_error"

    self_chat = await client.post(
        "/api/v1/chat/conversations", json={"recipient_id": str(ctx.alice.id)}
    )
    assert self_chat.status_code == 400

    ctx.act_as(ctx.users.add("Eve"))
    hidden = await client.get(f"/api/v1/chat/conversations/{conversation_id}")
    assert hidden.status_code == 404
    forbidden = await client.post(
        "/api/v1/chat/messages", json={"conversation_id": conversation_id, "content": "hi"}
    )
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_realtime_config(api):
    client, ctx = api

    response = await client.get("/api/v1/chat/realtime-config")

    assert response.status_code == 200
    assert response.json()["channels"][0]["schema"] == "public"

    ctx.app.state.realtime_issuer = None
    assert (await client.get("/api/v1/chat/realtime-token")).status_code == 503


# ── Notifications ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_notification_inbox(api):
    client, ctx = api
    first = ctx.notifications.add(ctx.alice.id, "You have a new message")
    ctx.notifications.add(uuid.uuid4(), "someone else")

    listing = await client.get("/api/v1/notifications")
    assert [n["id"] for n in listing.json()] == [str(first.id)]

    marked = await client.patch(f"/api/v1/notifications/{first.id}/read")
    assert marked.json() == {"id": str(first.id), "is_read": True}

    unread = await client.get("/api/v1/notifications", params={"unread_only": "true"})
    assert unread.json() == []

    missing = await client.patch(f"/api/v1/notifications/{uuid.uuid4()}/read")
    assert missing.status_code == 404
