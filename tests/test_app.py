"""Tests for the assembled application: middleware stack, auth, health and /metrics.

The lifespan is not run (ASGITransport does not send startup events), so
no database or Redis is needed.
"""

from __future__ import annotations

import logging
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient

from src.collab.api.deps import get_db
from src.collab.api.middleware.logging import configure_structlog
from src.collab.config import Environment, Settings
from src.collab.core.security import create_access_token
from src.collab.main import create_app


def _session_returning(user) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = user
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    return session


@pytest.fixture
def app():
    return create_app()


@pytest_asyncio.fixture
async def client(app):
    async def _no_db():
        yield MagicMock()

    app.dependency_overrides[get_db] = _no_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _bearer(user_id: uuid.UUID) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_request_id_is_generated(client):
    response = await client.get("/health")
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_metrics_exposition(client):
    await client.get("/health")

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "chat_messages_sent_total" in response.text


# ── Authentication ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_protected_route_requires_bearer(client):
    response = await client.get("/api/v1/chat/conversations")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_valid_bearer_reaches_the_route(app, client):
    user_id = uuid.uuid4()
    session = _session_returning(MagicMock(id=user_id))

    async def _db():
        yield session

    app.dependency_overrides[get_db] = _db
    notifications = MagicMock()
    notifications.list_for_user = AsyncMock(return_value=[])
    app.state.notification_repository = notifications

    response = await client.get("/api/v1/notifications", headers=_bearer(user_id))

    assert response.status_code == 200
    assert response.json() == []
    notifications.list_for_user.assert_awaited_once_with(
        str(user_id), unread_only=False, limit=50
    )


@pytest.mark.asyncio
async def test_valid_bearer_for_unknown_user_is_rejected(app, client):
    async def _db():
        yield _session_returning(None)

    app.dependency_overrides[get_db] = _db

    response = await client.get("/api/v1/notifications", headers=_bearer(uuid.uuid4()))

    assert response.status_code == 401


# ── Health ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_readiness_hides_failure_details(client, monkeypatch):
    def _unreachable():
        raise RuntimeError("connect to db.internal:5432 as collab failed")

    monkeypatch.setattr("src.collab.api.v1.health.get_engine", _unreachable)
    monkeypatch.setattr("src.collab.api.v1.health.get_redis_pool", _unreachable)

    response = await client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {
        "status": "degraded",
        "checks": {"database": "error", "redis": "error"},
    }
    assert "db.internal" not in response.text


# ── Logging ──────────────────────────────────────────────────────────────────


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)
    structlog.reset_defaults()


def test_info_events_are_emitted_at_configured_level(monkeypatch, caplog, restore_logging):
    monkeypatch.setattr(
        "src.collab.api.middleware.logging.get_settings",
        lambda: Settings(LOG_LEVEL="info", ENVIRONMENT=Environment.development),
    )
    logging.getLogger().setLevel(logging.WARNING)

    configure_structlog()
    structlog.get_logger("collab.tests").info("meeting.created", meeting_id="m-1")

    assert logging.getLogger().level == logging.INFO
    assert any("meeting.created" in record.getMessage() for record in caplog.records)


def test_debug_events_are_dropped_at_info(monkeypatch, caplog, restore_logging):
    monkeypatch.setattr(
        "src.collab.api.middleware.logging.get_settings",
        lambda: Settings(LOG_LEVEL="INFO", ENVIRONMENT=Environment.development),
    )

    configure_structlog()
    structlog.get_logger("collab.tests").debug("webhook.unhandled_type")

    assert not any("webhook.unhandled_type" in r.getMessage() for r in caplog.records)
