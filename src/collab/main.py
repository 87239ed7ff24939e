"""FastAPI application factory.

Creates the app with logging and metrics middleware, CORS, Sentry, domain
exception handlers, lifespan wiring of the meeting and chat services, and
the v1 API router.
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.collab.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.collab.api.v1 import health
from src.collab.api.v1.router import router as v1_router
from src.collab.config import get_settings
from src.collab.core.database import close_db, get_session, init_db
from src.collab.core.errors import install_exception_handlers
from src.collab.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.collab.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialise storage, services and the notification consumer; tear down on exit."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Each module is wrapped in its own try/except so one failing
    # dependency (Redis down, provider not configured) leaves the rest
    # of the API serving.

    # ── Domain events ────────────────────────────────────────────────────
    app.state.event_bus = None
    if settings.EVENTS_ENABLED:
        try:
            from src.collab.events.bus import EventBus

            app.state.event_bus = EventBus(get_redis_pool(), stream=settings.EVENTS_STREAM)
            log.info("events.bus_initialized", stream=settings.EVENTS_STREAM)
        except Exception:
            log.warning("events.bus_init_failed", exc_info=True)

    # ── Users and meetings ───────────────────────────────────────────────
    try:
        from src.collab.meetings.participants import ParticipantRoster
        from src.collab.meetings.repository import MeetingRepository
        from src.collab.meetings.webhooks import VideoWebhookHandler
        from src.collab.users.directory import UserDirectory

        user_directory = UserDirectory(session_factory=get_session)
        meeting_repo = MeetingRepository(session_factory=get_session)
        roster = ParticipantRoster(
            meeting_repo, user_directory, event_bus=app.state.event_bus
        )
        app.state.user_directory = user_directory
        app.state.meeting_repository = meeting_repo
        app.state.participant_roster = roster
        app.state.video_webhook_handler = VideoWebhookHandler(meeting_repo, roster)
        log.info("meetings.repository_initialized")
    except Exception:
        log.warning("meetings.init_failed", exc_info=True)
        app.state.user_directory = None
        app.state.meeting_repository = None
        app.state.participant_roster = None
        app.state.video_webhook_handler = None

    # Scheduler needs the video provider; without an API key the meeting
    # write endpoints answer 503.
    app.state.meeting_scheduler = None
    if settings.DAILY_API_KEY and app.state.meeting_repository is not None:
        try:
            from src.collab.meetings.scheduler import MeetingScheduler
            from src.collab.meetings.video.daily_client import DailyClient

            daily = DailyClient(
                api_key=settings.DAILY_API_KEY,
                base_url=settings.DAILY_API_URL,
                timeout=settings.DAILY_TIMEOUT_SECONDS,
            )
            app.state.meeting_scheduler = MeetingScheduler(
                app.state.meeting_repository,
                daily,
                room_prefix=settings.MEETING_ROOM_PREFIX,
                event_bus=app.state.event_bus,
            )
            log.info("meetings.scheduler_initialized")
        except Exception:
            log.warning("meetings.scheduler_init_failed", exc_info=True)
    else:
        log.info("meetings.scheduler_skipped", reason="DAILY_API_KEY not configured")

    # ── Chat ─────────────────────────────────────────────────────────────
    try:
        from src.collab.chat.repository import ChatRepository
        from src.collab.chat.service import ChatService
        from src.collab.users.directory import UserDirectory

        app.state.chat_service = ChatService(
            ChatRepository(session_factory=get_session),
            app.state.user_directory or UserDirectory(session_factory=get_session),
            event_bus=app.state.event_bus,
        )
        log.info("chat.service_initialized")
    except Exception:
        log.warning("chat.init_failed", exc_info=True)
        app.state.chat_service = None

    app.state.realtime_issuer = None
    if settings.REALTIME_JWT_SECRET:
        from src.collab.chat.realtime import RealtimeTokenIssuer

        app.state.realtime_issuer = RealtimeTokenIssuer(
            url=settings.REALTIME_URL,
            anon_key=settings.REALTIME_ANON_KEY,
            jwt_secret=settings.REALTIME_JWT_SECRET,
            expire_minutes=settings.REALTIME_TOKEN_EXPIRE_MINUTES,
        )

    # ── Notifications ────────────────────────────────────────────────────
    app.state.notification_consumer = None
    app.state.notification_consumer_task = None
    try:
        from src.collab.notifications.notifier import (
            Notifier,
            create_notification_consumer,
        )
        from src.collab.notifications.repository import NotificationRepository

        notification_repo = NotificationRepository(session_factory=get_session)
        app.state.notification_repository = notification_repo

        if app.state.event_bus is not None:
            consumer, loop = create_notification_consumer(
                app.state.event_bus,
                Notifier(notification_repo),
                consumer_name=socket.gethostname(),
            )
            app.state.notification_consumer = consumer
            app.state.notification_consumer_task = asyncio.create_task(loop)
            log.info("notifications.consumer_started")
    except Exception:
        log.warning("notifications.init_failed", exc_info=True)
        app.state.notification_repository = None

    yield

    # ── Shutdown ─────────────────────────────────────────────────────────
    consumer = getattr(app.state, "notification_consumer", None)
    task = getattr(app.state, "notification_consumer_task", None)
    if consumer is not None:
        consumer.stop()
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.warning("notifications.consumer_shutdown_error", exc_info=True)

    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Collab API",
        version="0.1.0",
        description="Meeting scheduling with video rooms, and direct messaging",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Outermost: records Prometheus metrics for all requests
    app.add_middleware(MetricsMiddleware)

    install_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
