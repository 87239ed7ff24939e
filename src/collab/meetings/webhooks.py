"""Video provider webhook handling.

VideoWebhookHandler maps provider callbacks onto meetings and rosters:

- meeting.started / room.created     -> meeting IN_PROGRESS
- meeting.ended / room.deleted       -> meeting COMPLETED
- participant.joined / .left         -> roster JOINED / LEFT

The room reference in a callback is matched exactly against the stored
room URL or room name. Callbacks for rooms this service does not know,
and event types it does not handle, are acknowledged and ignored.

``verify_webhook_signature`` authenticates callbacks with the shared HMAC
secret configured on the provider.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import TYPE_CHECKING

import structlog

from src.collab.meetings.schemas import MeetingStatus, VideoWebhookEvent, reopens

if TYPE_CHECKING:
    from src.collab.meetings.participants import ParticipantRoster
    from src.collab.meetings.repository import MeetingRepository

logger = structlog.get_logger(__name__)

# Maximum age of a signed callback in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

_STATUS_EVENTS: dict[str, MeetingStatus] = {
    "meeting.started": MeetingStatus.IN_PROGRESS,
    "room.created": MeetingStatus.IN_PROGRESS,
    "meeting.ended": MeetingStatus.COMPLETED,
    "room.deleted": MeetingStatus.COMPLETED,
}

_PARTICIPANT_EVENTS = frozenset({"participant.joined", "participant.left"})


# ── Signature Verification ──────────────────────────────────────────────────


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of ``"{timestamp}.{body}"`` keyed by the decoded secret."""
    key = base64.b64decode(secret)
    message = timestamp.encode("utf-8") + b"." + body
    digest = hmac.new(key, message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(
    secret: str,
    body: bytes,
    timestamp: str | None,
    signature: str | None,
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
    now: float | None = None,
) -> bool:
    """Check a callback's signature and freshness in constant time."""
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > max_age:
        logger.warning("webhook.stale_timestamp", age_seconds=int(current - sent_at))
        return False
    try:
        expected = compute_signature(secret, timestamp, body)
    except (binascii.Error, ValueError):
        logger.error("webhook.invalid_secret_encoding")
        return False
    return hmac.compare_digest(expected, signature)


# ── Handler ─────────────────────────────────────────────────────────────────


class VideoWebhookHandler:
    """Apply provider callbacks to meetings and rosters.

    Args:
        repository: MeetingRepository for room lookup and status writes.
        roster: ParticipantRoster for join/leave transitions.
    """

    def __init__(self, repository: MeetingRepository, roster: ParticipantRoster) -> None:
        self._repository = repository
        self._roster = roster

    async def handle(self, event: VideoWebhookEvent) -> dict:
        """Process one callback. Never raises for unknown rooms or types."""
        room = event.payload.room
        meeting = await self._repository.find_by_room(room)
        if meeting is None:
            logger.info("webhook.unknown_room", event_type=event.type, room=room)
            return {"status": "ignored", "reason": "unknown room"}

        meeting_id = str(meeting.id)

        if event.type in _STATUS_EVENTS:
            new_status = _STATUS_EVENTS[event.type]
            if reopens(meeting.status, new_status):
                logger.info(
                    "webhook.meeting_closed",
                    meeting_id=meeting_id,
                    event_type=event.type,
                    status=meeting.status.value,
                )
                return {"status": "ignored", "reason": "meeting closed"}
            await self._repository.update_status(meeting_id, new_status)
            logger.info(
                "webhook.meeting_status",
                meeting_id=meeting_id,
                event_type=event.type,
                status=new_status.value,
            )
            return {"status": "processed", "meeting_id": meeting_id}

        if event.type in _PARTICIPANT_EVENTS:
            participant = event.payload.participant
            if participant is None or not participant.user_id:
                logger.info("webhook.participant_missing", meeting_id=meeting_id, event_type=event.type)
                return {"status": "ignored", "reason": "missing participant"}
            if event.type == "participant.joined":
                await self._roster.mark_as_joined(meeting_id, participant.user_id)
            else:
                await self._roster.mark_as_left(meeting_id, participant.user_id)
            return {"status": "processed", "meeting_id": meeting_id}

        logger.debug("webhook.unhandled_type", event_type=event.type, meeting_id=meeting_id)
        return {"status": "ignored", "reason": "unhandled event type"}
