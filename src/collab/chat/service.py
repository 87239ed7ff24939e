"""ChatService -- two-party conversations and their message log.

Access rules: only the two participants may read, write, or mark messages
in a conversation. A missing conversation is NotFound; an existing one the
caller is not part of is Forbidden (reads of a single conversation answer
NotFound so ids cannot be probed).
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from src.collab.chat.schemas import (
    DEFAULT_CONVERSATION_PAGE,
    DEFAULT_MESSAGE_PAGE,
    DELETED_USER_NAME,
    MAX_MESSAGE_LENGTH,
    MAX_PAGE_SIZE,
    PREVIEW_LENGTH,
    Conversation,
    ConversationResult,
    ConversationSummary,
    Message,
    MessagePage,
    MessageView,
    ParticipantIdentity,
    canonical_pair,
)
from src.collab.core.errors import ForbiddenError, NotFoundError, ValidationFailedError
from src.collab.core.monitoring import chat_messages_sent_total
from src.collab.events.bus import publish_quietly
from src.collab.events.schemas import DomainEvent, EventType

if TYPE_CHECKING:
    from src.collab.chat.repository import ChatRepository
    from src.collab.events.bus import EventBus
    from src.collab.users.directory import UserDirectory, UserSummary

logger = structlog.get_logger(__name__)


def _identity(user: UserSummary | None) -> ParticipantIdentity:
    if user is None:
        return ParticipantIdentity(name=DELETED_USER_NAME)
    return ParticipantIdentity(id=user.id, name=user.name, email=user.email)


def _clamp_limit(limit: int) -> int:
    if limit < 1:
        raise ValidationFailedError("limit must be at least 1")
    return min(limit, MAX_PAGE_SIZE)


class ChatService:
    """Conversation and message operations.

    Args:
        repository: ChatRepository (or an in-memory equivalent).
        users: UserDirectory for recipient validation.
        event_bus: Optional EventBus for new-message notifications.
    """

    def __init__(
        self,
        repository: ChatRepository,
        users: UserDirectory,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repository = repository
        self._users = users
        self._event_bus = event_bus

    async def _participant_conversation(
        self, conversation_id: str, user_id: str
    ) -> Conversation:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        if not conversation.has_participant(user_id):
            raise ForbiddenError("You are not a participant in this conversation")
        return conversation

    # ── Conversations ────────────────────────────────────────────────────

    async def create_or_get_conversation(
        self,
        current_user_id: str,
        recipient_id: str,
        initial_message: str | None = None,
    ) -> ConversationResult:
        """Open the conversation between two users, creating it on first contact.

        ``initial_message`` is only sent when the conversation is new.

        Raises:
            ValidationFailedError: Recipient is the caller.
            NotFoundError: Recipient does not resolve to a user.
        """
        if str(recipient_id) == str(current_user_id):
            raise ValidationFailedError("You cannot start a conversation with yourself")
        recipient = await self._users.resolve_user(recipient_id)
        if recipient is None:
            raise NotFoundError(f"User not found: {recipient_id}")

        user_one, user_two = canonical_pair(current_user_id, str(recipient.id))
        conversation, is_new = await self._repository.get_or_create_conversation(
            user_one, user_two
        )

        if is_new and initial_message and initial_message.strip():
            await self.send_message(str(conversation.id), current_user_id, initial_message)
            conversation = await self._repository.get_conversation(str(conversation.id)) or conversation

        logger.info(
            "chat.conversation_opened",
            conversation_id=str(conversation.id),
            is_new=is_new,
        )
        return ConversationResult(conversation=conversation, is_new=is_new)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None or not conversation.has_participant(user_id):
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return conversation

    async def get_user_conversations(
        self, user_id: str, page: int = 1, limit: int = DEFAULT_CONVERSATION_PAGE
    ) -> list[ConversationSummary]:
        """Conversation list for a user, most recently active first.

        Conversations whose other participant no longer resolves are left
        out of the list.
        """
        if page < 1:
            raise ValidationFailedError("page must be at least 1")
        limit = _clamp_limit(limit)
        rows = await self._repository.list_conversations(
            user_id, offset=(page - 1) * limit, limit=limit
        )

        summaries: list[ConversationSummary] = []
        for conversation, other_user, unread_count in rows:
            if other_user is None:
                logger.warning(
                    "chat.conversation_other_user_missing",
                    conversation_id=str(conversation.id),
                    other_user_id=conversation.other_participant(user_id),
                )
                continue
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    other_user=_identity(other_user),
                    last_message_at=conversation.last_message_at,
                    last_message_preview=conversation.last_message_preview,
                    unread_count=unread_count,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                )
            )
        return summaries

    # ── Messages ─────────────────────────────────────────────────────────

    async def send_message(
        self, conversation_id: str, sender_id: str, content: str
    ) -> Message:
        """Append a message and update the conversation preview atomically.

        Raises:
            NotFoundError: Conversation does not exist.
            ForbiddenError: Sender is not a participant.
            ValidationFailedError: Content is empty after trimming or too long.
        """
        conversation = await self._participant_conversation(conversation_id, sender_id)

        text = (content or "").strip()
        if not text:
            raise ValidationFailedError("Message content cannot be empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationFailedError(
                f"Message content cannot exceed {MAX_MESSAGE_LENGTH} characters"
            )

        message = await self._repository.append_message(
            conversation_id, sender_id, text, text[:PREVIEW_LENGTH]
        )
        chat_messages_sent_total.inc()
        logger.info(
            "chat.message_sent",
            conversation_id=conversation_id,
            message_id=str(message.id),
            sender_id=sender_id,
        )

        await publish_quietly(
            self._event_bus,
            DomainEvent(
                event_type=EventType.MESSAGE_SENT,
                actor_id=sender_id,
                data={
                    "conversation_id": conversation_id,
                    "message_id": str(message.id),
                    "sender_id": sender_id,
                    "recipient_id": conversation.other_participant(sender_id),
                    "preview": text[:PREVIEW_LENGTH],
                },
            ),
        )
        return message

    async def get_messages(
        self,
        conversation_id: str,
        requester_id: str,
        limit: int = DEFAULT_MESSAGE_PAGE,
        cursor: datetime | None = None,
    ) -> MessagePage:
        """Newest-first page of messages older than ``cursor``."""
        await self._participant_conversation(conversation_id, requester_id)
        limit = _clamp_limit(limit)

        rows = await self._repository.list_messages(
            conversation_id, limit=limit + 1, before=cursor
        )
        has_more = len(rows) > limit
        rows = rows[:limit]

        messages = [
            MessageView(
                **message.model_dump(),
                sender=_identity(sender),
                is_mine=str(message.sender_id) == str(requester_id),
            )
            for message, sender in rows
        ]
        next_cursor = messages[-1].sent_at if has_more and messages else None
        return MessagePage(messages=messages, has_more=has_more, next_cursor=next_cursor)

    async def mark_messages_as_read(
        self,
        conversation_id: str,
        reader_id: str,
        message_ids: Sequence[str] | None = None,
    ) -> int:
        """Mark received messages as read; returns how many changed."""
        await self._participant_conversation(conversation_id, reader_id)
        ids = [str(m) for m in message_ids] if message_ids else None
        updated = await self._repository.mark_read(conversation_id, reader_id, ids)
        logger.debug(
            "chat.messages_read",
            conversation_id=conversation_id,
            reader_id=reader_id,
            updated=updated,
        )
        return updated
