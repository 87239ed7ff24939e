"""Pydantic v2 schemas for conversations and messages."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

MAX_MESSAGE_LENGTH = 2000
MAX_INITIAL_MESSAGE_LENGTH = 1000
PREVIEW_LENGTH = 100
DEFAULT_MESSAGE_PAGE = 50
DEFAULT_CONVERSATION_PAGE = 20
MAX_PAGE_SIZE = 100

DELETED_USER_NAME = "Deleted user"


def canonical_pair(first: str, second: str) -> tuple[str, str]:
    """Order two user ids so the same pair always maps to one key."""
    a, b = str(first), str(second)
    return (a, b) if a < b else (b, a)


# ── Conversations ────────────────────────────────────────────────────────────


class Conversation(BaseModel):
    id: uuid.UUID
    user_one_id: uuid.UUID
    user_two_id: uuid.UUID
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    created_at: datetime
    updated_at: datetime

    def has_participant(self, user_id: str) -> bool:
        return str(user_id) in (str(self.user_one_id), str(self.user_two_id))

    def other_participant(self, user_id: str) -> str:
        if str(self.user_one_id) == str(user_id):
            return str(self.user_two_id)
        return str(self.user_one_id)


class ConversationCreate(BaseModel):
    recipient_id: str
    initial_message: str | None = Field(None, max_length=MAX_INITIAL_MESSAGE_LENGTH)


class ConversationResult(BaseModel):
    conversation: Conversation
    is_new: bool


class ParticipantIdentity(BaseModel):
    """Public identity shown next to messages and in conversation lists."""

    id: uuid.UUID | None = None
    name: str
    email: str | None = None


class ConversationSummary(BaseModel):
    id: uuid.UUID
    other_user: ParticipantIdentity
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


# ── Messages ─────────────────────────────────────────────────────────────────


class Message(BaseModel):
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    content: str
    sent_at: datetime
    read_at: datetime | None = None
    delivered_at: datetime | None = None


class MessageCreate(BaseModel):
    conversation_id: uuid.UUID
    content: str


class MessageView(Message):
    """A message as seen by one of the two participants."""

    sender: ParticipantIdentity
    is_mine: bool


class MessagePage(BaseModel):
    """Newest-first slice of a conversation.

    ``next_cursor`` is the ``sent_at`` of the oldest message in the slice;
    pass it back as ``cursor`` to fetch the next older page.
    """

    messages: list[MessageView] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: datetime | None = None


class MarkReadRequest(BaseModel):
    conversation_id: uuid.UUID
    message_ids: list[uuid.UUID] | None = None


# ── Realtime ─────────────────────────────────────────────────────────────────


class RealtimeToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: str


class RealtimeChannel(BaseModel):
    """Postgres-changes subscription the client should open."""

    name: str
    schema_name: str = Field("public", serialization_alias="schema")
    table: str
    filter: str | None = None
    event: str = "*"


class RealtimeClientConfig(BaseModel):
    url: str
    anon_key: str
    access_token: str
    expires_at: datetime
    channels: list[RealtimeChannel] = Field(default_factory=list)
