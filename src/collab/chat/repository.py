"""Chat repository -- conversations, message log, and read receipts.

Ordering contract: within a conversation every message gets a ``sent_at``
strictly greater than the previous one. ``append_message`` computes it
while holding the conversation row lock (see ``next_sent_at``), so
``sent_at`` is a unique, gap-free keyset for newest-first pagination with a
strict ``sent_at < cursor`` filter.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.collab.chat.models import ConversationModel, MessageModel
from src.collab.chat.schemas import Conversation, Message
from src.collab.core.errors import NotFoundError
from src.collab.models.user import User
from src.collab.users.directory import UserSummary

logger = structlog.get_logger(__name__)

_TICK = timedelta(microseconds=1)


def next_sent_at(last_message_at: datetime | None, now: datetime) -> datetime:
    """Timestamp for the next message: ``now``, bumped past the previous one.

    Clock skew between app servers, or two sends in the same microsecond,
    would otherwise give equal or decreasing values.
    """
    if last_message_at is None or now > last_message_at:
        return now
    return last_message_at + _TICK


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_conversation(model: ConversationModel) -> Conversation:
    return Conversation(
        id=model.id,
        user_one_id=model.user_one_id,
        user_two_id=model.user_two_id,
        last_message_at=model.last_message_at,
        last_message_preview=model.last_message_preview,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_message(model: MessageModel) -> Message:
    return Message(
        id=model.id,
        conversation_id=model.conversation_id,
        sender_id=model.sender_id,
        content=model.content,
        sent_at=model.sent_at,
        read_at=model.read_at,
        delivered_at=model.delivered_at,
    )


def _user_to_summary(user: User | None) -> UserSummary | None:
    if user is None:
        return None
    return UserSummary(id=user.id, name=user.name or user.email, email=user.email)


# ── Repository ──────────────────────────────────────────────────────────────


class ChatRepository:
    """Async persistence for conversations and messages.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Conversations ────────────────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConversationModel).where(
                    ConversationModel.id == uuid.UUID(conversation_id)
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_conversation(model) if model else None

    async def get_or_create_conversation(
        self, user_one_id: str, user_two_id: str
    ) -> tuple[Conversation, bool]:
        """Atomically fetch or create the conversation for a canonical pair.

        Uses INSERT ... ON CONFLICT DO NOTHING on the pair's unique
        constraint, so concurrent first contact from both users converges
        on a single row.

        Returns:
            (conversation, is_new)
        """
        one, two = uuid.UUID(user_one_id), uuid.UUID(user_two_id)
        async for session in self._session_factory():
            stmt = (
                pg_insert(ConversationModel)
                .values(user_one_id=one, user_two_id=two)
                .on_conflict_do_nothing(constraint="uq_conversations_pair")
                .returning(ConversationModel.id)
            )
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

            result = await session.execute(
                select(ConversationModel).where(
                    ConversationModel.user_one_id == one,
                    ConversationModel.user_two_id == two,
                )
            )
            model = result.scalar_one()
            is_new = inserted is not None
            if is_new:
                logger.info("chat.conversation_created", conversation_id=str(model.id))
            return _model_to_conversation(model), is_new
        msg = "session factory yielded no session"
        raise RuntimeError(msg)

    async def list_conversations(
        self, user_id: str, offset: int, limit: int
    ) -> list[tuple[Conversation, UserSummary | None, int]]:
        """A user's conversations with the other participant and unread count.

        Ordered by most recent activity: ``last_message_at`` descending
        (never-used conversations last), then ``updated_at`` descending.
        """
        uid = uuid.UUID(user_id)
        other_id = case(
            (ConversationModel.user_one_id == uid, ConversationModel.user_two_id),
            else_=ConversationModel.user_one_id,
        )
        unread = (
            select(func.count(MessageModel.id))
            .where(
                MessageModel.conversation_id == ConversationModel.id,
                MessageModel.sender_id != uid,
                MessageModel.read_at.is_(None),
            )
            .correlate(ConversationModel)
            .scalar_subquery()
        )
        stmt = (
            select(ConversationModel, User, unread.label("unread_count"))
            .outerjoin(User, and_(User.id == other_id, User.is_active == True))  # noqa: E712
            .where(
                or_(
                    ConversationModel.user_one_id == uid,
                    ConversationModel.user_two_id == uid,
                )
            )
            .order_by(
                ConversationModel.last_message_at.desc().nulls_last(),
                func.coalesce(
                    ConversationModel.updated_at, ConversationModel.created_at
                ).desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                (_model_to_conversation(conv), _user_to_summary(user), int(count or 0))
                for conv, user, count in result.all()
            ]
        return []

    # ── Messages ─────────────────────────────────────────────────────────

    async def append_message(
        self, conversation_id: str, sender_id: str, content: str, preview: str
    ) -> Message:
        """Insert a message and refresh the conversation's cache in one transaction.

        Raises:
            NotFoundError: Conversation does not exist.
        """
        async for session in self._session_factory():
            async with session.begin():
                result = await session.execute(
                    select(ConversationModel)
                    .where(ConversationModel.id == uuid.UUID(conversation_id))
                    .with_for_update()
                )
                conversation = result.scalar_one_or_none()
                if conversation is None:
                    raise NotFoundError(f"Conversation not found: {conversation_id}")

                sent_at = next_sent_at(
                    conversation.last_message_at, datetime.now(timezone.utc)
                )
                message = MessageModel(
                    conversation_id=conversation.id,
                    sender_id=uuid.UUID(sender_id),
                    content=content,
                    sent_at=sent_at,
                )
                session.add(message)
                conversation.last_message_at = sent_at
                conversation.last_message_preview = preview
                conversation.updated_at = sent_at
                await session.flush()
                await session.refresh(message)
            return _model_to_message(message)
        msg = "session factory yielded no session"
        raise RuntimeError(msg)

    async def list_messages(
        self, conversation_id: str, limit: int, before: datetime | None = None
    ) -> list[tuple[Message, UserSummary | None]]:
        """Newest-first messages, strictly older than ``before`` when given.

        Senders are outer-joined so messages from deleted accounts are
        still returned, with no sender attached.
        """
        stmt = (
            select(MessageModel, User)
            .outerjoin(
                User,
                and_(User.id == MessageModel.sender_id, User.is_active == True),  # noqa: E712
            )
            .where(MessageModel.conversation_id == uuid.UUID(conversation_id))
        )
        if before is not None:
            stmt = stmt.where(MessageModel.sent_at < before)
        stmt = stmt.order_by(MessageModel.sent_at.desc()).limit(limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                (_model_to_message(message), _user_to_summary(user))
                for message, user in result.all()
            ]
        return []

    async def mark_read(
        self,
        conversation_id: str,
        reader_id: str,
        message_ids: Sequence[str] | None = None,
    ) -> int:
        """Stamp ``read_at`` on unread messages the reader received.

        Returns:
            Number of messages that transitioned from unread to read.
        """
        stmt = (
            update(MessageModel)
            .where(
                MessageModel.conversation_id == uuid.UUID(conversation_id),
                MessageModel.sender_id != uuid.UUID(reader_id),
                MessageModel.read_at.is_(None),
            )
            .values(read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if message_ids:
            stmt = stmt.where(MessageModel.id.in_([uuid.UUID(str(m)) for m in message_ids]))

        async for session in self._session_factory():
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0
        return 0
