"""Initial schema: users, meetings, participants, conversations, messages, notifications.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

- users: read by this service (owned by the identity service)
- meetings: one row per scheduled meeting with its video room; end > start
- meeting_participants: roster, unique per (meeting, user)
- conversations: canonical user pair (user_one_id < user_two_id), unique
- messages: per-conversation log indexed for newest-first keyset pages
- notifications: inbox rows produced from domain events
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── users ────────────────────────────────────────────────────────────

    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("role", sa.String(50), server_default=sa.text("'member'"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
    )

    # ── meetings ─────────────────────────────────────────────────────────

    op.create_table(
        "meetings",
        _id_column(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'SCHEDULED'"),
            nullable=False,
        ),
        sa.Column("project_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_by_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("room_url", sa.String(500), nullable=True),
        sa.Column("room_name", sa.String(200), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("end_time > start_time", name="ck_meetings_time_order"),
        sa.UniqueConstraint("room_name", name="uq_meetings_room_name"),
    )
    op.create_index(
        "ix_meetings_organizer_window",
        "meetings",
        ["created_by_id", "start_time", "end_time"],
    )
    op.create_index("ix_meetings_room_url", "meetings", ["room_url"])

    # ── meeting_participants ─────────────────────────────────────────────

    op.create_table(
        "meeting_participants",
        _id_column(),
        sa.Column(
            "meeting_id",
            UUID(as_uuid=True),
            sa.ForeignKey("meetings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), server_default=sa.text("'PARTICIPANT'"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'INVITED'"), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("meeting_id", "user_id", name="uq_meeting_participant"),
    )
    op.create_index(
        "ix_meeting_participants_meeting_id", "meeting_participants", ["meeting_id"]
    )
    op.create_index("ix_meeting_participants_user_id", "meeting_participants", ["user_id"])

    # ── conversations ────────────────────────────────────────────────────

    op.create_table(
        "conversations",
        _id_column(),
        sa.Column("user_one_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_two_id", UUID(as_uuid=True), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.String(100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_one_id", "user_two_id", name="uq_conversations_pair"),
        sa.CheckConstraint(
            "user_one_id < user_two_id", name="ck_conversations_canonical_pair"
        ),
    )
    op.create_index("ix_conversations_user_two", "conversations", ["user_two_id"])

    # ── messages ─────────────────────────────────────────────────────────

    op.create_table(
        "messages",
        _id_column(),
        sa.Column(
            "conversation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", UUID(as_uuid=True), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_messages_conversation_sent_at", "messages", ["conversation_id", "sent_at"]
    )
    op.create_index(
        "ix_messages_unread",
        "messages",
        ["conversation_id", "sender_id"],
        postgresql_where=sa.text("read_at IS NULL"),
    )

    # ── notifications ────────────────────────────────────────────────────

    op.create_table(
        "notifications",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("meeting_participants")
    op.drop_table("meetings")
    op.drop_table("users")
