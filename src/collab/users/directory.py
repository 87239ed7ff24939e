"""Read-only user lookup used to validate participants and recipients."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.collab.models.user import User

logger = structlog.get_logger(__name__)


class UserSummary(BaseModel):
    """Minimal public identity of a user."""

    id: uuid.UUID
    name: str
    email: str | None = None


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _model_to_summary(model: User) -> UserSummary:
    return UserSummary(id=model.id, name=model.name or model.email, email=model.email)


class UserDirectory:
    """Resolve user ids against the users table.

    Malformed ids resolve to nothing rather than raising, so callers can
    treat "not a uuid" and "no such user" the same way.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def resolve_user(self, user_id: str) -> UserSummary | None:
        """Return the active user with this id, or None."""
        parsed = _parse_uuid(user_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(User.id == parsed, User.is_active == True)  # noqa: E712
            )
            model = result.scalar_one_or_none()
            return _model_to_summary(model) if model else None

    async def resolve_users(self, user_ids: Iterable[str]) -> dict[str, UserSummary]:
        """Resolve many ids in one query.

        Returns:
            Mapping of the input id string to its summary. Ids that do not
            resolve are absent from the mapping.
        """
        parsed = {str(uid): _parse_uuid(uid) for uid in user_ids}
        wanted = [p for p in parsed.values() if p is not None]
        if not wanted:
            return {}
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(User.id.in_(wanted), User.is_active == True)  # noqa: E712
            )
            found = {m.id: _model_to_summary(m) for m in result.scalars().all()}
            return {raw: found[p] for raw, p in parsed.items() if p in found}
        return {}
