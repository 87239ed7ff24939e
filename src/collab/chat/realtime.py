"""Credentials for the hosted realtime backend that delivers chat updates.

Message delivery itself happens in the hosted service: clients subscribe to
row changes on ``messages`` and ``conversations``. This module mints the
short-lived JWT those subscriptions authenticate with, signed with the
realtime project's secret and shaped the way its row-level policies
expect (``aud``/``role`` = authenticated, ``sub`` = user id).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt

from src.collab.chat.schemas import RealtimeChannel, RealtimeClientConfig, RealtimeToken
from src.collab.core.errors import AuthenticationError

logger = structlog.get_logger(__name__)

_AUDIENCE = "authenticated"
_ALGORITHM = "HS256"


class RealtimeTokenIssuer:
    """Issue and verify realtime access tokens.

    Args:
        url: Realtime project URL (also used as the token issuer).
        anon_key: Public anon key handed to clients.
        jwt_secret: Project JWT secret used to sign tokens.
        expire_minutes: Token lifetime.
    """

    def __init__(
        self, url: str, anon_key: str, jwt_secret: str, expire_minutes: int = 60
    ) -> None:
        self._url = url
        self._anon_key = anon_key
        self._secret = jwt_secret
        self._ttl = timedelta(minutes=expire_minutes)

    def issue(self, user_id: str, email: str) -> RealtimeToken:
        now = datetime.now(timezone.utc)
        expires_at = now + self._ttl
        claims = {
            "sub": user_id,
            "email": email,
            "aud": _AUDIENCE,
            "role": _AUDIENCE,
            "iss": self._url,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "user_metadata": {"user_id": user_id, "email": email},
        }
        token = jwt.encode(claims, self._secret, algorithm=_ALGORITHM)
        logger.debug("realtime.token_issued", user_id=user_id)
        return RealtimeToken(access_token=token, expires_at=expires_at, user_id=user_id)

    def verify(self, token: str) -> dict:
        """Decode a realtime token.

        Returns:
            ``{"user_id": ..., "email": ...}``

        Raises:
            AuthenticationError: Invalid signature, audience, or expired token.
        """
        try:
            payload = jwt.decode(
                token, self._secret, algorithms=[_ALGORITHM], audience=_AUDIENCE
            )
        except JWTError as exc:
            raise AuthenticationError("Invalid realtime token") from exc
        return {"user_id": payload["sub"], "email": payload.get("email")}

    @staticmethod
    def channel(name: str, table: str, filter: str | None = None) -> RealtimeChannel:
        return RealtimeChannel(name=name, table=table, filter=filter)

    def client_config(self, user_id: str, email: str) -> RealtimeClientConfig:
        """Everything a client needs to open its chat subscriptions."""
        token = self.issue(user_id, email)
        return RealtimeClientConfig(
            url=self._url,
            anon_key=self._anon_key,
            access_token=token.access_token,
            expires_at=token.expires_at,
            channels=[
                self.channel("messages", "messages"),
                self.channel("conversations", "conversations"),
            ],
        )
