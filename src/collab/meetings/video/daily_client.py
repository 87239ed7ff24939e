"""Async HTTP client wrapper for the Daily.co REST API.

Provides DailyClient with retry logic (tenacity, 3 attempts, exponential
backoff 1-10s). Only transport failures and 5xx answers are retried; a 4xx
is the provider rejecting the request and is surfaced immediately. Every
final failure is raised as VideoProviderError so callers can tell provider
trouble apart from validation or conflict errors.
"""

from __future__ import annotations

import secrets
import time

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.collab.core.errors import UpstreamError
from src.collab.core.monitoring import video_provider_requests_total
from src.collab.meetings.schemas import VideoRoom

logger = structlog.get_logger(__name__)


class VideoProviderError(UpstreamError):
    """The video room provider failed or rejected a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = status_code


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


_daily_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def _error_detail(response: httpx.Response) -> str:
    """Pull Daily's ``info``/``error`` fields out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("info") or body.get("error") or response.status_code)
    return str(body)[:200]


def generate_room_name(prefix: str) -> str:
    """Unique room name: ``<prefix>-<epoch ms>-<6 hex chars>``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class DailyClient:
    """Async client for Daily.co room provisioning.

    Args:
        api_key: Daily API key (sent as a Bearer token).
        base_url: API root, e.g. https://api.daily.co/v1.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.daily.co/v1",
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    @_daily_retry
    async def _post_room(self, body: dict) -> httpx.Response:
        async with self._client() as client:
            response = await client.post(f"{self._base_url}/rooms", json=body)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

    @_daily_retry
    async def _delete_room(self, name: str) -> httpx.Response:
        async with self._client() as client:
            response = await client.delete(f"{self._base_url}/rooms/{name}")
            if response.status_code >= 500:
                response.raise_for_status()
            return response

    async def create_room(
        self, name: str, is_private: bool = False, exp: int | None = None
    ) -> VideoRoom:
        """Provision a room.

        Args:
            name: Unique room name.
            is_private: Private rooms require meeting tokens to join.
            exp: Optional Unix timestamp after which the room expires.

        Returns:
            VideoRoom with the join URL and provider room name.

        Raises:
            VideoProviderError: Transport failure or non-2xx answer.
        """
        body: dict = {
            "name": name,
            "privacy": "private" if is_private else "public",
            "properties": {},
        }
        if exp is not None:
            body["properties"]["exp"] = exp

        try:
            response = await self._post_room(body)
        except httpx.HTTPError as exc:
            video_provider_requests_total.labels(operation="create_room", outcome="error").inc()
            logger.error("daily.room_create_failed", room_name=name, error=str(exc))
            raise VideoProviderError(
                f"Failed to create Daily room: {exc}",
                status_code=getattr(getattr(exc, "response", None), "status_code", None),
            ) from exc

        if not response.is_success:
            detail = _error_detail(response)
            video_provider_requests_total.labels(operation="create_room", outcome="rejected").inc()
            logger.warning(
                "daily.room_create_rejected",
                room_name=name,
                status_code=response.status_code,
                detail=detail,
            )
            raise VideoProviderError(
                f"Failed to create Daily room: {detail}", status_code=response.status_code
            )

        data = response.json()
        video_provider_requests_total.labels(operation="create_room", outcome="ok").inc()
        logger.info("daily.room_created", room_name=data.get("name"), url=data.get("url"))
        return VideoRoom(url=data["url"], name=data["name"])

    async def delete_room(self, name: str) -> bool:
        """Delete a room.

        Returns:
            True if the provider deleted it, False if it was already gone (404).

        Raises:
            VideoProviderError: Transport failure or any other non-2xx answer.
        """
        try:
            response = await self._delete_room(name)
        except httpx.HTTPError as exc:
            video_provider_requests_total.labels(operation="delete_room", outcome="error").inc()
            logger.error("daily.room_delete_failed", room_name=name, error=str(exc))
            raise VideoProviderError(
                f"Failed to delete Daily room: {exc}",
                status_code=getattr(getattr(exc, "response", None), "status_code", None),
            ) from exc

        if response.status_code == 404:
            video_provider_requests_total.labels(operation="delete_room", outcome="missing").inc()
            logger.info("daily.room_already_deleted", room_name=name)
            return False

        if not response.is_success:
            detail = _error_detail(response)
            video_provider_requests_total.labels(operation="delete_room", outcome="rejected").inc()
            logger.warning(
                "daily.room_delete_rejected",
                room_name=name,
                status_code=response.status_code,
                detail=detail,
            )
            raise VideoProviderError(
                f"Failed to delete Daily room: {detail}", status_code=response.status_code
            )

        video_provider_requests_total.labels(operation="delete_room", outcome="ok").inc()
        logger.info("daily.room_deleted", room_name=name)
        return bool(response.json().get("deleted", True))
