"""
Google Calendar push channel client.
Opens and closes events.watch channels for the primary calendar.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import (
    ChannelRegistration,
    ProviderError,
    ProviderErrorClass,
)

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

REQUEST_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def classify_status(status_code: int) -> ProviderErrorClass:
    """Map an HTTP status from the Calendar API to the provider error taxonomy."""
    if status_code == 401:
        return ProviderErrorClass.AUTH_INVALID
    if status_code == 429:
        return ProviderErrorClass.RATE_LIMITED
    if status_code >= 500 or status_code in (408, 409):
        return ProviderErrorClass.TRANSIENT
    return ProviderErrorClass.PERMANENT


class GoogleWatchError(ProviderError):
    """Calendar watch/stop call failed."""

    def __init__(
        self,
        message: str,
        error_class: ProviderErrorClass = ProviderErrorClass.TRANSIENT,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message, error_class=error_class, status_code=status_code)
        self.response_data = response_data or {}


class GoogleCalendarWatchClient:
    """SubscriptionProvider for Google Calendar."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        config: Settings | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
        max_retries: int = MAX_RETRIES,
    ):
        self.config = config or settings
        self.backoff_factor = backoff_factor
        self.max_retries = max(1, max_retries)
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar watch API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise GoogleWatchError(
                        f"Calendar watch API unreachable: {e}",
                        error_class=ProviderErrorClass.TRANSIENT,
                    ) from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar watch API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Calendar watch API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Parse a Calendar API response.

        Raises:
            GoogleWatchError: classified by HTTP status
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise GoogleWatchError(
                    f"Invalid {operation} response format: {e}",
                    error_class=ProviderErrorClass.PERMANENT,
                    status_code=response.status_code,
                ) from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}
        error_message = error_data.get("error", {}).get("message", "Unknown Calendar API error")
        error_class = classify_status(response.status_code)

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_class=error_class.value,
            error_message=error_message,
        )
        raise GoogleWatchError(
            f"Calendar {operation} failed (HTTP {response.status_code}): {error_message}",
            error_class=error_class,
            status_code=response.status_code,
            response_data=error_data,
        )

    async def watch(
        self, user_id: str, access_token: str, channel_id: str, channel_token: str
    ) -> ChannelRegistration:
        """
        Open a push channel on the user's primary calendar.

        Args:
            user_id: Owner of the calendar, for logging
            access_token: Valid OAuth access token
            channel_id: Unique id for the new channel
            channel_token: Secret Google echoes back in X-Goog-Channel-Token

        Returns:
            ChannelRegistration with Google's resource id and expiration
        """
        ttl = timedelta(hours=self.config.WEBHOOK_CHANNEL_TTL_HOURS)
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": self.config.WEBHOOK_CALLBACK_URL,
            "token": channel_token,
            "params": {"ttl": str(int(ttl.total_seconds()))},
        }
        url = f"{CALENDAR_API_BASE_URL}/calendars/{CALENDAR_PRIMARY}/events/watch"

        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(access_token), json=body
        )
        data = self._handle_api_response(response, "watch")

        # Google reports expiration in epoch milliseconds
        expiration = data.get("expiration")
        if expiration:
            expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        else:
            expires_at = datetime.now(UTC) + ttl

        logger.info(
            "Calendar watch channel opened",
            user_id=user_id,
            channel_id=data.get("id", channel_id),
            expires_at=expires_at.isoformat(),
        )
        return ChannelRegistration(
            channel_id=data.get("id", channel_id),
            resource_id=data.get("resourceId"),
            expires_at=expires_at,
        )

    async def stop(self, channel_id: str, resource_id: str | None, access_token: str) -> None:
        """Close a channel. A channel Google no longer knows counts as stopped."""
        url = f"{CALENDAR_API_BASE_URL}/channels/stop"
        body = {"id": channel_id, "resourceId": resource_id}

        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(access_token), json=body
        )
        if response.status_code == 404:
            logger.info("Calendar watch channel already gone", channel_id=channel_id)
            return
        self._handle_api_response(response, "stop")
        logger.info("Calendar watch channel stopped", channel_id=channel_id)
