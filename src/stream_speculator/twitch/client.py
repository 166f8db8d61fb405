"""Twitch Helix REST client.

Covers the calls the handlers need: stream and user lookup, EventSub
subscription management, and the app access token (Client Credentials
grant) they all authenticate with.  The token is cached on the instance and
refreshed once when Helix answers 401.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from stream_speculator.core.exceptions import (
    TwitchApiError,
    TwitchAuthError,
    TwitchRateLimitError,
)
from stream_speculator.twitch.config import (
    EVENTSUB_VERSION,
    TWITCH_API_BASE,
    TWITCH_TOKEN_URL,
)

logger = logging.getLogger(__name__)


class TwitchClient:
    """Async Twitch Helix client.

    Args:
        client_id: Twitch application Client ID.
        client_secret: Twitch application Client Secret.
        webhook_callback: Public URL EventSub should deliver notifications to.
        webhook_secret: Shared secret EventSub signs notifications with.
        http_client: Optional injected :class:`httpx.AsyncClient` for testing.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_callback: str = "",
        webhook_secret: str = "",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_callback = webhook_callback
        self.webhook_secret = webhook_secret
        self._http_client = http_client or httpx.AsyncClient(
            base_url=TWITCH_API_BASE,
            headers={"User-Agent": "StreamSpeculator/1.0"},
            timeout=30.0,
        )
        # Cached app access token to avoid re-fetching on every request
        self._app_token: str | None = None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_app_token(self) -> str:
        """Obtain an app access token via the Client Credentials grant.

        Returns:
            App access token string, cached for the lifetime of the client.

        Raises:
            TwitchAuthError: If the token request fails.
        """
        if self._app_token:
            return self._app_token

        try:
            response = await self._http_client.post(
                TWITCH_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TwitchAuthError(
                f"twitch: failed to obtain app access token: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise TwitchAuthError(
                f"twitch: connection error obtaining app access token: {exc}"
            ) from exc

        token = response.json().get("access_token")
        if not token:
            raise TwitchAuthError("twitch: token response missing 'access_token' field")
        self._app_token = str(token)
        return self._app_token

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry_auth: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated Helix request.

        Raises:
            TwitchRateLimitError: On HTTP 429.
            TwitchAuthError: If the token is rejected twice in a row.
            TwitchApiError: On any other HTTP or connection failure.
        """
        token = await self.get_app_token()
        headers = {"Client-Id": self.client_id, "Authorization": f"Bearer {token}"}
        try:
            response = await self._http_client.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise TwitchApiError(f"twitch: request error on {path}: {exc}") from exc

        if response.status_code == 401:
            self._app_token = None
            if retry_auth:
                logger.info("twitch: app token rejected on %s, refreshing", path)
                return await self._request(method, path, retry_auth=False, **kwargs)
            raise TwitchAuthError(f"twitch: app token rejected on {path}", status_code=401)

        if response.status_code == 429:
            retry_after = float(response.headers.get("Retry-After", "60"))
            raise TwitchRateLimitError(
                f"twitch: rate limited on {path}; retry_after={retry_after}s",
                retry_after=retry_after,
            )

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TwitchApiError(
                f"twitch: HTTP {exc.response.status_code} on {path}",
                status_code=exc.response.status_code,
            ) from exc
        return response

    # ------------------------------------------------------------------
    # Helix endpoints
    # ------------------------------------------------------------------

    async def get_stream_by_user_id(self, user_id: str) -> dict[str, Any] | None:
        """Return the live stream of broadcaster *user_id*, or ``None`` if offline."""
        response = await self._request("GET", "/streams", params={"user_id": user_id})
        streams = response.json().get("data", [])
        return streams[0] if streams else None

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Return the Helix user record for *user_id*, or ``None`` if unknown."""
        response = await self._request("GET", "/users", params={"id": user_id})
        users = response.json().get("data", [])
        return users[0] if users else None

    async def subscribe(self, event_type: str, channel_id: str) -> dict[str, Any]:
        """Create a webhook EventSub subscription for one channel.

        Twitch answers 409 when the subscription already exists; that is
        treated as success and returns an empty dict.

        Args:
            event_type: EventSub type, e.g. ``"stream.online"``.
            channel_id: Broadcaster user id the subscription is conditioned on.

        Returns:
            The created subscription record (``id``, ``type``, ``status``, ...).
        """
        body = {
            "type": event_type,
            "version": EVENTSUB_VERSION,
            "condition": {"broadcaster_user_id": channel_id},
            "transport": {
                "method": "webhook",
                "callback": self.webhook_callback,
                "secret": self.webhook_secret,
            },
        }
        try:
            response = await self._request("POST", "/eventsub/subscriptions", json=body)
        except TwitchApiError as exc:
            if exc.status_code == 409:
                logger.info("twitch: %s already subscribed for %s", event_type, channel_id)
                return {}
            raise
        data = response.json().get("data", [])
        return data[0] if data else {}

    async def unsubscribe(self, subscription_id: str) -> None:
        await self._request("DELETE", "/eventsub/subscriptions", params={"id": subscription_id})

    async def aclose(self) -> None:
        await self._http_client.aclose()
