"""Spotify Web API client for listening data."""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from integrations.spotify.credentials import CredentialManager, parse_retry_after
from integrations.spotify.exceptions import (
    InsufficientScopeError,
    NoActiveDeviceError,
    RateLimitedError,
    UpstreamAuthError,
    UpstreamResponseError,
    UpstreamUnavailableError,
)
from integrations.spotify.types import (
    CurrentlyPlaying,
    RecentlyPlayedPage,
    SpotifyProfile,
    TopArtist,
    TopTrack,
)

logger = logging.getLogger(__name__)

TIME_RANGES = ("short_term", "medium_term", "long_term")

# Spotify caps recently-played and top-items pages at 50
MAX_PAGE_SIZE = 50

# Playback endpoints that answer 404 when no device is active
DEVICE_ENDPOINTS = ("/me/player/queue", "/me/player/currently-playing")


class _ServerError(Exception):
    """A 5xx response; retried like a network failure."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Spotify server error ({status_code})")
        self.status_code = status_code


class SpotifyClient:
    """Client for the Spotify Web API on behalf of connected users.

    Every call takes a user id, gets a valid token from the credential
    manager and maps the response onto the typed results or the closed
    error taxonomy in ``integrations.spotify.exceptions``.
    """

    BASE_URL = "https://api.spotify.com/v1"

    def __init__(
        self,
        credentials: CredentialManager,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the Spotify client.

        Args:
            credentials: Source of valid access tokens.
            http_client: Shared HTTP client; one is created lazily if omitted.
            base_url: API root, overridable for tests.
            max_attempts: Attempts for 5xx/network failures before giving up.
            retry_base_delay: First backoff delay in seconds, doubled per attempt.
            retry_max_delay: Upper bound for a single backoff delay.
            timeout: Request timeout for the lazily created client.
        """
        self.credentials = credentials
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if we created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()

    async def _send(
        self, method: str, endpoint: str, token: str, **kwargs: Any
    ) -> httpx.Response:
        """Send once, retrying 5xx and transport errors with exponential backoff."""
        client = await self._get_client()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            retry=retry_if_exception_type((_ServerError, httpx.TransportError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await client.request(
                        method,
                        f"{self.base_url}{endpoint}",
                        headers={"Authorization": f"Bearer {token}"},
                        **kwargs,
                    )
                    if response.status_code >= 500:
                        raise _ServerError(response.status_code)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(
                "Spotify %s %s failed after %d attempts: %s",
                method,
                endpoint,
                self.max_attempts,
                cause,
            )
            raise UpstreamUnavailableError(f"Spotify unavailable: {cause}") from cause
        return response

    async def _request(
        self, user_id: str, method: str, endpoint: str, **kwargs: Any
    ) -> Optional[dict]:
        """Make an authenticated request and classify the response.

        Returns the decoded body, or None for 204 / empty bodies.
        """
        token = await self.credentials.get_valid_token(user_id)
        response = await self._send(method, endpoint, token, **kwargs)

        if response.status_code == 401:
            # valid on paper but rejected: one forced refresh, one retry
            logger.info("Spotify rejected token for user %s, forcing refresh", user_id)
            token = await self.credentials.force_refresh(user_id, token)
            response = await self._send(method, endpoint, token, **kwargs)
            if response.status_code == 401:
                await self.credentials.mark_reauth_required(user_id)
                raise UpstreamAuthError(user_id)

        return self._classify(response, user_id, endpoint)

    def _classify(
        self, response: httpx.Response, user_id: str, endpoint: str
    ) -> Optional[dict]:
        status = response.status_code

        if status == 204:
            return None
        if 200 <= status < 300:
            return response.json() if response.content else None

        if status == 403:
            raise InsufficientScopeError(user_id=user_id)
        if status == 404 and endpoint in DEVICE_ENDPOINTS:
            raise NoActiveDeviceError(user_id)
        if status == 429:
            retry_after = parse_retry_after(response)
            logger.warning(
                "Spotify rate limited user %s on %s, retry after %gs",
                user_id,
                endpoint,
                retry_after,
            )
            raise RateLimitedError(retry_after, user_id)

        raise UpstreamResponseError(
            status, f"Spotify {endpoint} returned {status}", user_id
        )

    async def get_profile(self, user_id: str) -> SpotifyProfile:
        """Get the connected Spotify account's profile."""
        data = await self._request(user_id, "GET", "/me")
        return SpotifyProfile.from_api(data or {})

    async def get_recently_played(
        self,
        user_id: str,
        limit: int = MAX_PAGE_SIZE,
        after: Optional[datetime] = None,
    ) -> RecentlyPlayedPage:
        """Get recently played tracks.

        Args:
            user_id: Local user id.
            limit: Page size, capped at 50 by Spotify.
            after: Only return plays strictly after this instant.

        Returns:
            Page of plays, newest first.
        """
        params: dict[str, Any] = {"limit": max(1, min(limit, MAX_PAGE_SIZE))}
        if after is not None:
            params["after"] = int(after.timestamp() * 1000)

        data = await self._request(
            user_id, "GET", "/me/player/recently-played", params=params
        )
        return RecentlyPlayedPage.from_api(data or {})

    async def get_top_tracks(
        self, user_id: str, time_range: str = "medium_term", limit: int = 20
    ) -> list[TopTrack]:
        """Get the user's top tracks for a time range."""
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {TIME_RANGES}")
        data = await self._request(
            user_id,
            "GET",
            "/me/top/tracks",
            params={"time_range": time_range, "limit": max(1, min(limit, MAX_PAGE_SIZE))},
        )
        return [TopTrack.from_api(t) for t in (data or {}).get("items", [])]

    async def get_top_artists(
        self, user_id: str, time_range: str = "medium_term", limit: int = 20
    ) -> list[TopArtist]:
        """Get the user's top artists for a time range."""
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {TIME_RANGES}")
        data = await self._request(
            user_id,
            "GET",
            "/me/top/artists",
            params={"time_range": time_range, "limit": max(1, min(limit, MAX_PAGE_SIZE))},
        )
        return [TopArtist.from_api(a) for a in (data or {}).get("items", [])]

    async def get_currently_playing(self, user_id: str) -> Optional[CurrentlyPlaying]:
        """Get the track playing right now, or None when nothing is."""
        data = await self._request(user_id, "GET", "/me/player/currently-playing")
        if not data:
            return None
        return CurrentlyPlaying.from_api(data)

    async def add_to_queue(self, user_id: str, track_uri: str) -> None:
        """Append a track to the active device's queue.

        Raises NoActiveDeviceError or InsufficientScopeError (Premium only)
        rather than pretending the track was queued.
        """
        await self._request(user_id, "POST", "/me/player/queue", params={"uri": track_uri})
        logger.info("Queued %s for user %s", track_uri, user_id)
