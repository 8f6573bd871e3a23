"""Spotify OAuth token exchange and per-user credential lifecycle."""

import asyncio
import base64
import logging
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from events import REAUTHORIZATION_REQUIRED, EventBus
from integrations.spotify.exceptions import (
    NotConnectedError,
    RateLimitedError,
    ReauthRequiredError,
    UpstreamResponseError,
    UpstreamUnavailableError,
)
from integrations.spotify.types import TokenGrant
from models import SpotifyCredential
from models.base import utcnow

logger = logging.getLogger(__name__)


class SpotifyTokenEndpoint:
    """Client for the accounts service token endpoint.

    Both grants are form-encoded POSTs authenticated with the app's client
    credentials in a Basic auth header.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        accounts_url: str = "https://accounts.spotify.com",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_url = f"{accounts_url.rstrip('/')}/api/token"
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

    def _basic_auth(self) -> str:
        auth_str = f"{self.client_id}:{self.client_secret}"
        return base64.b64encode(auth_str.encode()).decode()

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for an access/refresh token pair."""
        return await self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            rejected_message="Spotify rejected the authorization code",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        return await self._post(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            rejected_message="Spotify rejected the refresh token, please reconnect",
        )

    async def _post(self, data: dict, rejected_message: str) -> TokenGrant:
        client = await self._get_client()
        try:
            response = await client.post(
                self.token_url,
                headers={
                    "Authorization": f"Basic {self._basic_auth()}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data=data,
            )
        except httpx.TransportError as e:
            logger.warning("Token endpoint unreachable: %s", e)
            raise UpstreamUnavailableError("Spotify accounts service unreachable") from e

        if response.status_code == 200:
            return TokenGrant.from_api(response.json())

        # invalid_grant / invalid_client come back as 400 (sometimes 401)
        if response.status_code in (400, 401):
            logger.warning(
                "Token endpoint rejected %s grant (status=%d)",
                data["grant_type"],
                response.status_code,
            )
            raise ReauthRequiredError(rejected_message)
        if response.status_code == 429:
            raise RateLimitedError(parse_retry_after(response))
        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Spotify accounts service error ({response.status_code})"
            )
        raise UpstreamResponseError(
            response.status_code, f"Unexpected token endpoint response ({response.status_code})"
        )


def parse_retry_after(response: httpx.Response, default: float = 1.0) -> float:
    """Seconds from a Retry-After header, falling back to ``default``."""
    raw = response.headers.get("Retry-After")
    if raw is None:
        return default
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return default


class CredentialManager:
    """Owns each user's token pair and hands out valid access tokens.

    Refreshes are serialized per user: concurrent callers queue on the
    user's lock and, once inside, re-read the row so that only the first
    one talks to the token endpoint.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_endpoint: SpotifyTokenEndpoint,
        refresh_margin_seconds: int = 60,
        events: Optional[EventBus] = None,
    ) -> None:
        self._session_factory = session_factory
        self._token_endpoint = token_endpoint
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._events = events
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def _load(self, session: AsyncSession, user_id: str) -> SpotifyCredential:
        stmt = select(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
        credential = (await session.execute(stmt)).scalar_one_or_none()
        if credential is None:
            raise NotConnectedError(user_id)
        if credential.needs_reauth:
            raise ReauthRequiredError(user_id=user_id)
        return credential

    async def get_valid_token(self, user_id: str) -> str:
        """Return an access token that is valid for at least the margin."""
        async with self._session_factory() as session:
            credential = await self._load(session, user_id)
            if not credential.expires_within(self.refresh_margin):
                return credential.access_token
        return await self._refresh(user_id, rejected_token=None)

    async def force_refresh(self, user_id: str, rejected_token: str) -> str:
        """Refresh regardless of expiry after Spotify rejected ``rejected_token``.

        If another caller already replaced that token, the replacement is
        returned without a second exchange.
        """
        return await self._refresh(user_id, rejected_token=rejected_token)

    async def _refresh(self, user_id: str, rejected_token: Optional[str]) -> str:
        async with self._lock_for(user_id):
            async with self._session_factory() as session:
                credential = await self._load(session, user_id)
                if rejected_token is None:
                    if not credential.expires_within(self.refresh_margin):
                        return credential.access_token
                elif credential.access_token != rejected_token:
                    return credential.access_token

                logger.info("Refreshing Spotify token for user %s", user_id)
                try:
                    grant = await self._token_endpoint.refresh(credential.refresh_token)
                except ReauthRequiredError:
                    credential.needs_reauth = True
                    await session.commit()
                    logger.warning("Spotify refresh token rejected for user %s", user_id)
                    await self._emit_reauth(user_id)
                    raise ReauthRequiredError(user_id=user_id)

                access_token = grant.access_token
                credential.access_token = access_token
                if grant.refresh_token:
                    credential.refresh_token = grant.refresh_token
                if grant.scope:
                    credential.scopes = grant.scope
                credential.expires_at = utcnow() + timedelta(seconds=grant.expires_in)
                await session.commit()
                return access_token

    async def mark_reauth_required(self, user_id: str) -> None:
        """Flag the credential as unusable until the user reconnects."""
        async with self._session_factory() as session:
            stmt = select(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
            credential = (await session.execute(stmt)).scalar_one_or_none()
            if credential is None or credential.needs_reauth:
                return
            credential.needs_reauth = True
            await session.commit()
        logger.warning("Spotify access revoked for user %s, reconnect required", user_id)
        await self._emit_reauth(user_id)

    async def _emit_reauth(self, user_id: str) -> None:
        if self._events:
            await self._events.emit(REAUTHORIZATION_REQUIRED, user_id=user_id)

    async def store_initial_credential(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: int,
        scopes: Optional[str] = None,
        token_type: str = "Bearer",
    ) -> None:
        """Upsert the user's credential after an authorization-code exchange."""
        expires_at = utcnow() + timedelta(seconds=expires_in_seconds)
        async with self._lock_for(user_id):
            async with self._session_factory() as session:
                stmt = select(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
                existing = (await session.execute(stmt)).scalar_one_or_none()

                if existing:
                    existing.access_token = access_token
                    existing.refresh_token = refresh_token
                    existing.expires_at = expires_at
                    existing.token_type = token_type
                    existing.scopes = scopes
                    existing.needs_reauth = False
                else:
                    session.add(
                        SpotifyCredential(
                            user_id=user_id,
                            access_token=access_token,
                            refresh_token=refresh_token,
                            expires_at=expires_at,
                            token_type=token_type,
                            scopes=scopes,
                            needs_reauth=False,
                        )
                    )
                await session.commit()
        logger.info("Stored Spotify credential for user %s", user_id)

    async def connect(self, user_id: str, authorization_code: str) -> TokenGrant:
        """Finish the OAuth flow: exchange the code and store the credential."""
        grant = await self._token_endpoint.exchange_code(authorization_code)
        if not grant.refresh_token:
            raise ReauthRequiredError("Spotify did not return a refresh token", user_id)
        await self.store_initial_credential(
            user_id,
            grant.access_token,
            grant.refresh_token,
            grant.expires_in,
            scopes=grant.scope,
            token_type=grant.token_type,
        )
        return grant

    async def update_profile(
        self, user_id: str, spotify_user_id: str, display_name: Optional[str]
    ) -> None:
        """Record which Spotify account the credential belongs to."""
        async with self._session_factory() as session:
            credential = await self._load(session, user_id)
            credential.spotify_user_id = spotify_user_id
            credential.spotify_display_name = display_name
            await session.commit()

    async def disconnect(self, user_id: str) -> bool:
        """Delete the credential. Returns False if there was none.

        The user's lock is kept so a reconnect still serializes with
        refreshes that were queued behind the delete.
        """
        async with self._lock_for(user_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
                )
                await session.commit()
        removed = bool(result.rowcount)
        if removed:
            logger.info("Disconnected Spotify for user %s", user_id)
        return removed

    async def get_credential(self, user_id: str) -> Optional[SpotifyCredential]:
        """The stored row, or None. Does not refresh."""
        async with self._session_factory() as session:
            stmt = select(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def has_credential(self, user_id: str) -> bool:
        return await self.get_credential(user_id) is not None

    async def list_connected_user_ids(self, include_reauth: bool = True) -> list[str]:
        """User ids with a credential on file, in a stable order."""
        async with self._session_factory() as session:
            stmt = select(SpotifyCredential.user_id).order_by(SpotifyCredential.user_id)
            if not include_reauth:
                stmt = stmt.where(SpotifyCredential.needs_reauth.is_(False))
            return list((await session.execute(stmt)).scalars().all())
