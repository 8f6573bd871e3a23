"""Wiring of the sync engine's long-lived components."""

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import Settings
from events import EventBus
from ingest.polling import PollingManager, PollingPolicy
from ingest.spotify_sync import HistorySynchronizer
from integrations.spotify.client import SpotifyClient
from integrations.spotify.credentials import CredentialManager, SpotifyTokenEndpoint
from recap.aggregation import RecapService


@dataclass
class Services:
    """One instance per application (or per job run)."""

    settings: Settings
    events: EventBus
    http_client: httpx.AsyncClient
    token_endpoint: SpotifyTokenEndpoint
    credentials: CredentialManager
    spotify: SpotifyClient
    synchronizer: HistorySynchronizer
    polling: PollingManager
    recaps: RecapService

    async def aclose(self) -> None:
        await self.polling.stop_all()
        await self.spotify.close()
        await self.token_endpoint.close()
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    events: Optional[EventBus] = None,
) -> Services:
    """Build the component graph from settings.

    ``http_client`` is shared by the token endpoint and the API client;
    tests pass one backed by ``httpx.MockTransport``.
    """
    events = events or EventBus()
    http_client = http_client or httpx.AsyncClient(timeout=settings.spotify_timeout_seconds)

    token_endpoint = SpotifyTokenEndpoint(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        accounts_url=settings.spotify_accounts_url,
        http_client=http_client,
    )
    credentials = CredentialManager(
        session_factory,
        token_endpoint,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
        events=events,
    )
    spotify = SpotifyClient(
        credentials,
        http_client=http_client,
        base_url=settings.spotify_api_url,
        max_attempts=settings.spotify_max_attempts,
        retry_base_delay=settings.spotify_retry_base_delay,
        retry_max_delay=settings.spotify_retry_max_delay,
    )
    synchronizer = HistorySynchronizer(
        spotify, session_factory, page_size=settings.recently_played_limit
    )
    polling = PollingManager(synchronizer, PollingPolicy.from_settings(settings), events=events)
    recaps = RecapService(
        session_factory,
        top_n=settings.recap_top_n,
        timezone=settings.recap_timezone,
        events=events,
    )
    return Services(
        settings=settings,
        events=events,
        http_client=http_client,
        token_endpoint=token_endpoint,
        credentials=credentials,
        spotify=spotify,
        synchronizer=synchronizer,
        polling=polling,
        recaps=recaps,
    )
