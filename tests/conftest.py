"""Shared fixtures: a SQLite database per test and a scripted fake Spotify."""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.config import Settings
from api.services import Services, build_services
from events import EventBus
from models import Base

USER_ID = "user-1"


def play(
    track_id: str,
    played_at: datetime,
    name: Optional[str] = None,
    artists: tuple[str, ...] = ("Artist",),
    duration_ms: int = 180000,
) -> dict:
    """One item of a recently-played payload."""
    return {
        "track": {
            "id": track_id,
            "name": name or f"Track {track_id}",
            "duration_ms": duration_ms,
            "artists": [{"name": a} for a in artists],
            "album": {"name": "Album", "images": [{"url": f"https://img/{track_id}"}]},
        },
        "played_at": played_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
        + "Z",
    }


def recently_played(*items: dict) -> dict:
    return {"items": list(items), "cursors": {"after": "1", "before": "0"}}


class FakeSpotify:
    """Scripted accounts service and Web API behind ``httpx.MockTransport``.

    Responses queued for a path are served in order; the last one keeps
    being served once the queue is down to it.
    """

    def __init__(self) -> None:
        self.token_responses: list[httpx.Response] = []
        self.api_responses: dict[str, list[httpx.Response]] = defaultdict(list)
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_delay = 0.0

    def queue(self, path: str, *responses: httpx.Response) -> None:
        self.api_responses[path].extend(responses)

    def api_requests(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == f"/v1{path}"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "accounts.spotify.com":
            return await self._token(request)

        path = request.url.path.removeprefix("/v1")
        queued = self.api_responses.get(path)
        if not queued:
            return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})
        return queued.pop(0) if len(queued) > 1 else queued[0]

    async def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_calls += 1
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        if self.token_responses:
            return self.token_responses.pop(0)
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.token_calls}",
                "token_type": "Bearer",
                "expires_in": 3600,
                "scope": "user-read-recently-played",
            },
        )


def json_response(status_code: int, body: Any = None, **kwargs: Any) -> httpx.Response:
    if body is None:
        return httpx.Response(status_code, **kwargs)
    return httpx.Response(status_code, json=body, **kwargs)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file with no retry delays."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        spotify_client_id="client-id",
        spotify_client_secret="client-secret",
        spotify_retry_base_delay=0.0,
        spotify_retry_max_delay=0.0,
        recap_batch_delay_seconds=0.0,
    )


@pytest.fixture
async def session_factory(settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fake_spotify() -> FakeSpotify:
    return FakeSpotify()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
async def services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_spotify: FakeSpotify,
    events: EventBus,
) -> AsyncGenerator[Services, None]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_spotify.handler))
    services = build_services(settings, session_factory, http_client=http_client, events=events)
    yield services
    await services.aclose()


@pytest.fixture
async def connected_user(services: Services) -> str:
    """A user holding a token that is good for another hour."""
    await services.credentials.store_initial_credential(
        USER_ID, "access-0", "refresh-0", expires_in_seconds=3600
    )
    return USER_ID


class Recorder:
    """Collects the payloads of one event."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def __call__(self, **payload: Any) -> None:
        self.calls.append(payload)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
