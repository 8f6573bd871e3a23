"""Tests for the HTTP routes."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from api.main import create_app
from api.routes import auth as auth_routes
from api.services import Services
from conftest import USER_ID, FakeSpotify, json_response, play, recently_played
from integrations.spotify.types import RecentlyPlayedPage

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
HEADERS = {"X-User-Id": USER_ID}
RECENT = "/me/player/recently-played"


@pytest.fixture
async def client(services: Services) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealthAndIdentity:
    """Test the unauthenticated surface."""

    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_missing_user_header(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/history")

        assert response.status_code == 401


class TestAuthRoutes:
    """Test the Spotify connection flow."""

    async def test_status_when_not_connected(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/auth/spotify/status", headers=HEADERS)

        assert response.json()["connected"] is False

    async def test_login_then_callback_connects(
        self, client: httpx.AsyncClient, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.token_responses.append(
            httpx.Response(
                200,
                json={"access_token": "access-code", "refresh_token": "refresh-code", "expires_in": 3600},
            )
        )
        fake_spotify.queue("/me", json_response(200, {"id": "sp-1", "display_name": "Listener"}))

        login = await client.get("/api/auth/spotify/login", headers=HEADERS)
        query = parse_qs(urlparse(login.headers["location"]).query)
        assert query["client_id"] == ["client-id"]
        assert "user-read-recently-played" in query["scope"][0]

        callback = await client.get(
            "/api/auth/spotify/callback",
            params={"code": "auth-code", "state": query["state"][0]},
        )

        assert callback.status_code == 307
        assert "spotify=connected" in callback.headers["location"]
        status = (await client.get("/api/auth/spotify/status", headers=HEADERS)).json()
        assert status["connected"] is True
        assert status["spotify_user_id"] == "sp-1"
        assert status["display_name"] == "Listener"

    async def test_callback_with_unknown_state(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/auth/spotify/callback", params={"code": "c", "state": "forged"}
        )

        assert response.status_code == 400

    async def test_callback_with_rejected_code_redirects_with_error(
        self, client: httpx.AsyncClient, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        login = await client.get("/api/auth/spotify/login", headers=HEADERS)
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        callback = await client.get(
            "/api/auth/spotify/callback", params={"code": "bad", "state": state}
        )

        assert callback.status_code == 307
        assert "error=token_exchange_failed" in callback.headers["location"]

    async def test_expired_state_is_rejected(self, client: httpx.AsyncClient) -> None:
        auth_routes.oauth_states["old"] = {
            "created_at": datetime.now(timezone.utc) - timedelta(minutes=11),
            "user_id": USER_ID,
            "redirect_uri": "http://localhost:3000/auth/callback",
        }

        response = await client.get(
            "/api/auth/spotify/callback", params={"code": "c", "state": "old"}
        )

        assert response.status_code == 400

    async def test_disconnect(
        self, client: httpx.AsyncClient, services: Services, connected_user: str
    ) -> None:
        response = await client.post("/api/auth/spotify/disconnect", headers=HEADERS)

        assert response.json() == {"disconnected": True}
        assert await services.credentials.get_credential(connected_user) is None


class TestHistoryRoutes:
    """Test sync, listing and error mapping."""

    async def test_sync_then_list(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue(
            RECENT,
            json_response(200, recently_played(play("b", T0 + timedelta(minutes=4)), play("a", T0))),
        )

        sync = await client.post("/api/history/sync", headers=HEADERS)
        listing = await client.get("/api/history", headers=HEADERS, params={"limit": 1})

        assert sync.json()["fetched"] == 2
        assert sync.json()["ingested"] == 2
        body = listing.json()
        assert body["total"] == 2
        assert [item["spotify_track_id"] for item in body["items"]] == ["b"]

    async def test_list_with_naive_and_aware_bounds(
        self, client: httpx.AsyncClient, services: Services, connected_user: str
    ) -> None:
        page = recently_played(play("a", T0), play("b", T0 + timedelta(days=1)))
        await services.synchronizer.ingest(connected_user, RecentlyPlayedPage.from_api(page).items)

        response = await client.get(
            "/api/history",
            headers=HEADERS,
            params={"start_date": "2024-03-01T00:00:00", "end_date": "2024-03-01T23:59:59Z"},
        )

        assert response.status_code == 200
        assert [item["spotify_track_id"] for item in response.json()["items"]] == ["a"]

    async def test_list_with_mixed_bounds_out_of_order(
        self, client: httpx.AsyncClient, connected_user: str
    ) -> None:
        response = await client.get(
            "/api/history",
            headers=HEADERS,
            params={"start_date": "2024-03-02T00:00:00", "end_date": "2024-03-01T00:00:00Z"},
        )

        assert response.status_code == 400

    async def test_stats(self, client: httpx.AsyncClient, connected_user: str) -> None:
        response = await client.get("/api/history/stats", headers=HEADERS, params={"period": "30d"})

        assert response.status_code == 200
        assert response.json()["total_tracks"] == 0

    async def test_stats_rejects_unknown_period(
        self, client: httpx.AsyncClient, connected_user: str
    ) -> None:
        response = await client.get("/api/history/stats", headers=HEADERS, params={"period": "2w"})

        assert response.status_code == 422

    async def test_sync_when_not_connected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/history/sync", headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["action"] == "connect"

    async def test_sync_when_reauth_needed(
        self, client: httpx.AsyncClient, services: Services, connected_user: str
    ) -> None:
        await services.credentials.mark_reauth_required(connected_user)

        response = await client.post("/api/history/sync", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["action"] == "reconnect"

    async def test_sync_rate_limited(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue(RECENT, json_response(429, headers={"Retry-After": "30"}))

        response = await client.post("/api/history/sync", headers=HEADERS)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["retry_after"] == 30.0

    async def test_sync_upstream_down(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue(RECENT, json_response(503))

        response = await client.post("/api/history/sync", headers=HEADERS)

        assert response.status_code == 503


class TestTrackingRoutes:
    """Test starting, steering and stopping polling."""

    async def test_start_activity_stop(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue(RECENT, json_response(200, recently_played()))

        started = await client.post("/api/history/tracking/start", headers=HEADERS, json={"active": True})
        background = await client.post(
            "/api/history/tracking/activity", headers=HEADERS, json={"active": False}
        )
        stopped = await client.post("/api/history/tracking/stop", headers=HEADERS)

        assert started.json()["running"] is True
        assert background.json()["active"] is False
        assert stopped.json()["running"] is False
        status = await client.get("/api/history/tracking", headers=HEADERS)
        assert status.json()["state"] == "stopped"

    async def test_start_requires_connection(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/history/tracking/start", headers=HEADERS, json={})

        assert response.status_code == 409

    async def test_activity_without_session(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/history/tracking/activity", headers=HEADERS, json={"active": True}
        )

        assert response.status_code == 404


class TestRecapRoutes:
    """Test recap reads."""

    async def test_recap_for_day(
        self, client: httpx.AsyncClient, services: Services, connected_user: str
    ) -> None:
        page = recently_played(play("a", T0), play("a", T0 + timedelta(minutes=5)))
        await services.synchronizer.ingest(connected_user, RecentlyPlayedPage.from_api(page).items)

        response = await client.get("/api/recaps/2024-03-01", headers=HEADERS)

        body = response.json()
        assert body["total_tracks"] == 2
        assert body["song_of_the_day"]["track_id"] == "a"
        assert body["summary"].startswith("You listened to 2 tracks for 6 minutes.")

        listing = await client.get("/api/recaps", headers=HEADERS)
        assert [r["recap_date"] for r in listing.json()["items"]] == ["2024-03-01"]

    async def test_invalid_date(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/recaps/yesterday", headers=HEADERS)

        assert response.status_code == 422


class TestPlayerRoutes:
    """Test playback passthroughs."""

    async def test_nothing_playing(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue("/me/player/currently-playing", json_response(204))

        response = await client.get("/api/player/currently-playing", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() is None

    async def test_queue_without_device(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue("/me/player/queue", json_response(404))

        response = await client.post(
            "/api/player/queue", headers=HEADERS, json={"track_uri": "spotify:track:abc123"}
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NoActiveDeviceError"

    async def test_queue_requires_premium(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue("/me/player/queue", json_response(403))

        response = await client.post(
            "/api/player/queue", headers=HEADERS, json={"track_uri": "spotify:track:abc123"}
        )

        assert response.status_code == 403

    async def test_queue_rejects_malformed_uri(
        self, client: httpx.AsyncClient, connected_user: str
    ) -> None:
        response = await client.post(
            "/api/player/queue", headers=HEADERS, json={"track_uri": "https://open.spotify.com/x"}
        )

        assert response.status_code == 422

    async def test_top_tracks(
        self, client: httpx.AsyncClient, connected_user: str, fake_spotify: FakeSpotify
    ) -> None:
        fake_spotify.queue(
            "/me/top/tracks",
            json_response(
                200,
                {"items": [{"id": "t1", "name": "Song", "artists": [{"name": "A"}, {"name": "B"}]}]},
            ),
        )

        response = await client.get(
            "/api/player/top/tracks", headers=HEADERS, params={"time_range": "long_term"}
        )

        assert response.json()[0]["artist_name"] == "A, B"
