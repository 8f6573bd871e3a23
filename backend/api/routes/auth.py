"""Spotify connection routes."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from api.dependencies import get_current_user_id, get_services
from api.schemas import ConnectionStatusResponse, DisconnectResponse
from api.services import Services
from integrations.spotify.exceptions import SpotifyError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# In-memory state storage (use Redis when running several workers)
oauth_states: dict[str, dict] = {}

OAUTH_STATE_TTL = timedelta(minutes=10)


def _prune_states(now: datetime) -> None:
    for key in [k for k, v in oauth_states.items() if now - v["created_at"] > OAUTH_STATE_TTL]:
        oauth_states.pop(key, None)


@router.get("/spotify/login")
async def spotify_login(
    user_id: str = Depends(get_current_user_id),
    redirect_uri: Optional[str] = Query(None, description="Where to redirect after auth"),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Redirect to Spotify OAuth authorization."""
    settings = services.settings
    if not settings.spotify_client_id:
        raise HTTPException(status_code=500, detail="Spotify client ID not configured")

    now = datetime.now(timezone.utc)
    _prune_states(now)

    # Generate state for CSRF protection
    state = secrets.token_urlsafe(32)
    oauth_states[state] = {
        "created_at": now,
        "user_id": user_id,
        "redirect_uri": redirect_uri or f"{settings.frontend_url}/auth/callback",
    }

    params = {
        "client_id": settings.spotify_client_id,
        "response_type": "code",
        "redirect_uri": settings.spotify_redirect_uri,
        "state": state,
        "scope": " ".join(settings.spotify_scopes),
        "show_dialog": "false",
    }
    auth_url = f"{settings.spotify_accounts_url}/authorize?{urlencode(params)}"
    return RedirectResponse(url=auth_url)


@router.get("/spotify/callback")
async def spotify_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Handle the OAuth callback: store the credential and record the profile."""
    if error:
        logger.warning("Spotify OAuth error: %s", error)
        raise HTTPException(status_code=400, detail=f"Spotify auth error: {error}")

    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state parameter")

    state_data = oauth_states.pop(state, None)
    if not state_data:
        raise HTTPException(status_code=400, detail="Invalid or expired state")

    if datetime.now(timezone.utc) - state_data["created_at"] > OAUTH_STATE_TTL:
        raise HTTPException(status_code=400, detail="State expired")

    user_id = state_data["user_id"]
    redirect_uri = state_data["redirect_uri"]

    try:
        await services.credentials.connect(user_id, code)
    except SpotifyError as e:
        logger.warning("Spotify connect failed for user %s: %s", user_id, e.message)
        return RedirectResponse(url=f"{redirect_uri}?{urlencode({'error': 'token_exchange_failed'})}")

    try:
        profile = await services.spotify.get_profile(user_id)
        await services.credentials.update_profile(user_id, profile.spotify_id, profile.display_name)
    except SpotifyError as e:
        # the credential is usable without the profile details
        logger.warning("Spotify profile fetch failed for user %s: %s", user_id, e.message)

    logger.info("Spotify connected for user %s", user_id)
    return RedirectResponse(url=f"{redirect_uri}?{urlencode({'spotify': 'connected'})}")


@router.get("/spotify/status", response_model=ConnectionStatusResponse)
async def spotify_status(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> ConnectionStatusResponse:
    """Get current Spotify connection status."""
    credential = await services.credentials.get_credential(user_id)
    if credential is None:
        return ConnectionStatusResponse(connected=False)

    return ConnectionStatusResponse(
        connected=True,
        needs_reauth=credential.needs_reauth,
        spotify_user_id=credential.spotify_user_id,
        display_name=credential.spotify_display_name,
        token_expires_at=credential.expires_at,
        last_sync_at=credential.last_sync_at,
        tracks_synced=credential.tracks_synced,
    )


@router.post("/spotify/disconnect", response_model=DisconnectResponse)
async def spotify_disconnect(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DisconnectResponse:
    """Disconnect Spotify: stop polling and delete the credential."""
    await services.polling.stop(user_id)
    removed = await services.credentials.disconnect(user_id)
    return DisconnectResponse(disconnected=removed)
