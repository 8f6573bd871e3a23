"""Spotify playback and top-items routes."""

from dataclasses import asdict
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_current_user_id, get_services
from api.schemas import (
    CurrentlyPlayingResponse,
    QueueRequest,
    QueueResponse,
    TopArtistResponse,
    TopTrackResponse,
)
from api.services import Services

router = APIRouter(prefix="/player", tags=["player"])

TimeRange = Literal["short_term", "medium_term", "long_term"]


@router.get("/currently-playing", response_model=Optional[CurrentlyPlayingResponse])
async def currently_playing(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Optional[CurrentlyPlayingResponse]:
    """What the user is playing right now, or null."""
    playing = await services.spotify.get_currently_playing(user_id)
    if playing is None:
        return None
    return CurrentlyPlayingResponse(**asdict(playing))


@router.post("/queue", response_model=QueueResponse)
async def add_to_queue(
    request: QueueRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> QueueResponse:
    """Append a track to the active device's queue."""
    await services.spotify.add_to_queue(user_id, request.track_uri)
    return QueueResponse(queued=True, track_uri=request.track_uri)


@router.get("/top/tracks", response_model=list[TopTrackResponse])
async def top_tracks(
    time_range: TimeRange = Query("medium_term"),
    limit: int = Query(20, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> list[TopTrackResponse]:
    tracks = await services.spotify.get_top_tracks(user_id, time_range=time_range, limit=limit)
    return [TopTrackResponse(**asdict(t)) for t in tracks]


@router.get("/top/artists", response_model=list[TopArtistResponse])
async def top_artists(
    time_range: TimeRange = Query("medium_term"),
    limit: int = Query(20, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> list[TopArtistResponse]:
    artists = await services.spotify.get_top_artists(user_id, time_range=time_range, limit=limit)
    return [TopArtistResponse(**asdict(a)) for a in artists]
