"""Pydantic schemas for API request/response validation."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# Base schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(from_attributes=True)


# Connection schemas
class ConnectionStatusResponse(BaseModel):
    """Spotify connection state for the current user."""

    connected: bool
    needs_reauth: bool = False
    spotify_user_id: Optional[str] = None
    display_name: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    tracks_synced: int = 0


class DisconnectResponse(BaseModel):
    disconnected: bool


# History schemas
class PlayedTrackResponse(BaseSchema):
    """A stored play."""

    id: str
    spotify_track_id: str
    track_name: str
    artist_name: str
    artist_names: list[str] = Field(default_factory=list)
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None
    duration_ms: int
    played_at: datetime


class HistoryListResponse(BaseModel):
    """Paginated history response."""

    items: list[PlayedTrackResponse]
    total: int
    limit: int
    offset: int


class SyncResponse(BaseModel):
    """Result of an immediate sync."""

    fetched: int
    ingested: int
    cursor: Optional[datetime] = None


class ListeningStatsResponse(BaseModel):
    period: str
    total_tracks: int
    total_minutes: int
    unique_artists: int


# Tracking (polling session) schemas
class TrackingRequest(BaseModel):
    """Activity hint: True while the client is in the foreground."""

    active: bool = True


class TrackingStatusResponse(BaseModel):
    user_id: str
    running: bool
    state: str
    active: bool
    backoff_level: int
    current_delay_seconds: float
    halt_reason: Optional[str] = None
    last_fetched: Optional[int] = None
    last_ingested: Optional[int] = None


# Recap schemas
class RankedTrack(BaseModel):
    track_id: str
    track_name: str
    artist_name: str
    album_image_url: Optional[str] = None
    play_count: int
    first_played_at: datetime


class RankedArtist(BaseModel):
    artist_name: str
    play_count: int
    first_played_at: datetime


class DailyRecapResponse(BaseSchema):
    """A user's recap for one day."""

    user_id: str
    recap_date: date
    total_tracks: int
    total_ms: int
    total_minutes: int
    top_tracks: list[RankedTrack] = Field(default_factory=list)
    top_artists: list[RankedArtist] = Field(default_factory=list)
    song_of_the_day: Optional[RankedTrack] = None
    generated_at: datetime
    summary: Optional[str] = None


class DailyRecapListResponse(BaseModel):
    items: list[DailyRecapResponse]


# Player schemas
class CurrentlyPlayingResponse(BaseModel):
    track_id: str
    track_name: str
    artist_name: str
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None
    is_playing: bool
    progress_ms: Optional[int] = None
    duration_ms: Optional[int] = None


class QueueRequest(BaseModel):
    """Track to append to the active device's queue."""

    track_uri: str = Field(..., pattern=r"^spotify:(track|episode):[A-Za-z0-9]+$")


class QueueResponse(BaseModel):
    queued: bool
    track_uri: str


class TopTrackResponse(BaseModel):
    track_id: str
    track_name: str
    artist_name: str
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None
    popularity: Optional[int] = None


class TopArtistResponse(BaseModel):
    artist_id: str
    artist_name: str
    genres: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    popularity: Optional[int] = None
