"""Typed results returned by the Spotify client."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


def _first_image(images: Optional[list[dict]]) -> Optional[str]:
    if images:
        return images[0].get("url")
    return None


def parse_spotify_timestamp(value: str) -> datetime:
    """Parse Spotify's ISO-8601 ``played_at`` (``...Z``, optional millis)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class TokenGrant:
    """Response of the OAuth token endpoint."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_api(cls, data: dict) -> "TokenGrant":
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type", "Bearer"),
        )

    def __repr__(self) -> str:
        # never print token values
        return f"TokenGrant(expires_in={self.expires_in}, rotated={self.refresh_token is not None})"


@dataclass
class SpotifyProfile:
    """The connected user's Spotify account."""

    spotify_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    image_url: Optional[str] = None
    product: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "SpotifyProfile":
        return cls(
            spotify_id=data["id"],
            display_name=data.get("display_name"),
            email=data.get("email"),
            image_url=_first_image(data.get("images")),
            product=data.get("product"),
        )


@dataclass
class RecentlyPlayedItem:
    """One entry of the recently-played endpoint."""

    track_id: str
    track_name: str
    artist_names: list[str]
    album_name: Optional[str]
    album_image_url: Optional[str]
    duration_ms: int
    played_at: datetime

    @property
    def artist_name(self) -> str:
        return ", ".join(self.artist_names)

    @classmethod
    def from_api(cls, item: dict) -> "RecentlyPlayedItem":
        track = item["track"]
        album = track.get("album") or {}
        return cls(
            track_id=track["id"],
            track_name=track.get("name", ""),
            artist_names=[a.get("name", "") for a in track.get("artists", [])],
            album_name=album.get("name"),
            album_image_url=_first_image(album.get("images")),
            duration_ms=int(track.get("duration_ms") or 0),
            played_at=parse_spotify_timestamp(item["played_at"]),
        )


@dataclass
class RecentlyPlayedPage:
    """A page of recently played tracks, newest first, with cursors."""

    items: list[RecentlyPlayedItem] = field(default_factory=list)
    cursor_after: Optional[str] = None
    cursor_before: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "RecentlyPlayedPage":
        cursors = data.get("cursors") or {}
        items = [
            RecentlyPlayedItem.from_api(item)
            for item in data.get("items", [])
            # local files and podcast episodes have no track id
            if item.get("track") and item["track"].get("id")
        ]
        return cls(
            items=items,
            cursor_after=cursors.get("after"),
            cursor_before=cursors.get("before"),
        )


@dataclass
class TopTrack:
    track_id: str
    track_name: str
    artist_name: str
    album_name: Optional[str]
    album_image_url: Optional[str]
    popularity: Optional[int] = None

    @classmethod
    def from_api(cls, track: dict) -> "TopTrack":
        album = track.get("album") or {}
        return cls(
            track_id=track["id"],
            track_name=track.get("name", ""),
            artist_name=", ".join(a.get("name", "") for a in track.get("artists", [])),
            album_name=album.get("name"),
            album_image_url=_first_image(album.get("images")),
            popularity=track.get("popularity"),
        )


@dataclass
class TopArtist:
    artist_id: str
    artist_name: str
    genres: list[str] = field(default_factory=list)
    image_url: Optional[str] = None
    popularity: Optional[int] = None

    @classmethod
    def from_api(cls, artist: dict) -> "TopArtist":
        return cls(
            artist_id=artist["id"],
            artist_name=artist.get("name", ""),
            genres=list(artist.get("genres", [])),
            image_url=_first_image(artist.get("images")),
            popularity=artist.get("popularity"),
        )


@dataclass
class CurrentlyPlaying:
    track_id: str
    track_name: str
    artist_name: str
    album_name: Optional[str]
    album_image_url: Optional[str]
    is_playing: bool
    progress_ms: Optional[int]
    duration_ms: Optional[int]

    @classmethod
    def from_api(cls, data: dict) -> Optional["CurrentlyPlaying"]:
        track = data.get("item")
        if not track or not track.get("id"):
            return None
        album = track.get("album") or {}
        return cls(
            track_id=track["id"],
            track_name=track.get("name", ""),
            artist_name=", ".join(a.get("name", "") for a in track.get("artists", [])),
            album_name=album.get("name"),
            album_image_url=_first_image(album.get("images")),
            is_playing=bool(data.get("is_playing")),
            progress_ms=data.get("progress_ms"),
            duration_ms=track.get("duration_ms"),
        )
