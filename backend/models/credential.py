"""Spotify credential and sync cursor storage."""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin, UTCDateTime, UUIDMixin, utcnow


class SpotifyCredential(Base, UUIDMixin, TimestampMixin):
    """OAuth token pair for one user, plus the history sync cursor.

    At most one row per user. The access token is rewritten on every
    refresh; the refresh token only changes when Spotify rotates it.
    """

    __tablename__ = "spotify_credentials"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)

    # Identity on the Spotify side
    spotify_user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    spotify_display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # OAuth tokens (encrypted at rest in production)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_type: Mapped[str] = mapped_column(String(50), nullable=False, default="Bearer")
    scopes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Set when Spotify rejects the refresh token; cleared on reconnect
    needs_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Sync cursor
    last_played_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    tracks_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def expires_within(self, margin: timedelta) -> bool:
        """True if the access token is expired or will be within ``margin``."""
        return self.expires_at <= utcnow() + margin

    def __repr__(self) -> str:
        return f"<SpotifyCredential(user_id={self.user_id}, expires_at={self.expires_at})>"
