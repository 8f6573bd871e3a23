"""Listening history model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, UTCDateTime, UUIDMixin, utcnow


class PlayedTrack(Base, UUIDMixin):
    """One play of one track, as reported by Spotify.

    Rows are insert-if-absent and never updated. The unique constraint on
    (user_id, spotify_track_id, played_at) is what makes overlapping poll
    windows safe.
    """

    __tablename__ = "listening_history"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "spotify_track_id", "played_at", name="uq_listening_history_play"
        ),
        Index("ix_listening_history_user_played_at", "user_id", "played_at"),
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    spotify_track_id: Mapped[str] = mapped_column(String(64), nullable=False)

    track_name: Mapped[str] = mapped_column(String(500), nullable=False)
    artist_name: Mapped[str] = mapped_column(String(1000), nullable=False)  # "A, B"
    artist_names: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    album_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    album_image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    played_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<PlayedTrack(user_id={self.user_id}, track='{self.track_name}', "
            f"played_at={self.played_at})>"
        )
