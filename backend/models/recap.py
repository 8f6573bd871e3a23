"""Daily recap model."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, UTCDateTime, UUIDMixin, utcnow


class DailyRecap(Base, UUIDMixin):
    """Per-user, per-day aggregate derived from listening history."""

    __tablename__ = "daily_recaps"
    __table_args__ = (
        UniqueConstraint("user_id", "recap_date", name="uq_daily_recaps_user_date"),
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    recap_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_tracks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ranked lists, most played first
    top_tracks: Mapped[list[dict]] = mapped_column(JSONType, nullable=False, default=list)
    top_artists: Mapped[list[dict]] = mapped_column(JSONType, nullable=False, default=list)
    song_of_the_day: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<DailyRecap(user_id={self.user_id}, date={self.recap_date}, "
            f"tracks={self.total_tracks})>"
        )
