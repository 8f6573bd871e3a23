"""Daily listening aggregates.

Rankings are a pure function of the day's rows: plays are counted per
track/artist and ordered by play count, then by the earliest play of the
day, then by id/name. Row order never influences the result, so the same
history always yields the same recap no matter how often or in which
order days are recomputed.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional, Protocol, Sequence, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from events import DAILY_AGGREGATE_READY, EventBus
from models import DailyRecap, PlayedTrack
from models.base import dialect_insert, utcnow

logger = logging.getLogger(__name__)


class PlayRow(Protocol):
    spotify_track_id: str
    track_name: str
    artist_name: str
    artist_names: list[str]
    album_image_url: Optional[str]
    duration_ms: int
    played_at: datetime


@dataclass
class DailyAggregate:
    """Computed recap values for one user and day."""

    total_tracks: int = 0
    total_ms: int = 0
    total_minutes: int = 0
    top_tracks: list[dict] = field(default_factory=list)
    top_artists: list[dict] = field(default_factory=list)
    song_of_the_day: Optional[dict] = None


def _artists_of(row: PlayRow) -> list[str]:
    names = row.artist_names or [n for n in row.artist_name.split(", ") if n]
    # an artist credited twice on one track still counts one play
    return list(dict.fromkeys(names))


def rank_tracks(rows: Sequence[PlayRow], top_n: Optional[int] = None) -> list[dict]:
    """Tracks by play count desc, ties to the earliest first play of the day."""
    stats: dict[str, dict] = {}
    for row in rows:
        entry = stats.get(row.spotify_track_id)
        if entry is None:
            entry = stats[row.spotify_track_id] = {
                "track_id": row.spotify_track_id,
                "play_count": 0,
                "first_played_at": row.played_at,
                "_row": row,
            }
        entry["play_count"] += 1
        if row.played_at < entry["first_played_at"]:
            # display fields always come from the earliest play
            entry["first_played_at"] = row.played_at
            entry["_row"] = row

    ranked = sorted(
        stats.values(),
        key=lambda e: (-e["play_count"], e["first_played_at"], e["track_id"]),
    )
    if top_n is not None:
        ranked = ranked[:top_n]

    return [
        {
            "track_id": e["track_id"],
            "track_name": e["_row"].track_name,
            "artist_name": e["_row"].artist_name,
            "album_image_url": e["_row"].album_image_url,
            "play_count": e["play_count"],
            "first_played_at": e["first_played_at"].isoformat(),
        }
        for e in ranked
    ]


def rank_artists(rows: Sequence[PlayRow], top_n: Optional[int] = None) -> list[dict]:
    """Artists by plays featuring them, ties to the earliest play, then name."""
    stats: dict[str, dict] = {}
    for row in rows:
        for name in _artists_of(row):
            entry = stats.get(name)
            if entry is None:
                entry = stats[name] = {
                    "artist_name": name,
                    "play_count": 0,
                    "first_played_at": row.played_at,
                }
            entry["play_count"] += 1
            entry["first_played_at"] = min(entry["first_played_at"], row.played_at)

    ranked = sorted(
        stats.values(),
        key=lambda e: (-e["play_count"], e["first_played_at"], e["artist_name"]),
    )
    if top_n is not None:
        ranked = ranked[:top_n]
    return [
        {
            "artist_name": e["artist_name"],
            "play_count": e["play_count"],
            "first_played_at": e["first_played_at"].isoformat(),
        }
        for e in ranked
    ]


def song_of_the_day(rows: Sequence[PlayRow]) -> Optional[dict]:
    """The most played track; a tie goes to the one first played earlier."""
    ranked = rank_tracks(rows, top_n=1)
    return ranked[0] if ranked else None


def build_daily_aggregate(rows: Sequence[PlayRow], top_n: int = 5) -> DailyAggregate:
    total_ms = sum(row.duration_ms or 0 for row in rows)
    top_tracks = rank_tracks(rows, top_n)
    return DailyAggregate(
        total_tracks=len(rows),
        total_ms=total_ms,
        total_minutes=total_ms // 60000,
        top_tracks=top_tracks,
        top_artists=rank_artists(rows, top_n),
        song_of_the_day=top_tracks[0] if top_tracks else None,
    )


def generate_recap_summary(recap: Union[DailyRecap, DailyAggregate]) -> str:
    """One-paragraph text used by the recap notification."""
    tracks = recap.total_tracks
    minutes = recap.total_minutes
    summary = f"You listened to {tracks} track{'s' if tracks != 1 else ''} "
    summary += f"for {minutes} minute{'s' if minutes != 1 else ''}."

    if recap.song_of_the_day:
        song = recap.song_of_the_day
        summary += f' Your song of the day was "{song["track_name"]}" by {song["artist_name"]}.'
    if recap.top_artists:
        summary += f" Your top artist was {recap.top_artists[0]['artist_name']}."
    return summary


class RecapService:
    """Computes, stores and serves per-day recaps."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        top_n: int = 5,
        timezone: str = "UTC",
        events: Optional[EventBus] = None,
    ) -> None:
        self._session_factory = session_factory
        self.top_n = top_n
        self.tz = ZoneInfo(timezone)
        self._events = events

    def today(self) -> date:
        return utcnow().astimezone(self.tz).date()

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """[start, end) of a calendar day in the recap timezone."""
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return start, end

    async def compute_daily_aggregate(
        self, user_id: str, day: date, notify: bool = True
    ) -> DailyRecap:
        """Recompute the day's recap from history and upsert it.

        Safe to repeat: the same rows always produce the same record.
        """
        start, end = self.day_bounds(day)
        async with self._session_factory() as session:
            stmt = (
                select(PlayedTrack)
                .where(
                    PlayedTrack.user_id == user_id,
                    PlayedTrack.played_at >= start,
                    PlayedTrack.played_at < end,
                )
                .order_by(PlayedTrack.played_at, PlayedTrack.id)
            )
            rows = list((await session.execute(stmt)).scalars().all())
            aggregate = build_daily_aggregate(rows, self.top_n)

            values = {
                "total_tracks": aggregate.total_tracks,
                "total_ms": aggregate.total_ms,
                "total_minutes": aggregate.total_minutes,
                "top_tracks": aggregate.top_tracks,
                "top_artists": aggregate.top_artists,
                "song_of_the_day": aggregate.song_of_the_day,
                "generated_at": utcnow(),
            }
            insert_stmt = dialect_insert(session, DailyRecap).values(
                user_id=user_id, recap_date=day, **values
            )
            insert_stmt = insert_stmt.on_conflict_do_update(
                index_elements=["user_id", "recap_date"],
                set_={key: insert_stmt.excluded[key] for key in values},
            )
            await session.execute(insert_stmt)
            await session.commit()

            recap = await self._load(session, user_id, day)

        logger.info(
            "Daily recap generated for user %s on %s: %d tracks",
            user_id,
            day.isoformat(),
            aggregate.total_tracks,
        )
        if notify and aggregate.total_tracks and self._events:
            await self._events.emit(
                DAILY_AGGREGATE_READY,
                user_id=user_id,
                recap_date=day,
                summary=generate_recap_summary(recap),
            )
        return recap

    async def _load(self, session: AsyncSession, user_id: str, day: date) -> Optional[DailyRecap]:
        stmt = select(DailyRecap).where(
            DailyRecap.user_id == user_id, DailyRecap.recap_date == day
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def get_daily_aggregate(self, user_id: str, day: date) -> DailyRecap:
        """Stored recap for a finished day; computed on demand otherwise.

        Days that are not over yet are always recomputed.
        """
        if day < self.today():
            async with self._session_factory() as session:
                recap = await self._load(session, user_id, day)
            if recap is not None:
                return recap
        return await self.compute_daily_aggregate(user_id, day, notify=False)

    async def get_user_recaps(self, user_id: str, limit: int = 30) -> list[DailyRecap]:
        """Most recent recaps first."""
        async with self._session_factory() as session:
            stmt = (
                select(DailyRecap)
                .where(DailyRecap.user_id == user_id)
                .order_by(DailyRecap.recap_date.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())
