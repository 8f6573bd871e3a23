"""Spotify listening history sync."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.spotify.client import MAX_PAGE_SIZE, SpotifyClient
from integrations.spotify.exceptions import NotConnectedError
from integrations.spotify.types import RecentlyPlayedItem, RecentlyPlayedPage
from models import PlayedTrack, SpotifyCredential
from models.base import dialect_insert, utcnow

logger = logging.getLogger(__name__)

STATS_PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "1y": timedelta(days=365),
}


@dataclass
class SyncResult:
    """Outcome of one poll+ingest cycle."""

    user_id: str
    fetched: int = 0
    ingested: int = 0
    cursor: Optional[datetime] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class HistoryPage:
    """A page of persisted plays, newest first."""

    items: list[PlayedTrack]
    total: int
    limit: int
    offset: int


@dataclass
class ListeningStats:
    period: str
    total_tracks: int
    total_minutes: int
    unique_artists: int


class HistorySynchronizer:
    """Keeps each user's listening history in step with Spotify.

    A cycle fetches one page of recently played tracks after the stored
    cursor and inserts it with ON CONFLICT DO NOTHING on
    (user, track, played_at). The insert and the cursor move share one
    transaction, so a failed batch leaves the cursor where it was and the
    next poll simply asks for the same window again.
    """

    def __init__(
        self,
        client: SpotifyClient,
        session_factory: async_sessionmaker[AsyncSession],
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.client = client
        self._session_factory = session_factory
        self.page_size = page_size
        self._locks: dict[str, asyncio.Lock] = {}

    def user_lock(self, user_id: str) -> asyncio.Lock:
        """Lock held for a whole cycle; one in-flight poll per user."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def release_user(self, user_id: str) -> None:
        """Forget the user's cycle lock unless a cycle still holds it."""
        lock = self._locks.get(user_id)
        if lock is not None and not lock.locked():
            del self._locks[user_id]

    async def sync_now(self, user_id: str) -> SyncResult:
        """Run one immediate poll+ingest cycle for the user."""
        async with self.user_lock(user_id):
            result = SyncResult(user_id=user_id)
            page = await self.fetch(user_id)
            result.fetched = len(page.items)
            result.ingested = await self.ingest(user_id, page.items)
            result.cursor = await self.get_cursor(user_id)
            result.completed_at = utcnow()

        logger.info(
            "Listening history synced for user %s: %d new of %d fetched",
            user_id,
            result.ingested,
            result.fetched,
        )
        return result

    async def get_cursor(self, user_id: str) -> Optional[datetime]:
        """Timestamp of the newest ingested play."""
        async with self._session_factory() as session:
            stmt = select(SpotifyCredential.last_played_at, SpotifyCredential.id).where(
                SpotifyCredential.user_id == user_id
            )
            row = (await session.execute(stmt)).first()
        if row is None:
            raise NotConnectedError(user_id)
        return row.last_played_at

    async def fetch(self, user_id: str) -> RecentlyPlayedPage:
        """Fetch plays after the cursor (the latest page when there is none)."""
        cursor = await self.get_cursor(user_id)
        return await self.client.get_recently_played(
            user_id, limit=self.page_size, after=cursor
        )

    async def ingest(self, user_id: str, items: Sequence[RecentlyPlayedItem]) -> int:
        """Insert plays that are not stored yet and advance the cursor.

        Returns the number of new rows. Duplicates are skipped silently;
        any other failure rolls back the whole batch.
        """
        now = utcnow()
        rows: dict[tuple[str, datetime], dict] = {}
        for item in items:
            rows.setdefault(
                (item.track_id, item.played_at),
                {
                    "id": str(uuid4()),
                    "user_id": user_id,
                    "spotify_track_id": item.track_id,
                    "track_name": item.track_name,
                    "artist_name": item.artist_name,
                    "artist_names": item.artist_names,
                    "album_name": item.album_name,
                    "album_image_url": item.album_image_url,
                    "duration_ms": item.duration_ms,
                    "played_at": item.played_at,
                    "ingested_at": now,
                },
            )

        async with self._session_factory() as session:
            async with session.begin():
                stmt = select(SpotifyCredential).where(SpotifyCredential.user_id == user_id)
                credential = (await session.execute(stmt)).scalar_one_or_none()
                if credential is None:
                    raise NotConnectedError(user_id)

                inserted = 0
                if rows:
                    insert_stmt = (
                        dialect_insert(session, PlayedTrack)
                        .values(list(rows.values()))
                        .on_conflict_do_nothing(
                            index_elements=["user_id", "spotify_track_id", "played_at"]
                        )
                        .returning(PlayedTrack.id)
                    )
                    inserted = len((await session.execute(insert_stmt)).all())

                    newest = max(played_at for _, played_at in rows)
                    if credential.last_played_at is None or newest > credential.last_played_at:
                        credential.last_played_at = newest

                credential.last_sync_at = now
                credential.tracks_synced = credential.tracks_synced + inserted

        return inserted

    async def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> HistoryPage:
        """Paginated read of stored plays, newest first."""
        stmt = select(PlayedTrack).where(PlayedTrack.user_id == user_id)
        if start_date is not None:
            stmt = stmt.where(PlayedTrack.played_at >= start_date)
        if end_date is not None:
            stmt = stmt.where(PlayedTrack.played_at <= end_date)

        async with self._session_factory() as session:
            count_stmt = select(func.count()).select_from(stmt.subquery())
            total = (await session.execute(count_stmt)).scalar() or 0

            stmt = (
                stmt.order_by(PlayedTrack.played_at.desc(), PlayedTrack.id)
                .offset(offset)
                .limit(limit)
            )
            items = list((await session.execute(stmt)).scalars().all())

        return HistoryPage(items=items, total=total, limit=limit, offset=offset)

    async def get_listening_stats(self, user_id: str, period: str = "7d") -> ListeningStats:
        """Totals over a trailing window (24h, 7d, 30d or 1y)."""
        if period not in STATS_PERIODS:
            raise ValueError(f"period must be one of {sorted(STATS_PERIODS)}")
        since = utcnow() - STATS_PERIODS[period]

        async with self._session_factory() as session:
            stmt = select(
                func.count(PlayedTrack.id),
                func.coalesce(func.sum(PlayedTrack.duration_ms), 0),
                func.count(func.distinct(PlayedTrack.artist_name)),
            ).where(PlayedTrack.user_id == user_id, PlayedTrack.played_at >= since)
            total_tracks, total_ms, unique_artists = (await session.execute(stmt)).one()

        return ListeningStats(
            period=period,
            total_tracks=int(total_tracks),
            total_minutes=int(total_ms) // 60000,
            unique_artists=int(unique_artists),
        )
