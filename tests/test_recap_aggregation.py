"""Tests for daily aggregation and the recap service."""

import random
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from api.services import Services
from conftest import Recorder, play, recently_played
from events import DAILY_AGGREGATE_READY, EventBus
from integrations.spotify.types import RecentlyPlayedPage
from recap.aggregation import (
    RecapService,
    build_daily_aggregate,
    generate_recap_summary,
    rank_artists,
    rank_tracks,
    song_of_the_day,
)

DAY = date(2024, 3, 1)
T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@dataclass
class Row:
    spotify_track_id: str
    played_at: datetime
    track_name: str = ""
    artist_names: list[str] = field(default_factory=lambda: ["Artist"])
    album_image_url: Optional[str] = None
    duration_ms: int = 60000

    @property
    def artist_name(self) -> str:
        return ", ".join(self.artist_names)


def _tie_rows() -> list[Row]:
    """trackA and trackB three plays each; trackB was first heard earlier."""
    return [
        Row("trackA", T0 + timedelta(hours=1), "A", ["Alpha"]),
        Row("trackB", T0, "B", ["Beta"]),
        Row("trackA", T0 + timedelta(hours=2), "A", ["Alpha"]),
        Row("trackB", T0 + timedelta(hours=3), "B", ["Beta"]),
        Row("trackA", T0 + timedelta(hours=4), "A", ["Alpha"]),
        Row("trackB", T0 + timedelta(hours=5), "B", ["Beta"]),
        Row("trackC", T0 + timedelta(minutes=30), "C", ["Alpha", "Gamma"]),
    ]


class TestRanking:
    """Test the pure ranking functions."""

    def test_tie_goes_to_earlier_first_play(self) -> None:
        ranked = rank_tracks(_tie_rows())

        assert [t["track_id"] for t in ranked] == ["trackB", "trackA", "trackC"]
        assert ranked[0]["play_count"] == 3
        assert ranked[0]["first_played_at"] == T0.isoformat()

    def test_song_of_the_day_uses_the_same_tie_break(self) -> None:
        assert song_of_the_day(_tie_rows())["track_id"] == "trackB"

    def test_song_of_the_day_for_empty_day(self) -> None:
        assert song_of_the_day([]) is None

    def test_ranking_ignores_row_order(self) -> None:
        rows = _tie_rows()
        expected = (rank_tracks(rows), rank_artists(rows))

        for seed in range(5):
            shuffled = rows[:]
            random.Random(seed).shuffle(shuffled)
            assert (rank_tracks(shuffled), rank_artists(shuffled)) == expected

    def test_artists_count_plays_featuring_them(self) -> None:
        ranked = rank_artists(_tie_rows())

        assert [(a["artist_name"], a["play_count"]) for a in ranked] == [
            ("Alpha", 4),
            ("Beta", 3),
            ("Gamma", 1),
        ]

    def test_artist_listed_twice_counts_once(self) -> None:
        rows = [Row("t", T0, artist_names=["Dup", "Dup"])]

        assert rank_artists(rows)[0]["play_count"] == 1

    def test_artist_names_fall_back_to_joined_string(self) -> None:
        row = _JoinedRow(Row("t", T0), "One, Two")

        names = [a["artist_name"] for a in rank_artists([row])]

        assert names == ["One", "Two"]

    def test_top_n_truncates(self) -> None:
        assert len(rank_tracks(_tie_rows(), top_n=2)) == 2


class _JoinedRow:
    """A stored row from before per-artist names were recorded."""

    def __init__(self, row: Row, artist_name: str) -> None:
        self.spotify_track_id = row.spotify_track_id
        self.played_at = row.played_at
        self.track_name = row.track_name
        self.artist_names: list[str] = []
        self.artist_name = artist_name
        self.album_image_url = None
        self.duration_ms = row.duration_ms


class TestBuildDailyAggregate:
    """Test totals and the summary text."""

    def test_totals(self) -> None:
        aggregate = build_daily_aggregate(_tie_rows(), top_n=5)

        assert aggregate.total_tracks == 7
        assert aggregate.total_ms == 7 * 60000
        assert aggregate.total_minutes == 7
        assert aggregate.song_of_the_day == aggregate.top_tracks[0]

    def test_empty_day(self) -> None:
        aggregate = build_daily_aggregate([])

        assert aggregate.total_tracks == 0
        assert aggregate.top_tracks == []
        assert aggregate.song_of_the_day is None

    def test_summary_text(self) -> None:
        aggregate = build_daily_aggregate(_tie_rows())

        summary = generate_recap_summary(aggregate)

        assert summary.startswith("You listened to 7 tracks for 7 minutes.")
        assert 'Your song of the day was "B" by Beta.' in summary
        assert "Your top artist was Alpha." in summary


async def _ingest(services: Services, user_id: str, *items: dict) -> None:
    page = RecentlyPlayedPage.from_api(recently_played(*items))
    await services.synchronizer.ingest(user_id, page.items)


class TestRecapService:
    """Test computing and storing recaps."""

    async def test_compute_is_idempotent(self, services: Services, connected_user: str) -> None:
        await _ingest(
            services,
            connected_user,
            play("a", T0, artists=("X",)),
            play("b", T0 + timedelta(hours=1), artists=("Y",)),
            play("a", T0 + timedelta(hours=2), artists=("X",)),
        )

        first = await services.recaps.compute_daily_aggregate(connected_user, DAY)
        second = await services.recaps.compute_daily_aggregate(connected_user, DAY)

        assert first.id == second.id
        assert first.top_tracks == second.top_tracks
        assert first.top_artists == second.top_artists
        assert second.total_tracks == 3
        assert second.song_of_the_day["track_id"] == "a"
        assert len(await services.recaps.get_user_recaps(connected_user)) == 1

    async def test_compute_only_reads_that_day(
        self, services: Services, connected_user: str
    ) -> None:
        await _ingest(
            services,
            connected_user,
            play("early", datetime(2024, 2, 29, 23, 59, tzinfo=timezone.utc)),
            play("in", T0),
            play("late", datetime(2024, 3, 2, 0, 0, tzinfo=timezone.utc)),
        )

        recap = await services.recaps.compute_daily_aggregate(connected_user, DAY)

        assert [t["track_id"] for t in recap.top_tracks] == ["in"]

    async def test_late_plays_are_picked_up_on_rerun(
        self, services: Services, connected_user: str
    ) -> None:
        await _ingest(services, connected_user, play("a", T0))
        await services.recaps.compute_daily_aggregate(connected_user, DAY)
        await _ingest(services, connected_user, play("b", T0 + timedelta(hours=1)))

        recap = await services.recaps.compute_daily_aggregate(connected_user, DAY)

        assert recap.total_tracks == 2

    async def test_unrelated_days_do_not_change_result(
        self, services: Services, connected_user: str
    ) -> None:
        await _ingest(
            services,
            connected_user,
            play("a", T0),
            play("b", T0 + timedelta(minutes=5)),
            play("c", T0 + timedelta(days=1)),
        )

        before = await services.recaps.compute_daily_aggregate(connected_user, DAY)
        snapshot = (before.top_tracks, before.top_artists, before.song_of_the_day)
        await services.recaps.compute_daily_aggregate(connected_user, DAY + timedelta(days=1))
        after = await services.recaps.compute_daily_aggregate(connected_user, DAY)

        assert (after.top_tracks, after.top_artists, after.song_of_the_day) == snapshot

    async def test_day_follows_recap_timezone(
        self, services: Services, connected_user: str
    ) -> None:
        recaps = RecapService(services.synchronizer._session_factory, timezone="America/New_York")
        # 02:00 UTC on March 2nd is still March 1st in New York
        await _ingest(services, connected_user, play("a", datetime(2024, 3, 2, 2, 0, tzinfo=timezone.utc)))

        recap = await recaps.compute_daily_aggregate(connected_user, DAY)

        assert recap.total_tracks == 1

    async def test_ready_event_only_for_days_with_plays(
        self,
        services: Services,
        connected_user: str,
        events: EventBus,
        recorder: Recorder,
    ) -> None:
        events.subscribe(DAILY_AGGREGATE_READY, recorder)
        await _ingest(services, connected_user, play("a", T0))

        await services.recaps.compute_daily_aggregate(connected_user, DAY)
        await services.recaps.compute_daily_aggregate(connected_user, DAY + timedelta(days=1))

        assert len(recorder.calls) == 1
        assert recorder.calls[0]["recap_date"] == DAY
        assert recorder.calls[0]["summary"].startswith("You listened to 1 track for 3 minutes.")

    async def test_past_day_is_served_from_storage(
        self, services: Services, connected_user: str
    ) -> None:
        await _ingest(services, connected_user, play("a", T0))
        stored = await services.recaps.compute_daily_aggregate(connected_user, DAY)
        await _ingest(services, connected_user, play("b", T0 + timedelta(hours=1)))

        recap = await services.recaps.get_daily_aggregate(connected_user, DAY)

        assert recap.generated_at == stored.generated_at
        assert recap.total_tracks == 1

    async def test_missing_past_day_is_computed(
        self, services: Services, connected_user: str
    ) -> None:
        await _ingest(services, connected_user, play("a", T0))

        recap = await services.recaps.get_daily_aggregate(connected_user, DAY)

        assert recap.total_tracks == 1

    async def test_user_recaps_newest_first(
        self, services: Services, connected_user: str
    ) -> None:
        for offset in range(3):
            await services.recaps.compute_daily_aggregate(connected_user, DAY + timedelta(days=offset))

        recaps = await services.recaps.get_user_recaps(connected_user, limit=2)

        assert [r.recap_date for r in recaps] == [DAY + timedelta(days=2), DAY + timedelta(days=1)]


@pytest.mark.parametrize(
    "tracks,minutes,expected",
    [(1, 1, "1 track for 1 minute."), (2, 0, "2 tracks for 0 minutes.")],
)
def test_summary_pluralization(tracks: int, minutes: int, expected: str) -> None:
    aggregate = build_daily_aggregate([])
    aggregate.total_tracks = tracks
    aggregate.total_minutes = minutes

    assert expected in generate_recap_summary(aggregate)
