"""Daily recaps built from listening history."""

from recap.aggregation import (
    DailyAggregate,
    RecapService,
    build_daily_aggregate,
    generate_recap_summary,
    rank_artists,
    rank_tracks,
    song_of_the_day,
)

__all__ = [
    "DailyAggregate",
    "RecapService",
    "build_daily_aggregate",
    "generate_recap_summary",
    "rank_artists",
    "rank_tracks",
    "song_of_the_day",
]
