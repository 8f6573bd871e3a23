"""Listening history ingestion."""

from ingest.polling import PollingManager, PollingPolicy, PollingSession, PollState
from ingest.spotify_sync import HistoryPage, HistorySynchronizer, ListeningStats, SyncResult

__all__ = [
    "HistorySynchronizer",
    "HistoryPage",
    "ListeningStats",
    "SyncResult",
    "PollingManager",
    "PollingPolicy",
    "PollingSession",
    "PollState",
]
