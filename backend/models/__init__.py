"""SQLAlchemy models for DailySpin."""

from models.base import Base
from models.credential import SpotifyCredential
from models.history import PlayedTrack
from models.recap import DailyRecap

__all__ = [
    "Base",
    "SpotifyCredential",
    "PlayedTrack",
    "DailyRecap",
]
