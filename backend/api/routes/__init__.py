"""API route modules."""

from api.routes.auth import router as auth_router
from api.routes.history import router as history_router
from api.routes.player import router as player_router
from api.routes.recaps import router as recaps_router

__all__ = [
    "auth_router",
    "history_router",
    "player_router",
    "recaps_router",
]
