"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, provider settings, model list,
check-connection), games (saved games and the current state), timeline
(human-driven periods/events/scenes, setup, phases, turns), and chat
(conversations, AI turns, reparse, rerun, parse preview).
"""

from fastapi import APIRouter

from .chat import router as chat_router
from .games import router as games_router
from .settings import router as settings_router
from .timeline import router as timeline_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(games_router)
router.include_router(timeline_router)
router.include_router(chat_router)
