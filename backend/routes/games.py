"""Saved games: list, create, switch, delete, and the current game state."""

from fastapi import APIRouter, HTTPException

from backend import runtime

from .errors import domain_errors
from .models import CreateGame

router = APIRouter()


@router.get("/games")
async def list_games():
    """List saved games, most recently played first."""
    storage = runtime.get_storage()
    return {"current": storage.get_current_game_id(), "games": storage.list()}


@router.post("/games")
async def create_game(body: CreateGame):
    """Start a new game and make it current."""
    state = runtime.get_store().create_new_game(body.name)
    runtime.get_storage().set_current_game_id(state.id)
    return state


@router.post("/games/{game_id}/switch")
async def switch_game(game_id: str):
    """Load a saved game and make it current."""
    with domain_errors():
        state = runtime.get_store().switch_game(game_id)
    runtime.get_storage().set_current_game_id(state.id)
    return state


@router.delete("/games/{game_id}")
async def delete_game(game_id: str):
    """Delete a saved game. The game being played cannot be deleted."""
    if game_id == runtime.get_store().state.id:
        raise HTTPException(409, "Cannot delete the current game; switch to another first")
    if not runtime.get_storage().delete_game(game_id):
        raise HTTPException(404, "Game not found")
    return {"ok": True}


@router.get("/game")
async def get_game():
    """The full state of the current game."""
    return runtime.get_store().state
