"""FastMCP server exposing the timeline as MCP tools.

Tools:
  - describe_timeline()                 — the full serialised game state
  - list_items()                        — {"items": [...]} periods/events/scenes in order
  - parse_directives(text)              — parser preview, nothing executed
  - apply_directives(text, conversation_id?) — run text through the same
                                          parse→execute path as an AI reply

The store is module state replaced via set_store() for tests, or loaded from
DATA_DIR when run as __main__.

Usage:
    uv run python -m backend.mcp_server
"""

from mcp.server.fastmcp import FastMCP

from microscope.context import serialize_game_state
from microscope.parser import parse_response
from microscope.pipeline import apply_response
from microscope.store import GameStore

mcp = FastMCP("microscope-timeline")

_store: GameStore = GameStore()


def set_store(store: GameStore) -> None:
    """Replace the active store (used in tests and by __main__)."""
    global _store
    _store = store


def get_store() -> GameStore:
    """Return the active store (used in tests to inspect state)."""
    return _store


@mcp.tool()
def describe_timeline() -> str:
    """Return the whole game (setup, timeline, conversations) as text."""
    return serialize_game_state(_store.state)


@mcp.tool()
def list_items() -> dict:
    """List every period, event, and scene in timeline order."""
    items: list[dict] = []
    for period in _store.sorted_periods():
        items.append({"kind": "period", "id": period.id, "title": period.title,
                      "tone": period.tone, "frozen": period.frozen})
        for event in _store.events_in(period.id):
            items.append({"kind": "event", "id": event.id, "title": event.title,
                          "tone": event.tone, "frozen": event.frozen, "parent": period.id})
            for scene in _store.scenes_in(event.id):
                items.append({"kind": "scene", "id": scene.id, "title": scene.label,
                              "tone": scene.tone, "frozen": scene.frozen, "parent": event.id})
    return {"items": items}


@mcp.tool()
def parse_directives(text: str) -> dict:
    """Show the directives and narrative the parser finds in text."""
    return parse_response(text).model_dump()


@mcp.tool()
def apply_directives(text: str, conversation_id: str | None = None) -> dict:
    """Apply text as an AI reply in a conversation (the meta conversation by default)."""
    target = conversation_id or _store.state.meta_conversation_id
    applied = apply_response(_store, text, target)
    return {
        "message_id": applied.message.id,
        "content": applied.message.content,
        "results": [r.model_dump() for r in applied.results],
    }


if __name__ == "__main__":
    import os
    from pathlib import Path

    from microscope.storage import Storage

    storage = Storage(Path(os.getenv("DATA_DIR", "data")))
    set_store(GameStore(storage.load_current(), storage=storage))
    mcp.run()
