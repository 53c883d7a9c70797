"""Core domain models.

The game state is a tree: periods contain events, events contain scenes, and
every one of them owns exactly one conversation. A separate meta conversation
holds setup discussion and the creation log.

Pydantic is used for validation and serialisation at every data boundary.
Models are treated as immutable values: the store never mutates one in place,
it builds a replacement with model_copy() and commits a new GameState.
"""

from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, Field

Tone = Literal["light", "dark"]
PaletteCategory = Literal["yes", "no"]
EntityKind = Literal["period", "event", "scene"]
MessageRole = Literal["user", "assistant", "system", "error"]
Phase = Literal["setup", "initial_round", "playing"]

HUMAN_PLAYER_ID = "human"
AI_PLAYER_ID = "ai-1"
SYSTEM_PLAYER_ID = "system"


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class Placement(BaseModel):
    """Where a new item goes among its siblings."""

    type: Literal["first", "last", "after", "before"]
    relative_to: str | None = None  # sibling title, for after/before only


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class LinkTo(BaseModel):
    type: EntityKind
    id: str


class MessageMetadata(BaseModel):
    link_to: LinkTo | None = None
    # Fingerprints of directives already executed from this message
    applied_directives: list[str] = Field(default_factory=list)


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: MessageRole
    player_id: str
    player_name: str | None = None
    content: str
    timestamp: int = Field(default_factory=now_ms)
    pending: bool = False
    raw_content: str | None = None
    metadata: MessageMetadata | None = None


class Conversation(BaseModel):
    id: str
    messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Timeline entities
# ---------------------------------------------------------------------------

class Period(BaseModel):
    id: str
    title: str
    description: str = ""
    tone: Tone
    order: int
    is_bookend: bool = False
    frozen: bool = False
    created_by: str = HUMAN_PLAYER_ID
    conversation_id: str


class Event(BaseModel):
    id: str
    period_id: str
    title: str
    description: str = ""
    tone: Tone
    order: int
    frozen: bool = False
    created_by: str = HUMAN_PLAYER_ID
    conversation_id: str


class Scene(BaseModel):
    id: str
    event_id: str
    question: str
    answer: str | None = None
    tone: Tone
    order: int
    frozen: bool = False
    created_by: str = HUMAN_PLAYER_ID
    conversation_id: str
    title: str | None = None

    @property
    def label(self) -> str:
        return self.title or self.question


# ---------------------------------------------------------------------------
# Players, setup, game
# ---------------------------------------------------------------------------

class Player(BaseModel):
    id: str
    name: str
    type: Literal["human", "ai"]


def default_players() -> list[Player]:
    return [
        Player(id=HUMAN_PLAYER_ID, name="You", type="human"),
        Player(id=AI_PLAYER_ID, name="AI Player", type="ai"),
    ]


class PaletteItem(BaseModel):
    id: str = Field(default_factory=new_id)
    category: PaletteCategory
    text: str
    created_by: str = HUMAN_PLAYER_ID


class Bookends(BaseModel):
    start: str | None = None  # period id
    end: str | None = None


class GameSetup(BaseModel):
    big_picture: str = ""
    bookends: Bookends = Field(default_factory=Bookends)
    palette: list[PaletteItem] = Field(default_factory=list)


class CurrentTurn(BaseModel):
    player_id: str
    round: int = 1


class Selection(BaseModel):
    type: Literal["meta", "period", "event", "scene"]
    id: str


class GameState(BaseModel):
    id: str
    name: str = "New Game"
    setup: GameSetup = Field(default_factory=GameSetup)
    periods: list[Period] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    scenes: list[Scene] = Field(default_factory=list)
    conversations: dict[str, Conversation] = Field(default_factory=dict)
    meta_conversation_id: str
    players: list[Player] = Field(default_factory=default_players)
    phase: Phase = "setup"
    current_turn: CurrentTurn | None = None
    current_selection: Selection | None = None


def new_game_state(game_id: str | None = None, name: str = "New Game") -> GameState:
    """A fresh game in setup phase with only the meta conversation."""
    meta_id = new_id()
    return GameState(
        id=game_id or new_id(),
        name=name,
        conversations={meta_id: Conversation(id=meta_id)},
        meta_conversation_id=meta_id,
        current_selection=Selection(type="meta", id=meta_id),
    )


class GameMeta(BaseModel):
    """One row of the saved-games index."""

    id: str
    name: str
    last_played: str
    big_picture: str = ""
