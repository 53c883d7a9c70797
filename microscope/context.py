"""Game state → AI prompt projection.

The prompt is layered for prompt caching:

  system_prompt     rules and persona for the current conversation's kind
  cached_context    full serialisation of the game: setup, the whole timeline
                    tree with every conversation transcript, and the meta
                    conversation (minus its tail when it is the current one)
  recent_messages   the last N messages of the current conversation

The first two layers change rarely and are marked cacheable; only the last
changes every turn. serialize_game_state() is a pure function of the state,
so the same state always yields byte-identical text.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel

from microscope.llm import AIMessage
from microscope.models import (
    AI_PLAYER_ID,
    Event,
    GameState,
    Message,
    Period,
    Scene,
)
from microscope.prompts import render_system_prompt

DEFAULT_RECENT_COUNT = 10

_CACHE_CONTROL = {"type": "ephemeral"}
_PROPER_NOUN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")
_STOPWORDS = frozenset({
    "The", "A", "An", "In", "On", "At", "To", "For", "Of", "And", "But", "Or",
    "I", "It", "We", "You", "This", "That", "Created", "Updated", "Added",
})


class GameContext(BaseModel):
    system_prompt: str
    cached_context: str
    recent_messages: list[AIMessage]


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _speaker(msg: Message) -> str:
    if msg.role == "system":
        return "System"
    if msg.player_name:
        return msg.player_name
    return "Human" if msg.role == "user" else "AI"


def _transcript(messages: list[Message], indent: int = 0) -> list[str]:
    """Transcript lines, skipping error and still-pending messages."""
    pad = " " * indent
    lines = []
    for msg in messages:
        if msg.role == "error" or msg.pending:
            continue
        text = msg.content.replace("\n", "\n" + pad)
        lines.append(f"{pad}[{format_timestamp(msg.timestamp)}] {_speaker(msg)}: {text}")
    return lines


def _by_order(items):
    return sorted(items, key=lambda item: item.order)


def _proper_nouns(state: GameState) -> list[str]:
    texts: list[str] = []
    for p in state.periods:
        texts += [p.title, p.description]
    for e in state.events:
        texts += [e.title, e.description]
    for s in state.scenes:
        texts += [s.question, s.answer or "", s.title or ""]
    for conv in state.conversations.values():
        texts += [m.content for m in conv.messages if m.role not in ("error", "system")]

    found = {
        word for text in texts for word in _PROPER_NOUN.findall(text)
        if word not in _STOPWORDS
    }
    return sorted(found)


def serialize_game_state(state: GameState, meta_tail_excluded: int = 0) -> str:
    """Render the full game as one deterministic text document.

    `meta_tail_excluded` drops that many non-error messages from the end of
    the meta conversation (they are sent uncached as recent messages instead).
    """
    setup = state.setup
    periods = _by_order(state.periods)
    titles = {p.id: p.title for p in periods}
    lines: list[str] = ["=== GAME STATE ===", ""]

    lines.append("--- SETUP ---")
    lines.append(f"Big Picture: {setup.big_picture or '(not yet defined)'}")
    lines.append(f"Start bookend: {titles.get(setup.bookends.start, '(not yet defined)')}")
    lines.append(f"End bookend: {titles.get(setup.bookends.end, '(not yet defined)')}")
    lines.append(f"Phase: {state.phase}")
    if state.current_turn is not None:
        names = {p.id: p.name for p in state.players}
        player = names.get(state.current_turn.player_id, state.current_turn.player_id)
        lines.append(f"Round {state.current_turn.round}, turn: {player}")
    yes = [i.text for i in setup.palette if i.category == "yes"]
    no = [i.text for i in setup.palette if i.category == "no"]
    if yes or no:
        lines.append("Palette:")
        if yes:
            lines.append(f"  YES (things we want): {', '.join(yes)}")
        if no:
            lines.append(f"  NO (things we keep out): {', '.join(no)}")
    lines.append("")

    if periods:
        lines.append("--- TIMELINE OVERVIEW ---")
        for period in periods:
            bookend = " (BOOKEND)" if period.is_bookend else ""
            lines.append(f"PERIOD {period.order + 1} [{period.tone.upper()}]{bookend}: {period.title}")
            for event in _events_of(state, period):
                lines.append(f"  EVENT {event.order + 1} [{event.tone.upper()}]: {event.title}")
                for scene in _scenes_of(state, event):
                    lines.append(f"    SCENE {scene.order + 1} [{scene.tone.upper()}]: {scene.label}")
        lines.append("")

        lines.append("--- TIMELINE DETAIL ---")
        for period in periods:
            lines += _period_detail(state, period)
        lines.append("")

    meta = [m for m in state.conversations[state.meta_conversation_id].messages
            if m.role != "error"]
    meta = meta[: max(len(meta) - meta_tail_excluded, 0)]
    meta_lines = _transcript(meta)
    if meta_lines:
        lines.append("--- META CONVERSATION (setup and coordination) ---")
        lines += meta_lines
        lines.append("")

    nouns = _proper_nouns(state)
    if nouns:
        lines.append("--- NAMES MENTIONED ---")
        lines.append(", ".join(nouns))
        lines.append("")

    lines.append("=== END OF GAME STATE ===")
    return "\n".join(lines)


def _events_of(state: GameState, period: Period) -> list[Event]:
    return _by_order(e for e in state.events if e.period_id == period.id)


def _scenes_of(state: GameState, event: Event) -> list[Scene]:
    return _by_order(s for s in state.scenes if s.event_id == event.id)


def _status(item) -> str:
    return "frozen" if item.frozen else "open"


def _period_detail(state: GameState, period: Period) -> list[str]:
    lines = [
        "",
        f"## PERIOD {period.order + 1}: {period.title} [{period.tone.upper()}, {_status(period)}]",
    ]
    if period.description:
        lines.append(f"Description: {period.description}")
    transcript = _transcript(state.conversations[period.conversation_id].messages)
    if transcript:
        lines.append("Period discussion:")
        lines += transcript

    for event in _events_of(state, period):
        lines.append("")
        lines.append(
            f"  ### EVENT {event.order + 1}: {event.title} [{event.tone.upper()}, {_status(event)}]"
        )
        if event.description:
            lines.append(f"  Description: {event.description}")
        transcript = _transcript(state.conversations[event.conversation_id].messages, indent=2)
        if transcript:
            lines.append("  Event discussion:")
            lines += transcript

        for scene in _scenes_of(state, event):
            lines.append("")
            lines.append(
                f"    #### SCENE {scene.order + 1}: {scene.label}"
                f" [{scene.tone.upper()}, {_status(scene)}]"
            )
            if scene.title:
                lines.append(f"    Question: {scene.question}")
            if scene.answer:
                lines.append(f"    Answer: {scene.answer}")
            transcript = _transcript(state.conversations[scene.conversation_id].messages, indent=4)
            if transcript:
                lines.append("    Scene discussion:")
                lines += transcript
    return lines


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

def _owner_entity(state: GameState, conversation_id: str) -> Period | Event | Scene | None:
    for items in (state.periods, state.events, state.scenes):
        for item in items:
            if item.conversation_id == conversation_id:
                return item
    return None


def build_system_prompt(state: GameState, conversation_id: str) -> str:
    names = {p.id: p.name for p in state.players}
    player_name = names.get(AI_PLAYER_ID, "AI Player")
    ctx: dict = {"player_name": player_name, "phase": state.phase}
    if state.current_turn is not None:
        ctx["round"] = state.current_turn.round
        ctx["turn_player"] = names.get(state.current_turn.player_id, state.current_turn.player_id)

    entity = _owner_entity(state, conversation_id)
    if entity is None:
        return render_system_prompt("meta", ctx)

    ctx.update(tone=entity.tone, frozen=entity.frozen, editable=not entity.frozen)
    if isinstance(entity, Period):
        ctx.update(title=entity.title, describable=True)
        return render_system_prompt("period", ctx)
    if isinstance(entity, Event):
        period = next((p for p in state.periods if p.id == entity.period_id), None)
        ctx.update(
            title=entity.title,
            period_title=period.title if period else "",
            describable=True,
        )
        return render_system_prompt("event", ctx)

    event = next((e for e in state.events if e.id == entity.event_id), None)
    ctx.update(
        question=entity.question,
        answer=entity.answer or "",
        event_title=event.title if event else "",
        describable=False,
    )
    return render_system_prompt("scene", ctx)


# ---------------------------------------------------------------------------
# Context assembly
# ---------------------------------------------------------------------------

def build_context(
    state: GameState,
    current_conversation_id: str,
    recent_count: int = DEFAULT_RECENT_COUNT,
) -> GameContext:
    is_meta = current_conversation_id == state.meta_conversation_id
    cached = serialize_game_state(state, meta_tail_excluded=recent_count if is_meta else 0)

    conv = state.conversations.get(current_conversation_id)
    messages = [m for m in conv.messages if m.role != "error"] if conv else []
    recent = messages[-recent_count:] if recent_count > 0 else []

    return GameContext(
        system_prompt=build_system_prompt(state, current_conversation_id),
        cached_context=cached,
        recent_messages=[
            AIMessage(role="assistant" if m.role == "assistant" else "user", content=m.content)
            for m in recent
        ],
    )


def to_provider_messages(context: GameContext) -> list[AIMessage]:
    """Flatten a GameContext into provider messages, marking the stable prefix cacheable."""
    return [
        AIMessage(role="system", content=context.system_prompt, cache_control=_CACHE_CONTROL),
        AIMessage(role="system", content=context.cached_context, cache_control=_CACHE_CONTROL),
        *context.recent_messages,
    ]
