"""Tests for microscope.context — game serialisation and prompt assembly."""

import pytest

from microscope.context import (
    build_context,
    build_system_prompt,
    format_timestamp,
    serialize_game_state,
    to_provider_messages,
)
from microscope.models import Placement
from microscope.store import GameStore


@pytest.fixture
def store() -> GameStore:
    s = GameStore()
    s.update_big_picture("A drowned empire rebuilds")
    s.add_period("Dawn", "The waters rise", "dark", is_bookend=True,
                 placement=Placement(type="first"))
    s.add_period("Dusk", "The new coast", "light", is_bookend=True,
                 placement=Placement(type="last"))
    s.add_palette_item("yes", "Sea monsters")
    s.add_palette_item("no", "Gunpowder")
    return s


def _say(store: GameStore, cid: str, content: str, role: str = "user", **kw):
    return store.add_message(cid, role=role, content=content,
                             player_id="human" if role == "user" else "ai-1", **kw)


class TestSerialize:
    def test_sections_in_order(self, store: GameStore) -> None:
        _say(store, store.state.meta_conversation_id, "Let's begin with Marrow Bay")
        text = serialize_game_state(store.state)

        headers = ["=== GAME STATE ===", "--- SETUP ---", "--- TIMELINE OVERVIEW ---",
                   "--- TIMELINE DETAIL ---", "--- META CONVERSATION", "--- NAMES MENTIONED ---",
                   "=== END OF GAME STATE ==="]
        positions = [text.index(h) for h in headers]
        assert positions == sorted(positions)
        assert "Big Picture: A drowned empire rebuilds" in text
        assert "Start bookend: Dawn" in text
        assert "YES (things we want): Sea monsters" in text
        assert "NO (things we keep out): Gunpowder" in text
        assert "PERIOD 1 [DARK] (BOOKEND): Dawn" in text
        assert "Marrow Bay" in text.split("--- NAMES MENTIONED ---")[1]

    def test_deterministic(self, store: GameStore) -> None:
        assert serialize_game_state(store.state) == serialize_game_state(store.state)

    def test_empty_game(self) -> None:
        text = serialize_game_state(GameStore().state)
        assert "Big Picture: (not yet defined)" in text
        assert "TIMELINE" not in text
        assert text.endswith("=== END OF GAME STATE ===")

    def test_tree_with_transcripts(self, store: GameStore) -> None:
        period = store.add_period("The Tide Councils", "Rule by water", "light")
        event = store.add_event(period.id, "The Flood Vote", "A close call", "dark")
        scene = store.add_scene(event.id, "Who cast the last vote?", answer="The harbor master",
                                tone="dark", title="The Last Vote")
        _say(store, event.conversation_id, "Line one\nLine two", role="assistant",
             player_name="AI Player")
        _say(store, scene.conversation_id, "Hidden", role="error")

        text = serialize_game_state(store.state)
        assert "## PERIOD 2: The Tide Councils [LIGHT, open]" in text
        assert "  ### EVENT 1: The Flood Vote [DARK, open]" in text
        assert "    #### SCENE 1: The Last Vote [DARK, open]" in text
        assert "    Question: Who cast the last vote?" in text
        assert "    Answer: The harbor master" in text
        assert "AI Player: Line one\n  Line two" in text
        assert "Hidden" not in text

    def test_meta_tail_excluded(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        for i in range(5):
            _say(store, meta, f"message-{i}")
        text = serialize_game_state(store.state, meta_tail_excluded=2)
        assert "message-2" in text
        assert "message-3" not in text
        assert "message-4" not in text

    def test_pending_messages_skipped(self, store: GameStore) -> None:
        _say(store, store.state.meta_conversation_id, "not yet", pending=True)
        assert "not yet" not in serialize_game_state(store.state)


def test_format_timestamp() -> None:
    assert format_timestamp(0) == "1970-01-01 00:00"
    assert format_timestamp(1_700_000_000_000) == "2023-11-14 22:13"


class TestSystemPrompt:
    def test_kind_follows_owner(self, store: GameStore) -> None:
        period = store.add_period("The Tide Councils", tone="light")
        event = store.add_event(period.id, "The Flood Vote", tone="dark")
        scene = store.add_scene(event.id, "Who voted?", tone="dark")

        assert "game setup and coordination" in build_system_prompt(
            store.state, store.state.meta_conversation_id)
        assert 'the period "The Tide Councils"' in build_system_prompt(
            store.state, period.conversation_id)
        assert 'in the period "The Tide Councils"' in build_system_prompt(
            store.state, event.conversation_id)
        scene_prompt = build_system_prompt(store.state, scene.conversation_id)
        assert 'a scene in the event "The Flood Vote"' in scene_prompt
        assert "Question: Who voted?" in scene_prompt

    def test_frozen_period_prompt(self, store: GameStore) -> None:
        period = store.add_period("Settled")
        store.freeze_item("period", period.id)
        prompt = build_system_prompt(store.state, period.conversation_id)
        assert "This period is frozen" in prompt
        assert "# edit name" not in prompt


class TestBuildContext:
    def test_idempotent(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        _say(store, meta, "hello")
        first = build_context(store.state, meta)
        second = build_context(store.state, meta)
        assert first == second

    def test_recent_messages_from_current_conversation(self, store: GameStore) -> None:
        period = store.add_period("P")
        cid = period.conversation_id
        _say(store, cid, "question")
        _say(store, cid, "oops", role="error")
        _say(store, cid, "answer", role="assistant")
        _say(store, cid, "Created event: X", role="system")

        ctx = build_context(store.state, cid, recent_count=10)
        assert [(m.role, m.content) for m in ctx.recent_messages] == [
            ("user", "question"), ("assistant", "answer"), ("user", "Created event: X"),
        ]

    def test_recent_count_limits(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        for i in range(6):
            _say(store, meta, f"m{i}")
        ctx = build_context(store.state, meta, recent_count=3)
        assert [m.content for m in ctx.recent_messages] == ["m3", "m4", "m5"]
        assert "m2" in ctx.cached_context
        assert "m3" not in ctx.cached_context

    def test_entity_conversation_keeps_full_meta(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        for i in range(3):
            _say(store, meta, f"m{i}")
        period = store.add_period("P")
        ctx = build_context(store.state, period.conversation_id, recent_count=2)
        assert "m2" in ctx.cached_context
        assert ctx.recent_messages == []

    def test_provider_messages_mark_prefix_cacheable(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        _say(store, meta, "hi")
        messages = to_provider_messages(build_context(store.state, meta))
        assert [m.role for m in messages] == ["system", "system", "user"]
        assert messages[0].cache_control == {"type": "ephemeral"}
        assert messages[1].cache_control == {"type": "ephemeral"}
        assert messages[2].cache_control is None
        assert messages[1].content.startswith("=== GAME STATE ===")
