"""Tests for microscope.store — placement, ordering, freezing, cascades, phases,
messages, batching, and the conversation owner index."""

import pytest

from microscope.models import Conversation, Placement
from microscope.store import (
    FrozenItemError,
    GameStore,
    NotFoundError,
    Owner,
    PhaseError,
    PlacementError,
    StateInvariantError,
)


def _titles(periods) -> list[str]:
    return [p.title for p in periods]


def _assert_dense(items) -> None:
    assert sorted(i.order for i in items) == list(range(len(items)))


@pytest.fixture
def store() -> GameStore:
    return GameStore()


@pytest.fixture
def bookended(store: GameStore) -> GameStore:
    store.add_period("Dawn", "start", "light", is_bookend=True, placement=Placement(type="first"))
    store.add_period("Dusk", "end", "dark", is_bookend=True, placement=Placement(type="last"))
    return store


class RecordingStorage:
    def __init__(self) -> None:
        self.saved: list[str] = []
        self.games: dict = {}

    def save(self, game_id, state) -> None:
        self.saved.append(game_id)
        self.games[game_id] = state

    def load(self, game_id):
        return self.games.get(game_id)


# ---------------------------------------------------------------------------
# Creation and placement
# ---------------------------------------------------------------------------

class TestPeriods:
    def test_add_period_creates_conversation(self, store: GameStore) -> None:
        period = store.add_period("The Golden Age", "Prosperity", "light")
        assert period.conversation_id in store.state.conversations
        assert store.owner_of(period.conversation_id) == Owner("period", period.id)
        assert period.order == 0
        assert period.frozen is False

    def test_default_placement_appends(self, store: GameStore) -> None:
        store.add_period("A")
        store.add_period("B")
        store.add_period("C")
        assert _titles(store.sorted_periods()) == ["A", "B", "C"]
        _assert_dense(store.state.periods)

    def test_new_periods_stay_between_bookends(self, bookended: GameStore) -> None:
        bookended.add_period("Middle")
        bookended.add_period("First Inside", placement=Placement(type="first"))
        bookended.add_period("Last Inside", placement=Placement(type="last"))
        assert _titles(bookended.sorted_periods()) == [
            "Dawn", "First Inside", "Middle", "Last Inside", "Dusk",
        ]
        _assert_dense(bookended.state.periods)

    def test_after_and_before(self, bookended: GameStore) -> None:
        bookended.add_period("B")
        bookended.add_period("C", placement=Placement(type="after", relative_to="B"))
        bookended.add_period("A", placement=Placement(type="before", relative_to="B"))
        assert _titles(bookended.sorted_periods()) == ["Dawn", "A", "B", "C", "Dusk"]

    def test_placement_is_clamped_inside_bookends(self, bookended: GameStore) -> None:
        bookended.add_period("Early", placement=Placement(type="before", relative_to="Dawn"))
        bookended.add_period("Late", placement=Placement(type="after", relative_to="Dusk"))
        assert _titles(bookended.sorted_periods()) == ["Dawn", "Early", "Late", "Dusk"]

    def test_unknown_placement_reference_rejects(self, bookended: GameStore) -> None:
        before = bookended.state
        with pytest.raises(PlacementError, match="Nowhere"):
            bookended.add_period("X", placement=Placement(type="after", relative_to="Nowhere"))
        assert bookended.state is before

    def test_bookends_registered(self, bookended: GameStore) -> None:
        bookends = bookended.state.setup.bookends
        periods = bookended.sorted_periods()
        assert bookends.start == periods[0].id
        assert bookends.end == periods[-1].id
        assert all(p.is_bookend for p in periods)

    def test_second_start_bookend_rejected(self, bookended: GameStore) -> None:
        with pytest.raises(PlacementError):
            bookended.add_period("Again", is_bookend=True, placement=Placement(type="first"))

    def test_start_bookend_added_late_goes_first(self, store: GameStore) -> None:
        store.add_period("Middle")
        store.add_period("Dawn", is_bookend=True, placement=Placement(type="first"))
        assert _titles(store.sorted_periods()) == ["Dawn", "Middle"]

    def test_find_period_by_title_is_exact(self, store: GameStore) -> None:
        store.add_period("The Golden Age")
        assert store.find_period_by_title("The Golden Age") is not None
        assert store.find_period_by_title("the golden age") is None

    def test_duplicate_titles_resolve_to_earliest(self, store: GameStore) -> None:
        second = store.add_period("Twin")
        first = store.add_period("Twin", placement=Placement(type="first"))
        assert store.find_period_by_title("Twin").id == first.id != second.id


class TestEventsAndScenes:
    def test_orders_are_per_sibling_group(self, store: GameStore) -> None:
        p1 = store.add_period("P1")
        p2 = store.add_period("P2")
        store.add_event(p1.id, "A")
        store.add_event(p1.id, "B")
        store.add_event(p2.id, "C")
        store.add_event(p1.id, "Zero", placement=Placement(type="first"))
        assert [e.title for e in store.events_in(p1.id)] == ["Zero", "A", "B"]
        assert [e.order for e in store.events_in(p2.id)] == [0]
        _assert_dense(store.events_in(p1.id))

    def test_event_relative_placement(self, store: GameStore) -> None:
        p = store.add_period("P")
        store.add_event(p.id, "A")
        store.add_event(p.id, "C")
        store.add_event(p.id, "B", placement=Placement(type="after", relative_to="A"))
        assert [e.title for e in store.events_in(p.id)] == ["A", "B", "C"]

    def test_event_needs_existing_period(self, store: GameStore) -> None:
        with pytest.raises(NotFoundError):
            store.add_event("missing", "Orphan")

    def test_scene_ordering_and_label(self, store: GameStore) -> None:
        p = store.add_period("P")
        e = store.add_event(p.id, "E")
        store.add_scene(e.id, "Why?", tone="dark")
        titled = store.add_scene(e.id, "How?", title="The Escape", placement=Placement(type="first"))
        assert titled.label == "The Escape"
        assert [s.label for s in store.scenes_in(e.id)] == ["The Escape", "Why?"]
        assert store.owner_of(titled.conversation_id) == Owner("scene", titled.id)

    def test_find_event_by_title_scoped(self, store: GameStore) -> None:
        p1 = store.add_period("P1")
        p2 = store.add_period("P2")
        store.add_event(p1.id, "Same")
        e2 = store.add_event(p2.id, "Same")
        assert store.find_event_by_title("Same", period_id=p2.id).id == e2.id
        assert store.find_event_by_title("Missing") is None


# ---------------------------------------------------------------------------
# Updates and freezing
# ---------------------------------------------------------------------------

class TestUpdates:
    def test_update_unfrozen(self, store: GameStore) -> None:
        p = store.add_period("Old", "desc", "light")
        updated = store.update_period(p.id, title="New", tone="dark")
        assert updated.title == "New"
        assert updated.tone == "dark"
        assert updated.conversation_id == p.conversation_id

    def test_frozen_rejects_protected_fields(self, store: GameStore) -> None:
        p = store.add_period("Settled")
        store.freeze_item("period", p.id)
        with pytest.raises(FrozenItemError):
            store.update_period(p.id, title="Changed")
        assert store.get_period(p.id).title == "Settled"

    def test_frozen_allows_same_value(self, store: GameStore) -> None:
        p = store.add_period("Settled")
        store.freeze_item("period", p.id)
        store.update_period(p.id, title="Settled")

    def test_frozen_scene_rejects_question(self, store: GameStore) -> None:
        e = store.add_event(store.add_period("P").id, "E")
        s = store.add_scene(e.id, "Why?")
        store.freeze_item("scene", s.id)
        with pytest.raises(FrozenItemError):
            store.update_scene(s.id, answer="Because")

    def test_identity_fields_cannot_change(self, store: GameStore) -> None:
        p = store.add_period("P")
        with pytest.raises(ValueError):
            store.update_period(p.id, conversation_id="other")

    def test_invalid_tone_rejected(self, store: GameStore) -> None:
        p = store.add_period("P")
        with pytest.raises(ValueError):
            store.update_period(p.id, tone="neutral")

    def test_freeze_unfrozen_items_spares_bookends_in_setup(self, bookended: GameStore) -> None:
        plain = bookended.add_period("Plain")
        frozen = bookended.freeze_unfrozen_items()
        assert frozen == [Owner("period", plain.id)]
        assert [p.frozen for p in bookended.sorted_periods()] == [False, True, False]


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

class TestDeletion:
    def test_delete_period_cascades(self, store: GameStore) -> None:
        p = store.add_period("P")
        e = store.add_event(p.id, "E")
        s = store.add_scene(e.id, "Q?")
        store.set_selection("scene", s.id)
        store.delete_period(p.id)
        state = store.state
        assert state.periods == [] and state.events == [] and state.scenes == []
        assert list(state.conversations) == [state.meta_conversation_id]
        assert state.current_selection.type == "meta"

    def test_delete_renumbers_siblings(self, store: GameStore) -> None:
        p = store.add_period("P")
        a = store.add_event(p.id, "A")
        store.add_event(p.id, "B")
        store.add_event(p.id, "C")
        store.delete_event(a.id)
        assert [(e.title, e.order) for e in store.events_in(p.id)] == [("B", 0), ("C", 1)]

    def test_delete_bookend_clears_reference(self, bookended: GameStore) -> None:
        bookended.delete_period(bookended.state.setup.bookends.start)
        assert bookended.state.setup.bookends.start is None
        assert bookended.state.setup.bookends.end is not None

    def test_delete_missing(self, store: GameStore) -> None:
        with pytest.raises(NotFoundError):
            store.delete_scene("nope")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TestMessages:
    def test_add_message_generates_id(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        msg = store.add_message(meta, role="user", content="hi", player_id="human")
        assert msg.id
        assert msg.timestamp > 0
        assert store.get_conversation(meta).messages == [msg]

    def test_pending_message_lifecycle(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        store.add_message_with_id(meta, "m-1", role="user", content="hi", player_id="human",
                                  pending=True)
        assert store.update_message(meta, "m-1", pending=False).pending is False
        store.remove_message(meta, "m-1")
        assert store.get_conversation(meta).messages == []

    def test_message_to_missing_conversation(self, store: GameStore) -> None:
        with pytest.raises(NotFoundError):
            store.add_message("nope", role="user", content="hi", player_id="human")

    def test_truncate_and_find(self, store: GameStore) -> None:
        meta = store.state.meta_conversation_id
        ids = [store.add_message(meta, role="user", content=str(i), player_id="human").id
               for i in range(4)]
        assert store.find_message(ids[2])[0] == meta
        dropped = store.truncate_conversation(meta, ids[2])
        assert [m.content for m in dropped] == ["2", "3"]
        assert [m.id for m in store.get_conversation(meta).messages] == ids[:2]
        assert store.find_message(ids[3]) is None


# ---------------------------------------------------------------------------
# Palette, selection, phases
# ---------------------------------------------------------------------------

class TestSetupAndPhases:
    def test_palette_dedupes(self, store: GameStore) -> None:
        a = store.add_palette_item("yes", "Magic")
        b = store.add_palette_item("yes", " magic ")
        store.add_palette_item("no", "Magic")
        assert a.id == b.id
        assert [(i.category, i.text) for i in store.state.setup.palette] == [
            ("yes", "Magic"), ("no", "Magic"),
        ]

    def test_update_palette_replaces(self, store: GameStore) -> None:
        kept = store.add_palette_item("yes", "Magic", created_by="ai-1")
        palette = store.update_palette(yes=["Magic", "Dragons"], no=["Guns", ""])
        assert [i.text for i in palette] == ["Magic", "Dragons", "Guns"]
        assert palette[0].id == kept.id
        assert palette[0].created_by == "ai-1"

    def test_set_selection(self, store: GameStore) -> None:
        p = store.add_period("P")
        store.set_selection("period", p.id)
        assert store.selected_conversation_id() == p.conversation_id
        store.set_selection("meta")
        assert store.state.current_selection.id == store.state.meta_conversation_id
        with pytest.raises(NotFoundError):
            store.set_selection("event", "missing")

    def test_start_game_requirements(self, store: GameStore) -> None:
        with pytest.raises(PhaseError, match="big picture"):
            store.start_game()
        store.update_big_picture("An empire rises and falls")
        with pytest.raises(PhaseError, match="bookends"):
            store.start_game()

    def test_start_game_freezes_and_sets_turn(self, bookended: GameStore) -> None:
        bookended.update_big_picture("An empire rises and falls")
        turn = bookended.start_game()
        state = bookended.state
        assert state.phase == "initial_round"
        assert turn.player_id == state.players[0].id
        assert all(p.frozen for p in state.periods)
        with pytest.raises(PhaseError):
            bookended.start_game()

    def test_end_turn_round_robin(self, bookended: GameStore) -> None:
        bookended.update_big_picture("Big")
        bookended.start_game()
        bookended.add_period("Open")
        turn = bookended.end_turn()
        assert turn.player_id == "ai-1"
        assert bookended.state.phase == "initial_round"
        assert bookended.unfrozen_items() == []

        turn = bookended.end_turn()
        assert turn.player_id == "human"
        assert turn.round == 2
        assert bookended.state.phase == "playing"

    def test_end_turn_before_start(self, store: GameStore) -> None:
        with pytest.raises(PhaseError):
            store.end_turn()

    def test_at_most_one_unfrozen_outside_setup(self, bookended: GameStore) -> None:
        bookended.update_big_picture("Big")
        bookended.start_game()
        for title in ("A", "B", "C"):
            bookended.freeze_unfrozen_items()
            bookended.add_period(title)
            assert len(bookended.unfrozen_items()) == 1


# ---------------------------------------------------------------------------
# Commit machinery
# ---------------------------------------------------------------------------

class TestCommit:
    def test_batch_commits_once(self) -> None:
        storage = RecordingStorage()
        store = GameStore(storage=storage)
        seen = []
        store.subscribe(seen.append)
        with store.batch():
            p = store.add_period("P")
            store.add_event(p.id, "E")
        assert len(storage.saved) == 1
        assert len(seen) == 1
        assert seen[0] is store.state

    def test_batch_rolls_back_on_error(self) -> None:
        storage = RecordingStorage()
        store = GameStore(storage=storage)
        before = store.state
        with pytest.raises(PlacementError):
            with store.batch():
                store.add_period("P")
                store.add_period("Q", placement=Placement(type="after", relative_to="Nope"))
        assert store.state is before
        assert storage.saved == []

    def test_each_operation_saves(self) -> None:
        storage = RecordingStorage()
        store = GameStore(storage=storage)
        store.add_period("P")
        store.update_big_picture("Big")
        assert storage.saved == [store.state.id, store.state.id]

    def test_unsubscribe(self, store: GameStore) -> None:
        seen = []
        unsubscribe = store.subscribe(seen.append)
        store.update_big_picture("one")
        unsubscribe()
        store.update_big_picture("two")
        assert len(seen) == 1

    def test_orphan_conversation_refused(self, store: GameStore) -> None:
        state = store.state
        bad = state.model_copy(update={
            "conversations": {**state.conversations, "stray": Conversation(id="stray")},
        })
        with pytest.raises(StateInvariantError):
            GameStore(bad)

    def test_switch_and_create_game(self) -> None:
        storage = RecordingStorage()
        store = GameStore(storage=storage)
        first_id = store.state.id
        store.update_big_picture("First game")
        second = store.create_new_game("Second")
        assert store.state.id == second.id != first_id
        store.switch_game(first_id)
        assert store.state.setup.big_picture == "First game"
        with pytest.raises(NotFoundError):
            store.switch_game("missing")
