"""Game state store — the authoritative timeline tree and its mutations.

The store holds one GameState at a time and never mutates it in place: every
operation builds a replacement state and commits it in one step. A commit

  1. rebuilds the conversation → owner index and refuses the state if any
     conversation is missing, shared, or orphaned,
  2. swaps the new state in,
  3. hands it to the storage collaborator (save) and to every subscriber.

Several operations can be grouped with `batch()`: they commit together (one
save, one notification) and roll back together if anything inside raises.

Ordering: `order` is dense (0..n-1) within each sibling group — periods in
the whole timeline, events per period, scenes per event. Inserts and deletes
renumber the group. Periods are kept between the start and end bookends.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, NamedTuple, Protocol

from microscope.models import (
    HUMAN_PLAYER_ID,
    Bookends,
    Conversation,
    CurrentTurn,
    EntityKind,
    Event,
    GameState,
    Message,
    MessageMetadata,
    MessageRole,
    PaletteCategory,
    PaletteItem,
    Period,
    Placement,
    Scene,
    Selection,
    Tone,
    new_game_state,
    new_id,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Base class for rejected store operations."""


class NotFoundError(StoreError):
    """A referenced entity, conversation, message, or game does not exist."""


class FrozenItemError(StoreError):
    """A protected field of a frozen item was changed."""


class PlacementError(StoreError):
    """A placement could not be resolved (unknown sibling, duplicate bookend)."""


class PhaseError(StoreError):
    """The operation is not valid in the current game phase."""


class StateInvariantError(StoreError):
    """A state was refused at commit because its conversations are inconsistent."""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class GameStorage(Protocol):
    def save(self, game_id: str, state: GameState) -> None: ...

    def load(self, game_id: str) -> GameState | None: ...


class Owner(NamedTuple):
    kind: EntityKind
    entity_id: str


Listener = Callable[[GameState], None]

_EDITABLE: dict[str, frozenset[str]] = {
    "period": frozenset({"title", "description", "tone", "frozen"}),
    "event": frozenset({"title", "description", "tone", "frozen"}),
    "scene": frozenset({"question", "answer", "title", "tone", "frozen"}),
}
_PROTECTED: dict[str, frozenset[str]] = {
    "period": frozenset({"title", "description", "tone"}),
    "event": frozenset({"title", "description", "tone"}),
    "scene": frozenset({"question", "answer", "title", "tone"}),
}


def build_owner_index(state: GameState) -> dict[str, Owner]:
    """Map every entity conversation id to its owner, validating the mapping."""
    if state.meta_conversation_id not in state.conversations:
        raise StateInvariantError("Meta conversation is missing")

    owners: dict[str, Owner] = {}
    groups: list[tuple[EntityKind, list]] = [
        ("period", state.periods),
        ("event", state.events),
        ("scene", state.scenes),
    ]
    for kind, items in groups:
        for item in items:
            cid = item.conversation_id
            if cid not in state.conversations:
                raise StateInvariantError(f"{kind} {item.id} has no conversation {cid}")
            if cid in owners or cid == state.meta_conversation_id:
                raise StateInvariantError(f"Conversation {cid} is shared by {kind} {item.id}")
            owners[cid] = Owner(kind, item.id)

    for cid in state.conversations:
        if cid not in owners and cid != state.meta_conversation_id:
            raise StateInvariantError(f"Conversation {cid} has no owner")
    return owners


def _renumber(items: list) -> list:
    return [item if item.order == i else item.model_copy(update={"order": i})
            for i, item in enumerate(items)]


def _by_order(items) -> list:
    return sorted(items, key=lambda item: item.order)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class GameStore:
    """Synchronous, copy-on-write store for one game at a time.

    Args:
        state:   Initial state. A fresh game is created when omitted.
        storage: Persistence collaborator; `save` is called after every
                 top-level commit, `load` by switch_game().
    """

    def __init__(self, state: GameState | None = None, storage: GameStorage | None = None) -> None:
        self._state = state if state is not None else new_game_state()
        self._owners = build_owner_index(self._state)
        self._storage = storage
        self._listeners: list[Listener] = []
        self._batch_depth = 0

    @property
    def state(self) -> GameState:
        return self._state

    # ------------------------------------------------------------------
    # Commit / batch / subscribe
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for committed states. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator[GameStore]:
        """Group operations into a single commit. Any exception rolls all of them back."""
        snapshot = (self._state, self._owners)
        self._batch_depth += 1
        try:
            yield self
        except Exception:
            self._batch_depth -= 1
            self._state, self._owners = snapshot
            raise
        self._batch_depth -= 1
        if self._batch_depth == 0 and self._state is not snapshot[0]:
            self._publish()

    def _commit(self, state: GameState) -> None:
        owners = build_owner_index(state)
        self._state = state
        self._owners = owners
        if self._batch_depth == 0:
            self._publish()

    def _replace(self, **changes: Any) -> None:
        self._commit(self._state.model_copy(update=changes))

    def _publish(self) -> None:
        if self._storage is not None:
            self._storage.save(self._state.id, self._state)
        for listener in list(self._listeners):
            listener(self._state)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def owner_of(self, conversation_id: str) -> Owner | None:
        return self._owners.get(conversation_id)

    def get_period(self, period_id: str) -> Period:
        for p in self._state.periods:
            if p.id == period_id:
                return p
        raise NotFoundError(f"Period {period_id} not found")

    def get_event(self, event_id: str) -> Event:
        for e in self._state.events:
            if e.id == event_id:
                return e
        raise NotFoundError(f"Event {event_id} not found")

    def get_scene(self, scene_id: str) -> Scene:
        for s in self._state.scenes:
            if s.id == scene_id:
                return s
        raise NotFoundError(f"Scene {scene_id} not found")

    def get_entity(self, kind: EntityKind, entity_id: str) -> Period | Event | Scene:
        getter = {"period": self.get_period, "event": self.get_event, "scene": self.get_scene}[kind]
        return getter(entity_id)

    def get_conversation(self, conversation_id: str) -> Conversation:
        conv = self._state.conversations.get(conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conv

    def sorted_periods(self) -> list[Period]:
        return _by_order(self._state.periods)

    def events_in(self, period_id: str) -> list[Event]:
        return _by_order(e for e in self._state.events if e.period_id == period_id)

    def scenes_in(self, event_id: str) -> list[Scene]:
        return _by_order(s for s in self._state.scenes if s.event_id == event_id)

    def find_period_by_title(self, title: str) -> Period | None:
        """Exact, case-sensitive. Duplicates resolve to the earliest by order."""
        return next((p for p in self.sorted_periods() if p.title == title), None)

    def find_event_by_title(self, title: str, period_id: str | None = None) -> Event | None:
        events = _by_order(
            e for e in self._state.events if period_id is None or e.period_id == period_id
        )
        return next((e for e in events if e.title == title), None)

    def find_message(self, message_id: str) -> tuple[str, Message] | None:
        """Locate a message in any conversation. Returns (conversation_id, message)."""
        for cid, conv in self._state.conversations.items():
            for msg in conv.messages:
                if msg.id == message_id:
                    return cid, msg
        return None

    def unfrozen_items(self) -> list[Owner]:
        items: list[Owner] = []
        items += [Owner("period", p.id) for p in self._state.periods if not p.frozen]
        items += [Owner("event", e.id) for e in self._state.events if not e.frozen]
        items += [Owner("scene", s.id) for s in self._state.scenes if not s.frozen]
        return items

    def bookend_id(self, position: str) -> str | None:
        return getattr(self._state.setup.bookends, position)

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    def _period_bounds(self, periods: list[Period]) -> tuple[int, int]:
        """Insert-index range that keeps new periods inside the bookends."""
        bookends = self._state.setup.bookends
        lo = 1 if periods and periods[0].id == bookends.start else 0
        hi = len(periods) - 1 if periods and periods[-1].id == bookends.end else len(periods)
        return lo, max(lo, hi)

    @staticmethod
    def _insert_index(
        siblings: list,
        label: Callable[[Any], str],
        placement: Placement | None,
        bounds: tuple[int, int],
        kind: str,
    ) -> int:
        lo, hi = bounds
        if placement is None or placement.type == "last":
            return hi
        if placement.type == "first":
            return lo
        ref = placement.relative_to
        index = next((i for i, s in enumerate(siblings) if label(s) == ref), None)
        if index is None:
            raise PlacementError(f"No {kind} titled '{ref}' to place {placement.type}")
        if placement.type == "after":
            index += 1
        return min(max(index, lo), hi)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def add_period(
        self,
        title: str,
        description: str = "",
        tone: Tone = "light",
        is_bookend: bool = False,
        placement: Placement | None = None,
        created_by: str = HUMAN_PLAYER_ID,
    ) -> Period:
        """Create a period and its conversation.

        With `is_bookend`, placement "first" registers the start bookend and
        anything else the end bookend; a bookend of that position must not
        already exist.
        """
        state = self._state
        periods = self.sorted_periods()
        conv_id = new_id()
        period = Period(
            id=new_id(),
            title=title,
            description=description,
            tone=tone,
            order=0,
            is_bookend=is_bookend,
            created_by=created_by,
            conversation_id=conv_id,
        )

        bookends = state.setup.bookends
        if is_bookend:
            position = "start" if placement is not None and placement.type == "first" else "end"
            if getattr(bookends, position) is not None:
                raise PlacementError(f"A {position} bookend already exists")
            index = 0 if position == "start" else len(periods)
            bookends = bookends.model_copy(update={position: period.id})
        else:
            index = self._insert_index(
                periods, lambda p: p.title, placement, self._period_bounds(periods), "period"
            )

        periods = _renumber(periods[:index] + [period] + periods[index:])
        self._replace(
            periods=periods,
            conversations={**state.conversations, conv_id: Conversation(id=conv_id)},
            setup=state.setup.model_copy(update={"bookends": bookends}),
        )
        return periods[index]

    def add_event(
        self,
        period_id: str,
        title: str,
        description: str = "",
        tone: Tone = "light",
        placement: Placement | None = None,
        created_by: str = HUMAN_PLAYER_ID,
    ) -> Event:
        self.get_period(period_id)
        siblings = self.events_in(period_id)
        index = self._insert_index(
            siblings, lambda e: e.title, placement, (0, len(siblings)), "event"
        )
        conv_id = new_id()
        event = Event(
            id=new_id(),
            period_id=period_id,
            title=title,
            description=description,
            tone=tone,
            order=0,
            created_by=created_by,
            conversation_id=conv_id,
        )
        group = _renumber(siblings[:index] + [event] + siblings[index:])
        others = [e for e in self._state.events if e.period_id != period_id]
        self._replace(
            events=others + group,
            conversations={**self._state.conversations, conv_id: Conversation(id=conv_id)},
        )
        return group[index]

    def add_scene(
        self,
        event_id: str,
        question: str,
        answer: str | None = None,
        tone: Tone = "light",
        title: str | None = None,
        placement: Placement | None = None,
        created_by: str = HUMAN_PLAYER_ID,
    ) -> Scene:
        self.get_event(event_id)
        siblings = self.scenes_in(event_id)
        index = self._insert_index(
            siblings, lambda s: s.label, placement, (0, len(siblings)), "scene"
        )
        conv_id = new_id()
        scene = Scene(
            id=new_id(),
            event_id=event_id,
            question=question,
            answer=answer,
            tone=tone,
            title=title,
            order=0,
            created_by=created_by,
            conversation_id=conv_id,
        )
        group = _renumber(siblings[:index] + [scene] + siblings[index:])
        others = [s for s in self._state.scenes if s.event_id != event_id]
        self._replace(
            scenes=others + group,
            conversations={**self._state.conversations, conv_id: Conversation(id=conv_id)},
        )
        return group[index]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _updated(self, kind: EntityKind, item, changes: dict[str, Any]):
        unknown = set(changes) - _EDITABLE[kind]
        if unknown:
            raise ValueError(f"Cannot update {kind} field(s): {', '.join(sorted(unknown))}")
        if item.frozen:
            touched = [
                f for f in _PROTECTED[kind]
                if f in changes and changes[f] != getattr(item, f)
            ]
            if touched:
                raise FrozenItemError(
                    f"{kind.capitalize()} '{getattr(item, 'title', None) or item.label}' is frozen;"
                    f" cannot change {', '.join(sorted(touched))}"
                )
            if changes.get("frozen") is False:
                raise FrozenItemError(f"{kind.capitalize()} {item.id} cannot be unfrozen")
        return type(item).model_validate({**item.model_dump(), **changes})

    def update_period(self, period_id: str, **changes: Any) -> Period:
        updated = self._updated("period", self.get_period(period_id), changes)
        self._replace(periods=[updated if p.id == period_id else p for p in self._state.periods])
        return updated

    def update_event(self, event_id: str, **changes: Any) -> Event:
        updated = self._updated("event", self.get_event(event_id), changes)
        self._replace(events=[updated if e.id == event_id else e for e in self._state.events])
        return updated

    def update_scene(self, scene_id: str, **changes: Any) -> Scene:
        updated = self._updated("scene", self.get_scene(scene_id), changes)
        self._replace(scenes=[updated if s.id == scene_id else s for s in self._state.scenes])
        return updated

    def update_entity(self, kind: EntityKind, entity_id: str, **changes: Any):
        updater = {
            "period": self.update_period,
            "event": self.update_event,
            "scene": self.update_scene,
        }[kind]
        return updater(entity_id, **changes)

    # ------------------------------------------------------------------
    # Deletion (cascading)
    # ------------------------------------------------------------------

    def _remove(
        self,
        period_ids: set[str] = frozenset(),
        event_ids: set[str] = frozenset(),
        scene_ids: set[str] = frozenset(),
    ) -> None:
        state = self._state
        event_ids = set(event_ids) | {e.id for e in state.events if e.period_id in period_ids}
        scene_ids = set(scene_ids) | {s.id for s in state.scenes if s.event_id in event_ids}

        dead = [p for p in state.periods if p.id in period_ids]
        dead += [e for e in state.events if e.id in event_ids]
        dead += [s for s in state.scenes if s.id in scene_ids]
        dead_convs = {item.conversation_id for item in dead}
        dead_ids = {item.id for item in dead}

        periods = _renumber(_by_order(p for p in state.periods if p.id not in period_ids))
        events: list[Event] = []
        for pid in {e.period_id for e in state.events}:
            events += _renumber(
                _by_order(e for e in state.events if e.period_id == pid and e.id not in event_ids)
            )
        scenes: list[Scene] = []
        for eid in {s.event_id for s in state.scenes}:
            scenes += _renumber(
                _by_order(s for s in state.scenes if s.event_id == eid and s.id not in scene_ids)
            )

        bookends = state.setup.bookends
        bookends = Bookends(
            start=None if bookends.start in period_ids else bookends.start,
            end=None if bookends.end in period_ids else bookends.end,
        )
        selection = state.current_selection
        if selection is not None and selection.id in dead_ids:
            selection = Selection(type="meta", id=state.meta_conversation_id)

        self._replace(
            periods=periods,
            events=events,
            scenes=scenes,
            conversations={
                cid: c for cid, c in state.conversations.items() if cid not in dead_convs
            },
            setup=state.setup.model_copy(update={"bookends": bookends}),
            current_selection=selection,
        )

    def delete_period(self, period_id: str) -> None:
        self.get_period(period_id)
        self._remove(period_ids={period_id})

    def delete_event(self, event_id: str) -> None:
        self.get_event(event_id)
        self._remove(event_ids={event_id})

    def delete_scene(self, scene_id: str) -> None:
        self.get_scene(scene_id)
        self._remove(scene_ids={scene_id})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _set_messages(self, conversation_id: str, messages: list[Message]) -> None:
        conv = self.get_conversation(conversation_id)
        self._replace(conversations={
            **self._state.conversations,
            conversation_id: conv.model_copy(update={"messages": messages}),
        })

    def add_message_with_id(
        self,
        conversation_id: str,
        message_id: str,
        *,
        role: MessageRole,
        content: str,
        player_id: str,
        player_name: str | None = None,
        metadata: MessageMetadata | None = None,
        raw_content: str | None = None,
        pending: bool = False,
    ) -> Message:
        """Append a message with a caller-chosen id (used for pending messages)."""
        conv = self.get_conversation(conversation_id)
        if any(m.id == message_id for m in conv.messages):
            raise StoreError(f"Message {message_id} already exists in {conversation_id}")
        message = Message(
            id=message_id,
            role=role,
            content=content,
            player_id=player_id,
            player_name=player_name,
            metadata=metadata,
            raw_content=raw_content,
            pending=pending,
        )
        self._set_messages(conversation_id, conv.messages + [message])
        return message

    def add_message(self, conversation_id: str, **fields: Any) -> Message:
        return self.add_message_with_id(conversation_id, new_id(), **fields)

    def update_message(self, conversation_id: str, message_id: str, **changes: Any) -> Message:
        conv = self.get_conversation(conversation_id)
        for i, msg in enumerate(conv.messages):
            if msg.id == message_id:
                updated = Message.model_validate({**msg.model_dump(), **changes, "id": msg.id})
                messages = list(conv.messages)
                messages[i] = updated
                self._set_messages(conversation_id, messages)
                return updated
        raise NotFoundError(f"Message {message_id} not found in {conversation_id}")

    def remove_message(self, conversation_id: str, message_id: str) -> None:
        conv = self.get_conversation(conversation_id)
        messages = [m for m in conv.messages if m.id != message_id]
        if len(messages) == len(conv.messages):
            raise NotFoundError(f"Message {message_id} not found in {conversation_id}")
        self._set_messages(conversation_id, messages)

    def truncate_conversation(self, conversation_id: str, message_id: str) -> list[Message]:
        """Drop a message and everything after it. Returns the dropped messages."""
        conv = self.get_conversation(conversation_id)
        for i, msg in enumerate(conv.messages):
            if msg.id == message_id:
                self._set_messages(conversation_id, conv.messages[:i])
                return conv.messages[i:]
        raise NotFoundError(f"Message {message_id} not found in {conversation_id}")

    # ------------------------------------------------------------------
    # Setup: palette, big picture, selection
    # ------------------------------------------------------------------

    def add_palette_item(
        self, category: PaletteCategory, text: str, created_by: str = HUMAN_PLAYER_ID
    ) -> PaletteItem:
        """Append a palette item. An identical item (same category, text) is returned as-is."""
        key = text.strip().casefold()
        for item in self._state.setup.palette:
            if item.category == category and item.text.strip().casefold() == key:
                return item
        item = PaletteItem(category=category, text=text.strip(), created_by=created_by)
        setup = self._state.setup
        self._replace(setup=setup.model_copy(update={"palette": setup.palette + [item]}))
        return item

    def update_palette(self, yes: list[str], no: list[str]) -> list[PaletteItem]:
        """Replace the whole palette. Existing items keep their id and creator."""
        existing = {(i.category, i.text): i for i in self._state.setup.palette}
        palette: list[PaletteItem] = []
        for category, texts in (("yes", yes), ("no", no)):
            for text in texts:
                text = text.strip()
                if not text or any(p.category == category and p.text == text for p in palette):
                    continue
                palette.append(existing.get((category, text))
                               or PaletteItem(category=category, text=text))
        self._replace(setup=self._state.setup.model_copy(update={"palette": palette}))
        return palette

    def update_big_picture(self, big_picture: str) -> None:
        self._replace(setup=self._state.setup.model_copy(update={"big_picture": big_picture}))

    def set_selection(self, type: str, id: str | None = None) -> Selection:
        if type == "meta":
            selection = Selection(type="meta", id=self._state.meta_conversation_id)
        else:
            if id is None:
                raise ValueError(f"Selecting a {type} requires an id")
            self.get_entity(type, id)
            selection = Selection(type=type, id=id)
        self._replace(current_selection=selection)
        return selection

    def selected_conversation_id(self) -> str:
        selection = self._state.current_selection
        if selection is None or selection.type == "meta":
            return self._state.meta_conversation_id
        return self.get_entity(selection.type, selection.id).conversation_id

    # ------------------------------------------------------------------
    # Freezing and phases
    # ------------------------------------------------------------------

    def freeze_item(self, kind: EntityKind, entity_id: str) -> None:
        item = self.get_entity(kind, entity_id)
        if not item.frozen:
            self.update_entity(kind, entity_id, frozen=True)

    def _freeze_all(self, skip: set[str] = frozenset()) -> list[Owner]:
        state = self._state
        frozen = [o for o in self.unfrozen_items() if o.entity_id not in skip]
        if not frozen:
            return []
        ids = {o.entity_id for o in frozen}

        def freeze(items: list) -> list:
            return [i.model_copy(update={"frozen": True}) if i.id in ids else i for i in items]

        self._replace(
            periods=freeze(state.periods),
            events=freeze(state.events),
            scenes=freeze(state.scenes),
        )
        return frozen

    def freeze_unfrozen_items(self) -> list[Owner]:
        """Freeze every unfrozen item; bookends stay editable during setup."""
        skip: set[str] = set()
        if self._state.phase == "setup":
            bookends = self._state.setup.bookends
            skip = {pid for pid in (bookends.start, bookends.end) if pid}
        return self._freeze_all(skip)

    def start_game(self) -> CurrentTurn:
        state = self._state
        if state.phase != "setup":
            raise PhaseError("The game has already started")
        if not state.setup.big_picture.strip():
            raise PhaseError("Set the big picture before starting the game")
        if not state.setup.bookends.start or not state.setup.bookends.end:
            raise PhaseError("Create both bookends before starting the game")
        if not state.players:
            raise PhaseError("The game has no players")

        turn = CurrentTurn(player_id=state.players[0].id, round=1)
        with self.batch():
            self._freeze_all()
            self._replace(phase="initial_round", current_turn=turn)
        logger.info("Game %s started; %s has the first turn", state.id, turn.player_id)
        return turn

    def end_turn(self) -> CurrentTurn:
        state = self._state
        if state.phase == "setup" or state.current_turn is None:
            raise PhaseError("The game has not started")

        ids = [p.id for p in state.players]
        current = state.current_turn
        index = ids.index(current.player_id) if current.player_id in ids else -1
        next_index = (index + 1) % len(ids)
        phase = state.phase
        round_ = current.round
        if next_index == 0:
            round_ += 1
            if phase == "initial_round":
                phase = "playing"
                logger.info("Game %s: initial round complete", state.id)

        turn = CurrentTurn(player_id=ids[next_index], round=round_)
        with self.batch():
            self._freeze_all()
            self._replace(phase=phase, current_turn=turn)
        return turn

    # ------------------------------------------------------------------
    # Games
    # ------------------------------------------------------------------

    def switch_game(self, game_id: str) -> GameState:
        if self._storage is None:
            raise NotFoundError(f"Game {game_id} not found")
        state = self._storage.load(game_id)
        if state is None:
            raise NotFoundError(f"Game {game_id} not found")
        self._commit(state)
        return state

    def create_new_game(self, name: str = "New Game") -> GameState:
        state = new_game_state(name=name)
        self._commit(state)
        return state
