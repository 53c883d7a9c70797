"""Command executor — applies parsed directives to the game store.

Routing rules:

  create-*          Parent resolved by exact title. A missing parent or an
                    unresolvable placement posts an `error` message to the
                    meta conversation and creates nothing. On success the
                    previously unfrozen item is frozen first, the entity is
                    created, a `system` message with `link_to` goes to the
                    meta conversation, and the directive's narrative becomes
                    the first `assistant` message of the entity's own
                    conversation.
  create-*-bookend  Replaces an existing bookend of that position in place
                    (same id, same conversation) and logs
                    "Updated {position} bookend: ..." to meta with `link_to`.
  edit-*            Applies to whichever entity owns the current
                    conversation; feedback goes to the current conversation.
  add-palette       Always succeeds; confirmation goes to the current
                    conversation.

Each create runs inside one store batch, so the entity, its conversation,
the log message, and the teleported narrative commit together or not at all.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable

from pydantic import BaseModel

from microscope.models import (
    AI_PLAYER_ID,
    SYSTEM_PLAYER_ID,
    LinkTo,
    MessageMetadata,
    Placement,
    Player,
)
from microscope.parser import (
    AddPalette,
    Command,
    CreateEndBookend,
    CreateEvent,
    CreatePeriod,
    CreateScene,
    CreateStartBookend,
    EditDescription,
    EditName,
    EditTone,
)
from microscope.store import FrozenItemError, GameStore, PlacementError

logger = logging.getLogger(__name__)


class ExecutionResult(BaseModel):
    command_type: str
    ok: bool
    detail: str = ""
    link_to: LinkTo | None = None
    teleported: bool = False
    fingerprint: str | None = None


def command_fingerprint(command: Command) -> str:
    """Stable identity of a directive, independent of its narrative."""
    payload = command.model_dump_json(exclude={"narrative"})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class CommandExecutor:
    """Executes directives on behalf of one player (the AI co-player by default)."""

    def __init__(self, store: GameStore, player: Player | None = None) -> None:
        self.store = store
        if player is None:
            player = next(
                (p for p in store.state.players if p.id == AI_PLAYER_ID),
                Player(id=AI_PLAYER_ID, name="AI Player", type="ai"),
            )
        self.player = player
        self._handlers: dict[str, Callable[[Command, str], ExecutionResult]] = {
            "create-period": self._create_period,
            "create-start-bookend": self._create_bookend,
            "create-end-bookend": self._create_bookend,
            "create-event": self._create_event,
            "create-scene": self._create_scene,
            "add-palette": self._add_palette,
            "edit-name": self._edit,
            "edit-description": self._edit,
            "edit-tone": self._edit,
        }

    def execute(self, command: Command, current_conversation_id: str) -> ExecutionResult:
        handler = self._handlers.get(command.type)
        if handler is None:
            return ExecutionResult(command_type=command.type, ok=False, detail="No directive")
        result = handler(command, current_conversation_id)
        result.fingerprint = command_fingerprint(command)
        logger.debug("executed %s ok=%s %s", command.type, result.ok, result.detail)
        return result

    # ------------------------------------------------------------------
    # Message helpers
    # ------------------------------------------------------------------

    @property
    def _meta(self) -> str:
        return self.store.state.meta_conversation_id

    def _system(self, conversation_id: str, content: str, link_to: LinkTo | None = None) -> None:
        self.store.add_message(
            conversation_id,
            role="system",
            content=content,
            player_id=SYSTEM_PLAYER_ID,
            player_name="System",
            metadata=MessageMetadata(link_to=link_to) if link_to else None,
        )

    def _error(self, conversation_id: str, command: Command, content: str) -> ExecutionResult:
        logger.warning("%s failed: %s", command.type, content)
        self.store.add_message(
            conversation_id,
            role="error",
            content=content,
            player_id=SYSTEM_PLAYER_ID,
            player_name="System",
        )
        return ExecutionResult(command_type=command.type, ok=False, detail=content)

    def _teleport(self, conversation_id: str, narrative: str | None) -> bool:
        if not narrative:
            return False
        self.store.add_message(
            conversation_id,
            role="assistant",
            content=narrative,
            player_id=self.player.id,
            player_name=self.player.name,
        )
        return True

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _create_period(self, cmd: CreatePeriod, conversation_id: str) -> ExecutionResult:
        try:
            with self.store.batch():
                self.store.freeze_unfrozen_items()
                period = self.store.add_period(
                    cmd.title,
                    cmd.description,
                    cmd.tone,
                    placement=cmd.placement,
                    created_by=self.player.id,
                )
                link = LinkTo(type="period", id=period.id)
                self._system(self._meta, f"Created period: {period.title}", link)
                teleported = self._teleport(period.conversation_id, cmd.narrative)
        except PlacementError as e:
            return self._error(self._meta, cmd, f"Could not create period '{cmd.title}': {e}")
        return ExecutionResult(
            command_type=cmd.type, ok=True, detail=period.title, link_to=link, teleported=teleported
        )

    def _create_bookend(
        self, cmd: CreateStartBookend | CreateEndBookend, conversation_id: str
    ) -> ExecutionResult:
        position = "start" if cmd.type == "create-start-bookend" else "end"
        existing_id = self.store.bookend_id(position)

        if existing_id is not None:
            try:
                with self.store.batch():
                    period = self.store.update_period(
                        existing_id, title=cmd.title, description=cmd.description, tone=cmd.tone
                    )
                    link = LinkTo(type="period", id=period.id)
                    self._system(self._meta, f"Updated {position} bookend: {period.title}", link)
                    teleported = self._teleport(period.conversation_id, cmd.narrative)
            except FrozenItemError as e:
                return self._error(
                    self._meta, cmd, f"Could not update {position} bookend '{cmd.title}': {e}"
                )
            return ExecutionResult(
                command_type=cmd.type, ok=True, detail=period.title, link_to=link,
                teleported=teleported,
            )

        with self.store.batch():
            self.store.freeze_unfrozen_items()
            period = self.store.add_period(
                cmd.title,
                cmd.description,
                cmd.tone,
                is_bookend=True,
                placement=Placement(type="first" if position == "start" else "last"),
                created_by=self.player.id,
            )
            link = LinkTo(type="period", id=period.id)
            self._system(self._meta, f"Created {position} bookend: {period.title}", link)
            teleported = self._teleport(period.conversation_id, cmd.narrative)
        return ExecutionResult(
            command_type=cmd.type, ok=True, detail=period.title, link_to=link, teleported=teleported
        )

    def _create_event(self, cmd: CreateEvent, conversation_id: str) -> ExecutionResult:
        period = self.store.find_period_by_title(cmd.period_title)
        if period is None:
            return self._error(
                self._meta, cmd,
                f"Could not create event '{cmd.title}': no period titled '{cmd.period_title}'",
            )
        try:
            with self.store.batch():
                self.store.freeze_unfrozen_items()
                event = self.store.add_event(
                    period.id,
                    cmd.title,
                    cmd.description,
                    cmd.tone,
                    placement=cmd.placement,
                    created_by=self.player.id,
                )
                link = LinkTo(type="event", id=event.id)
                self._system(self._meta, f"Created event: {event.title}", link)
                teleported = self._teleport(event.conversation_id, cmd.narrative)
        except PlacementError as e:
            return self._error(self._meta, cmd, f"Could not create event '{cmd.title}': {e}")
        return ExecutionResult(
            command_type=cmd.type, ok=True, detail=event.title, link_to=link, teleported=teleported
        )

    def _create_scene(self, cmd: CreateScene, conversation_id: str) -> ExecutionResult:
        label = cmd.title or cmd.question
        event = self.store.find_event_by_title(cmd.event_title)
        if event is None:
            return self._error(
                self._meta, cmd,
                f"Could not create scene '{label}': no event titled '{cmd.event_title}'",
            )
        # The keyword dialect's short description opens the scene's thread
        narrative = "\n\n".join(part for part in (cmd.description, cmd.narrative) if part)
        try:
            with self.store.batch():
                self.store.freeze_unfrozen_items()
                scene = self.store.add_scene(
                    event.id,
                    cmd.question,
                    answer=cmd.answer,
                    tone=cmd.tone or event.tone,
                    title=cmd.title,
                    placement=cmd.placement,
                    created_by=self.player.id,
                )
                link = LinkTo(type="scene", id=scene.id)
                self._system(self._meta, f"Created scene: {scene.label}", link)
                teleported = self._teleport(scene.conversation_id, narrative or None)
        except PlacementError as e:
            return self._error(self._meta, cmd, f"Could not create scene '{label}': {e}")
        return ExecutionResult(
            command_type=cmd.type, ok=True, detail=scene.label, link_to=link, teleported=teleported
        )

    # ------------------------------------------------------------------
    # Palette and edits
    # ------------------------------------------------------------------

    def _add_palette(self, cmd: AddPalette, conversation_id: str) -> ExecutionResult:
        item = self.store.add_palette_item(cmd.category, cmd.item, created_by=self.player.id)
        self._system(conversation_id, f"Added to palette ({item.category.upper()}): {item.text}")
        return ExecutionResult(command_type=cmd.type, ok=True, detail=item.text)

    def _edit(
        self, cmd: EditName | EditDescription | EditTone, conversation_id: str
    ) -> ExecutionResult:
        what = cmd.type.removeprefix("edit-")
        owner = self.store.owner_of(conversation_id)
        if owner is None:
            return self._error(
                conversation_id, cmd,
                f"Cannot edit {what} here: this conversation does not belong to a"
                " period, event, or scene",
            )

        if isinstance(cmd, EditName):
            field = "title"
            if owner.kind == "scene" and not self.store.get_scene(owner.entity_id).title:
                field = "question"
            value = cmd.new_name
        elif isinstance(cmd, EditDescription):
            if owner.kind == "scene":
                return self._error(
                    conversation_id, cmd,
                    "Scenes have no description; edit the scene's name instead",
                )
            field, value = "description", cmd.new_description
        else:
            field, value = "tone", cmd.new_tone

        try:
            self.store.update_entity(owner.kind, owner.entity_id, **{field: value})
        except FrozenItemError as e:
            return self._error(conversation_id, cmd, f"Cannot edit {what}: {e}")

        link = LinkTo(type=owner.kind, id=owner.entity_id)
        self._system(conversation_id, f"Updated {owner.kind} {what}: {value}", link)
        return ExecutionResult(command_type=cmd.type, ok=True, detail=value, link_to=link)
