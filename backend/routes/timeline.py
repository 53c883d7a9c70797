"""Timeline endpoints for direct human actions: periods, events, scenes, setup, turns.

Creating an item here follows the same rule as AI directives: any item left
unfrozen is frozen first (bookends stay editable during setup).
"""

from fastapi import APIRouter

from backend import runtime
from microscope.models import HUMAN_PLAYER_ID, Placement

from .errors import domain_errors
from .models import (
    BigPictureBody,
    CreateEventBody,
    CreatePeriodBody,
    CreateSceneBody,
    FreezeBody,
    PaletteBody,
    PaletteItemBody,
    SelectionBody,
    UpdateEntity,
)

router = APIRouter()


# ── Periods / events / scenes ────────────────────────────


@router.post("/periods")
async def create_period(body: CreatePeriodBody):
    """Create a period, or a bookend when `bookend` is "start" or "end"."""
    store = runtime.get_store()
    placement = body.placement
    if body.bookend:
        placement = Placement(type="first" if body.bookend == "start" else "last")
    with domain_errors(), store.batch():
        store.freeze_unfrozen_items()
        period = store.add_period(
            body.title,
            body.description,
            body.tone,
            is_bookend=body.bookend is not None,
            placement=placement,
            created_by=HUMAN_PLAYER_ID,
        )
    return period


@router.post("/events")
async def create_event(body: CreateEventBody):
    store = runtime.get_store()
    with domain_errors(), store.batch():
        store.freeze_unfrozen_items()
        event = store.add_event(
            body.period_id,
            body.title,
            body.description,
            body.tone,
            placement=body.placement,
            created_by=HUMAN_PLAYER_ID,
        )
    return event


@router.post("/scenes")
async def create_scene(body: CreateSceneBody):
    store = runtime.get_store()
    with domain_errors(), store.batch():
        store.freeze_unfrozen_items()
        scene = store.add_scene(
            body.event_id,
            body.question,
            answer=body.answer,
            tone=body.tone,
            title=body.title,
            placement=body.placement,
            created_by=HUMAN_PLAYER_ID,
        )
    return scene


@router.patch("/periods/{period_id}")
async def update_period(period_id: str, body: UpdateEntity):
    """Edit a period's metadata. Frozen periods reject changes (409)."""
    with domain_errors():
        return runtime.get_store().update_period(period_id, **body.model_dump(exclude_none=True))


@router.patch("/events/{event_id}")
async def update_event(event_id: str, body: UpdateEntity):
    with domain_errors():
        return runtime.get_store().update_event(event_id, **body.model_dump(exclude_none=True))


@router.patch("/scenes/{scene_id}")
async def update_scene(scene_id: str, body: UpdateEntity):
    with domain_errors():
        return runtime.get_store().update_scene(scene_id, **body.model_dump(exclude_none=True))


@router.delete("/periods/{period_id}")
async def delete_period(period_id: str):
    """Delete a period with its events, scenes, and their conversations."""
    with domain_errors():
        runtime.get_store().delete_period(period_id)
    return {"ok": True}


@router.delete("/events/{event_id}")
async def delete_event(event_id: str):
    with domain_errors():
        runtime.get_store().delete_event(event_id)
    return {"ok": True}


@router.delete("/scenes/{scene_id}")
async def delete_scene(scene_id: str):
    with domain_errors():
        runtime.get_store().delete_scene(scene_id)
    return {"ok": True}


@router.post("/freeze")
async def freeze(body: FreezeBody):
    """Freeze one item without advancing the turn."""
    with domain_errors():
        runtime.get_store().freeze_item(body.kind, body.id)
    return {"ok": True}


# ── Setup ────────────────────────────────────────────────


@router.put("/big-picture")
async def set_big_picture(body: BigPictureBody):
    runtime.get_store().update_big_picture(body.big_picture)
    return {"big_picture": body.big_picture}


@router.post("/palette")
async def add_palette_item(body: PaletteItemBody):
    """Add one palette item (duplicates are returned, not added twice)."""
    return runtime.get_store().add_palette_item(body.category, body.text, created_by=HUMAN_PLAYER_ID)


@router.put("/palette")
async def replace_palette(body: PaletteBody):
    return runtime.get_store().update_palette(body.yes, body.no)


@router.put("/selection")
async def set_selection(body: SelectionBody):
    with domain_errors():
        return runtime.get_store().set_selection(body.type, body.id)


# ── Phases and turns ─────────────────────────────────────


@router.post("/game/start")
async def start_game():
    """Leave setup: requires a big picture and both bookends."""
    with domain_errors():
        turn = runtime.get_store().start_game()
    return {"phase": runtime.get_store().state.phase, "current_turn": turn}


@router.post("/turn/end")
async def end_turn():
    """Freeze the open item and pass the turn to the next player."""
    with domain_errors():
        turn = runtime.get_store().end_turn()
    return {"phase": runtime.get_store().state.phase, "current_turn": turn}
