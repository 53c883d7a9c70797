"""Create a demo game for development/testing."""

from microscope.models import GameState
from microscope.pipeline import apply_response
from microscope.storage import Storage
from microscope.store import GameStore

DEMO_NAME = "The Drowned Archipelago"

DEMO_BIG_PICTURE = (
    "A chain of islands slowly swallowed by a rising sea, and the peoples who "
    "fought, bargained, and sang to keep their homes above the water."
)

# Written the way the AI co-player writes: directives on '#' lines, prose after.
DEMO_SETUP_REPLY = """\
Here is a frame for our history.

# create start bookend: The Hundred Harbors (light) | Every island thrives on trade and song
The archipelago is young and crowded with ships. Every cove has a harbor and every harbor a festival.

# create end bookend: The Last Lighthouse (dark) | One tower stands above an endless sea
Only the lighthouse keepers remain, tending a flame no ship will ever see again.

# add to palette yes: Sea spirits and bargains
# add to palette yes: Floating cities
# add to palette no: Gunpowder

Tell me what you think of these two ends of the story."""

DEMO_PERIOD_REPLY = """\
# create period: The Tide Councils (light) after The Hundred Harbors | Islands unite to hold back the water
The first floods bring the island chiefs together. For three generations they build sea walls side by side."""

DEMO_EVENT_REPLY = """\
# create event: The Breaking of the Great Wall (dark) in The Tide Councils | A storm tears the longest sea wall apart
Half the council islands flood in a single night, and blame falls on the wall-wrights of Keth."""


def create_demo_game(storage: Storage) -> GameState:
    """Create the demo game as the current game and return its state."""
    store = GameStore(storage.create_game(DEMO_NAME), storage=storage)
    meta = store.state.meta_conversation_id
    store.update_big_picture(DEMO_BIG_PICTURE)
    apply_response(store, DEMO_SETUP_REPLY, meta)
    store.start_game()
    apply_response(store, DEMO_PERIOD_REPLY, meta)
    apply_response(store, DEMO_EVENT_REPLY, meta)
    storage.set_current_game_id(store.state.id)
    return store.state
