"""Process-wide runtime state: the storage collaborator and the live game store.

init_runtime() must run before any route touches the game. It opens the data
directory, loads the current game (or creates one), and wires the store to
save through storage after every commit.
"""

import logging
from pathlib import Path

from microscope.llm import AIProvider, create_provider
from microscope.storage import Storage
from microscope.store import GameStore

logger = logging.getLogger(__name__)

_storage: Storage | None = None
_store: GameStore | None = None


def init_runtime(data_dir: Path) -> None:
    global _storage, _store
    data_dir.mkdir(parents=True, exist_ok=True)
    _storage = Storage(data_dir)
    state = _storage.load_current()
    _store = GameStore(state, storage=_storage)
    logger.info("Loaded game %s (%s) from %s", state.id, state.name, data_dir)


def get_storage() -> Storage:
    assert _storage is not None, "Call init_runtime() before using the runtime"
    return _storage


def get_store() -> GameStore:
    assert _store is not None, "Call init_runtime() before using the runtime"
    return _store


def get_provider() -> AIProvider:
    """A provider built from the current settings (raises ProviderError if unusable)."""
    return create_provider(get_storage().provider_config())


def recent_message_count() -> int:
    return int(get_storage().get_config()["recent_message_count"])
