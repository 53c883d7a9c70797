"""Tests for microscope.storage — game files, the games index, and settings."""

import json
from pathlib import Path

import pytest

from microscope.storage import Storage
from microscope.store import GameStore


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path)


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

def test_save_and_load_round_trip(storage: Storage):
    store = GameStore(storage=storage)
    period = store.add_period("The Golden Age", "Prosperity", "light")
    store.add_message(period.conversation_id, role="user", content="hi", player_id="human")

    loaded = storage.load(store.state.id)
    assert loaded == store.state


def test_save_updates_index(storage: Storage, tmp_path: Path):
    store = GameStore(storage=storage)
    store.update_big_picture("An empire drowns")

    index = json.loads((tmp_path / "games" / "index.json").read_text())
    assert index["current"] is None
    assert len(index["games"]) == 1
    row = index["games"][0]
    assert row["id"] == store.state.id
    assert row["big_picture"] == "An empire drowns"
    assert row["last_played"]


def test_load_missing(storage: Storage):
    assert storage.load("nope") is None


def test_load_corrupt_file(storage: Storage, tmp_path: Path):
    (tmp_path / "games" / "broken.json").write_text("{not json")
    assert storage.load("broken") is None


def test_load_stale_schema(storage: Storage, tmp_path: Path):
    (tmp_path / "games" / "old.json").write_text(json.dumps({"id": "old"}))
    assert storage.load("old") is None


def test_list_most_recent_first(storage: Storage):
    first = storage.create_game("First")
    second = storage.create_game("Second")
    games = storage.list()
    assert [g.id for g in games] == [second.id, first.id]
    assert games[0].name == "Second"


def test_delete_game(storage: Storage, tmp_path: Path):
    game = storage.create_game()
    storage.set_current_game_id(game.id)

    assert storage.delete_game(game.id) is True
    assert not (tmp_path / "games" / f"{game.id}.json").exists()
    assert storage.list() == []
    assert storage.get_current_game_id() is None
    assert storage.delete_game(game.id) is False


def test_load_current_creates_fresh_game(storage: Storage):
    state = storage.load_current()
    assert storage.get_current_game_id() == state.id
    assert storage.load_current().id == state.id


def test_load_current_replaces_unreadable_game(storage: Storage, tmp_path: Path):
    storage.set_current_game_id("gone")
    state = storage.load_current()
    assert state.id != "gone"
    assert storage.get_current_game_id() == state.id


def test_corrupt_index_starts_empty(storage: Storage, tmp_path: Path):
    (tmp_path / "games" / "index.json").write_text("[]]")
    assert storage.list() == []
    assert storage.get_current_game_id() is None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def test_get_config_defaults(storage: Storage):
    """Returns defaults when no config file exists."""
    config = storage.get_config()
    assert config["provider"] == "claude"
    assert config["api_key"] == ""
    assert config["recent_message_count"] == 10


def test_update_config_merges(storage: Storage):
    """Known keys are merged, unknown keys and None values are ignored."""
    storage.update_config({"provider": "openai", "model": "gpt-4o"})
    result = storage.update_config({"temperature": 0.5, "model": None, "colour": "red"})

    assert result["provider"] == "openai"
    assert result["model"] == "gpt-4o"
    assert result["temperature"] == 0.5
    assert "colour" not in result
    assert storage.get_config() == result


def test_config_file_missing_keys_use_defaults(storage: Storage, tmp_path: Path):
    (tmp_path / "config.json").write_text(json.dumps({"max_tokens": 100}))
    config = storage.get_config()
    assert config["max_tokens"] == 100
    assert config["provider"] == "claude"


def test_provider_config_env_fallback(storage: Storage, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "from-env")
    assert storage.provider_config().api_key == "from-env"

    storage.update_config({"api_key": "stored"})
    assert storage.provider_config().api_key == "stored"


def test_provider_config_openai_env(storage: Storage, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "oa-env")
    storage.update_config({"provider": "openai", "max_tokens": 256})
    config = storage.provider_config()
    assert config.provider == "openai"
    assert config.api_key == "oa-env"
    assert config.max_tokens == 256
