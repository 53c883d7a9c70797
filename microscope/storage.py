"""JSON file storage for games and app settings.

All state lives in flat JSON files under a configurable base directory.
There is no database — reads and writes go through plain helper methods
that load and dump JSON.

Directory layout:

    {base}/
      config.json             ← provider settings (defaults merged at read time)
      games/
        index.json            ← {"current": id | null, "games": [GameMeta, ...]}
        {id}.json             ← full GameState

The store calls save() after every commit and load() when switching games.
Failures here (unwritable disk, corrupt JSON, stale schema) are logged and
degrade gracefully: load() returns None so the caller starts a fresh game,
save() is best-effort.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from microscope.llm import ProviderConfig
from microscope.models import GameMeta, GameState, new_game_state

logger = logging.getLogger(__name__)

_CONFIG_DEFAULTS: dict[str, Any] = {
    "provider": "claude",
    "api_key": "",
    "model": "",
    "base_url": "",
    "temperature": 1.0,
    "max_tokens": 4096,
    "recent_message_count": 10,
}

_ENV_KEYS = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._games_root = self._base / "games"
        self._games_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _game_file(self, game_id: str) -> Path:
        return self._games_root / f"{game_id}.json"

    def _index_file(self) -> Path:
        return self._games_root / "index.json"

    def _config_file(self) -> Path:
        return self._base / "config.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _read_index(self) -> dict[str, Any]:
        path = self._index_file()
        if not path.is_file():
            return {"current": None, "games": []}
        try:
            index = self._read_json(path)
            games = [GameMeta.model_validate(g) for g in index.get("games", [])]
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Game index %s unreadable, starting empty: %s", path, e)
            return {"current": None, "games": []}
        return {"current": index.get("current"), "games": games}

    def _write_index(self, current: str | None, games: list[GameMeta]) -> None:
        self._write_json(
            self._index_file(),
            {"current": current, "games": [g.model_dump() for g in games]},
        )

    # ------------------------------------------------------------------
    # Games
    # ------------------------------------------------------------------

    def save(self, game_id: str, state: GameState) -> None:
        """Write a game and upsert its index row. Best-effort: failures are logged."""
        try:
            self._game_file(game_id).write_text(state.model_dump_json(indent=2))
            index = self._read_index()
            meta = GameMeta(
                id=game_id,
                name=state.name,
                last_played=_now_iso(),
                big_picture=state.setup.big_picture,
            )
            games = [g for g in index["games"] if g.id != game_id]
            games.insert(0, meta)
            self._write_index(index["current"], games)
        except OSError as e:
            logger.error("Failed to save game %s: %s", game_id, e)

    def load(self, game_id: str) -> GameState | None:
        path = self._game_file(game_id)
        if not path.is_file():
            return None
        try:
            return GameState.model_validate_json(path.read_text())
        except (OSError, ValueError) as e:
            # pydantic's ValidationError is a ValueError
            logger.warning("Saved game %s is unreadable, ignoring it: %s", game_id, e)
            return None

    def list(self) -> list[GameMeta]:
        """Saved games, most recently played first."""
        games = self._read_index()["games"]
        return sorted(games, key=lambda g: g.last_played, reverse=True)

    def create_game(self, name: str = "New Game") -> GameState:
        state = new_game_state(name=name)
        self.save(state.id, state)
        return state

    def delete_game(self, game_id: str) -> bool:
        """Remove a game and its index row. Returns False if it did not exist."""
        index = self._read_index()
        games = [g for g in index["games"] if g.id != game_id]
        path = self._game_file(game_id)
        existed = path.is_file() or len(games) != len(index["games"])
        path.unlink(missing_ok=True)
        current = None if index["current"] == game_id else index["current"]
        self._write_index(current, games)
        return existed

    def get_current_game_id(self) -> str | None:
        return self._read_index()["current"]

    def set_current_game_id(self, game_id: str | None) -> None:
        index = self._read_index()
        self._write_index(game_id, index["games"])

    def load_current(self) -> GameState:
        """The current game, or a fresh one when none is saved or it fails to load."""
        game_id = self.get_current_game_id()
        state = self.load(game_id) if game_id else None
        if state is None:
            state = self.create_game()
            self.set_current_game_id(state.id)
        return state

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        """Read settings, returning defaults merged with stored values."""
        config = dict(_CONFIG_DEFAULTS)
        path = self._config_file()
        if path.is_file():
            try:
                stored = self._read_json(path)
            except (OSError, ValueError) as e:
                logger.warning("Config %s unreadable, using defaults: %s", path, e)
                stored = {}
            for key in _CONFIG_DEFAULTS:
                if key in stored:
                    config[key] = stored[key]
        return config

    def update_config(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge known fields into settings and persist. Returns the full config."""
        config = self.get_config()
        for key, value in fields.items():
            if key in _CONFIG_DEFAULTS and value is not None:
                config[key] = value
        self._write_json(self._config_file(), config)
        return config

    def provider_config(self) -> ProviderConfig:
        """Settings as a ProviderConfig; an empty api_key falls back to the environment."""
        config = self.get_config()
        api_key = config["api_key"] or os.getenv(_ENV_KEYS.get(config["provider"], ""), "")
        return ProviderConfig(
            provider=config["provider"],
            api_key=api_key,
            model=config["model"],
            base_url=config["base_url"],
            temperature=config["temperature"],
            max_tokens=config["max_tokens"],
        )
