from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DATA_DIR


class GameData:
    """Static templates shipped with the game: missions, starter phrases, seed catalog."""

    def __init__(self, data_dir: Path = DATA_DIR):
        self.data_dir = data_dir
        self.daily_missions = self._load_json("daily_missions.json")
        self.friendship_missions = self._load_json("friendship_missions.json")
        self.initial_phrases = self._load_json("initial_phrases.json")
        self.seed_catalog = self._load_json("seed_catalog.json")
        self._daily_index = {m["id"]: m for m in self.daily_missions}
        self._friendship_index = {m["id"]: m for m in self.friendship_missions}

    def _load_json(self, name: str) -> Any:
        path = self.data_dir / name
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def get_daily_mission(self, mission_id: str) -> Optional[Dict[str, Any]]:
        return self._daily_index.get(mission_id)

    def get_friendship_mission(self, mission_id: str) -> Optional[Dict[str, Any]]:
        return self._friendship_index.get(mission_id)

    def list_friendship_missions(self) -> List[Dict[str, Any]]:
        return list(self.friendship_missions)


GAME_DATA = GameData()
