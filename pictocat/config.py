from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


load_dotenv()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).resolve().parent / "data"))
DB_PATH = Path(os.getenv("DB_PATH", BASE_DIR / "pictocat.db"))
AUTH_SECRET = os.getenv("AUTH_SECRET", "").strip()
TOKEN_TTL = int(os.getenv("TOKEN_TTL", "2592000"))
ADMIN_SUBJECT_ID = os.getenv(
    "ADMIN_SUBJECT_ID", "google-oauth2|107222277373277873883"
).strip()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash").strip()
ASSISTANT_TIMEOUT = float(os.getenv("ASSISTANT_TIMEOUT", "20"))
SEED_CATALOG = os.getenv("SEED_CATALOG", "1").strip() == "1"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))


@dataclass(frozen=True)
class EconomyDefaults:
    starting_coins: int = 500
    start_xp_to_next_level: int = 100
    xp_to_next_level_step: int = 50
    friendship_xp_per_level: int = 200
    friendship_max_level: int = 10
    friend_bonus_base_pct: float = 1.0
    friend_bonus_step_pct: float = 0.666
    friend_bonus_cap_pct: float = 7.0
    daily_mission_count: int = 3
    feed_limit: int = 20
    search_limit: int = 10
    search_min_length: int = 2


DEFAULTS = EconomyDefaults()

# Keys an admin may tune at runtime; stored in the settings table.
TUNABLE_SETTINGS = (
    "starting_coins",
    "friendship_xp_per_level",
    "friendship_max_level",
    "friend_bonus_base_pct",
    "friend_bonus_step_pct",
    "friend_bonus_cap_pct",
    "daily_mission_count",
    "feed_limit",
)
