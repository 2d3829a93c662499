from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import NotFound, NothingToClaim
from .game_data import GAME_DATA
from .progression import award_player_xp

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def needs_reset(last_reset: Optional[str], now: datetime) -> bool:
    last = _parse_timestamp(last_reset)
    if last is None:
        return True
    return last.astimezone(timezone.utc).date() < now.astimezone(timezone.utc).date()


def roll_daily_missions(
    templates: List[Dict[str, Any]],
    count: int,
    rng: Optional[random.Random] = None,
) -> List[Dict[str, Any]]:
    rng = rng or random.Random()
    picks = rng.sample(templates, min(max(0, count), len(templates)))
    return [{**template, "progress": 0, "is_claimed": False} for template in picks]


def apply_activity(missions: List[Dict[str, Any]], mission_type: str, amount: int) -> bool:
    updated = False
    for mission in missions:
        if mission.get("type") != mission_type or mission.get("is_claimed"):
            continue
        goal = int(mission.get("goal", 0))
        progress = int(mission.get("progress", 0)) + int(amount)
        mission["progress"] = min(progress, goal)
        updated = True
    return updated


async def ensure_daily_missions(
    db: Database,
    user: Dict[str, Any],
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """Replace yesterday's missions with a fresh draw, at most once per UTC day."""
    now = now or _utcnow()
    if not needs_reset(user["data"].get("last_mission_reset"), now):
        return user
    async with db.transaction():
        current = await db.get_user(user["id"])
        if current is None:
            return user
        data = current["data"]
        if needs_reset(data.get("last_mission_reset"), now):
            settings = await db.get_settings()
            data["daily_missions"] = roll_daily_missions(
                GAME_DATA.daily_missions, int(settings["daily_mission_count"]), rng
            )
            data["last_mission_reset"] = now.isoformat()
            await db.update_user_data(user["id"], data)
            log.debug("daily missions reset for %s", user["id"])
    return {**user, "data": data}


async def record_activity(
    db: Database, user_id: str, mission_type: str, amount: int = 1
) -> bool:
    if amount <= 0:
        return False
    async with db.transaction():
        user = await db.get_user(user_id)
        if user is None:
            return False
        user = await ensure_daily_missions(db, user)
        missions = user["data"].get("daily_missions") or []
        if not apply_activity(missions, mission_type, amount):
            return False
        await db.update_user_data(user_id, user["data"])
    return True


async def claim_mission(db: Database, user_id: str, mission_id: str) -> Dict[str, Any]:
    async with db.transaction():
        user = await db.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        data = user["data"]
        missions = data.get("daily_missions") or []
        mission = next((m for m in missions if m.get("id") == mission_id), None)
        if (
            mission is None
            or mission.get("is_claimed")
            or int(mission.get("progress", 0)) < int(mission.get("goal", 0))
        ):
            raise NothingToClaim("Mission not available to claim.")
        mission["is_claimed"] = True
        reward_coins = int(mission.get("reward_coins", 0))
        reward_xp = int(mission.get("reward_xp", 0))
        data["coins"] = int(data.get("coins", 0)) + reward_coins
        data["player_stats"], _ = award_player_xp(data.get("player_stats") or {}, reward_xp)
        await db.update_user_data(user_id, data)
    log.info(
        "daily mission %s claimed by %s (+%d coins, +%d xp)",
        mission_id,
        user_id,
        reward_coins,
        reward_xp,
    )
    return user
