"""
Envelope economy: pricing, the random draw of unseen catalog items,
permanent upgrades and minigame reward settlement.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    InvalidInput,
    InvalidOffer,
    NotFound,
    OfferExhausted,
)
from .progression import award_player_xp
from . import friendship, missions

log = logging.getLogger(__name__)


def envelope_cost(envelope: Dict[str, Any], player_level: int) -> int:
    level = max(1, int(player_level))
    return int(envelope["base_cost"]) + (level - 1) * int(envelope.get("cost_increase_per_level", 0))


def prorated_cost(full_cost: int, grant_count: int, nominal_count: int) -> int:
    if nominal_count <= 0 or grant_count >= nominal_count:
        return full_cost
    return math.ceil(full_cost * grant_count / nominal_count)


def eligible_pool(images: List[Dict[str, Any]], envelope: Dict[str, Any]) -> List[Dict[str, Any]]:
    themes = set(envelope.get("cat_theme_pool") or [])
    if not themes:
        return list(images)
    return [image for image in images if image.get("theme") in themes]


def draw_items(
    pool: List[Dict[str, Any]], count: int, rng: Optional[random.Random] = None
) -> List[Dict[str, Any]]:
    rng = rng or random.Random()
    return rng.sample(pool, min(max(0, count), len(pool)))


def quote_envelope(
    envelope: Dict[str, Any], images: List[Dict[str, Any]], data: Dict[str, Any]
) -> Dict[str, Any]:
    unlocked = set(data.get("unlocked_image_ids") or [])
    remaining = [i for i in eligible_pool(images, envelope) if i["id"] not in unlocked]
    nominal = int(envelope["image_count"])
    grant = min(nominal, len(remaining))
    level = int((data.get("player_stats") or {}).get("level", 1))
    cost = prorated_cost(envelope_cost(envelope, level), grant, nominal)
    return {"remaining": remaining, "grant_count": grant, "cost": cost}


async def purchase_envelope(
    db: Database,
    user_id: str,
    envelope_id: str,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    envelope = await db.get_envelope(envelope_id)
    if envelope is None:
        raise InvalidOffer("Unknown envelope.", {"envelope_id": envelope_id})
    async with db.transaction():
        user = await db.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        data = user["data"]
        quote = quote_envelope(envelope, await db.list_images(), data)
        if quote["grant_count"] == 0:
            raise OfferExhausted("You already own every cat in this envelope.")
        coins = int(data.get("coins", 0))
        if coins < quote["cost"]:
            raise InsufficientFunds(quote["cost"], coins)
        granted = draw_items(quote["remaining"], quote["grant_count"], rng)
        data["coins"] = coins - quote["cost"]
        data["unlocked_image_ids"] = list(data.get("unlocked_image_ids") or []) + [
            image["id"] for image in granted
        ]
        if envelope["xp"]:
            data["player_stats"], _ = award_player_xp(data.get("player_stats") or {}, envelope["xp"])
        await db.update_user_data(user_id, data)
        await missions.record_activity(db, user_id, "OPEN_ENVELOPE")
    log.info(
        "%s bought %s for %d coins (%d cats)",
        user_id,
        envelope_id,
        quote["cost"],
        len(granted),
    )
    return {"new_coins": data["coins"], "new_images": granted}


async def purchase_upgrade(db: Database, user_id: str, upgrade_id: str) -> Dict[str, Any]:
    upgrade = await db.get_upgrade(upgrade_id)
    if upgrade is None:
        raise NotFound("Upgrade not found.")
    async with db.transaction():
        user = await db.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        data = user["data"]
        owned = list(data.get("purchased_upgrades") or [])
        if upgrade_id in owned:
            raise Conflict("Upgrade already purchased.")
        level = int((data.get("player_stats") or {}).get("level", 1))
        if level < int(upgrade["level_required"]):
            raise Forbidden(
                f"Requires level {upgrade['level_required']}.",
                {"level_required": upgrade["level_required"], "level": level},
            )
        coins = int(data.get("coins", 0))
        cost = int(upgrade["cost"])
        if coins < cost:
            raise InsufficientFunds(cost, coins)
        data["coins"] = coins - cost
        data["purchased_upgrades"] = owned + [upgrade_id]
        await db.update_user_data(user_id, data)
    log.info("%s bought upgrade %s for %d coins", user_id, upgrade_id, cost)
    return {"new_coins": data["coins"], "purchased_upgrades": data["purchased_upgrades"]}


async def shop_data(db: Database) -> Dict[str, Any]:
    return {
        "envelopes": await db.list_envelopes(),
        "upgrades": await db.list_upgrades(),
    }


async def save_game_results(
    db: Database, user_id: str, coins_earned: int, xp_earned: int
) -> Dict[str, Any]:
    if coins_earned < 0 or xp_earned < 0:
        raise InvalidInput("Game results cannot be negative.")
    async with db.transaction():
        user = await db.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        data = user["data"]
        data["coins"] = int(data.get("coins", 0)) + coins_earned
        data["player_stats"], levels = award_player_xp(data.get("player_stats") or {}, xp_earned)
        await db.update_user_data(user_id, data)
        bonuses = await friendship.distribute_bonus(db, user_id, coins_earned)
        for record in await db.list_friendships(user_id):
            await friendship.record_progress(
                db, user_id, friendship.other_party(record, user_id), "PLAY_GAMES"
            )
        await missions.record_activity(db, user_id, "PLAY_ANY_GAME")
    if levels:
        log.info("%s reached level %d", user_id, data["player_stats"]["level"])
    return {
        "coins": data["coins"],
        "player_stats": data["player_stats"],
        "levels_gained": levels,
        "friend_bonuses": bonuses,
    }
