"""
Friend requests, levelled friendships and cooperative friendship missions.

A friendship is one record per unordered pair of players. It carries its own
level/xp progression and at most one active mission, which both friends
advance together through their regular activity (playing games, liking each
other's phrases, sending trades). Claiming a completed mission feeds xp into
the friendship; the friendship level in turn scales the coin bonus each
friend receives whenever the other earns coins in a minigame.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULTS
from .db import Database
from .errors import Conflict, InvalidInput, NotFound, NothingToClaim
from .game_data import GAME_DATA

log = logging.getLogger(__name__)


def friendship_bonus_pct(level: int, settings: Optional[Dict[str, Any]] = None) -> float:
    settings = settings or {}
    base = float(settings.get("friend_bonus_base_pct", DEFAULTS.friend_bonus_base_pct))
    step = float(settings.get("friend_bonus_step_pct", DEFAULTS.friend_bonus_step_pct))
    cap = float(settings.get("friend_bonus_cap_pct", DEFAULTS.friend_bonus_cap_pct))
    return min(base + (max(1, level) - 1) * step, cap)


def friend_bonus(coins_earned: int, level: int, settings: Optional[Dict[str, Any]] = None) -> int:
    if coins_earned <= 0:
        return 0
    return math.floor(coins_earned * friendship_bonus_pct(level, settings) / 100)


def apply_friendship_xp(
    level: int,
    xp: int,
    reward: int,
    xp_per_level: int = DEFAULTS.friendship_xp_per_level,
    max_level: int = DEFAULTS.friendship_max_level,
) -> Tuple[int, int]:
    new_xp = xp + max(0, reward)
    new_level = level
    # a single reward may be worth several levels
    while new_xp >= xp_per_level and new_level < max_level:
        new_xp -= xp_per_level
        new_level += 1
    if new_level >= max_level:
        new_xp = min(new_xp, xp_per_level - 1)
    return new_level, new_xp


def advance_mission(
    mission: Dict[str, Any], template: Dict[str, Any], activity_type: str, amount: int
) -> bool:
    if mission.get("is_completed") or template.get("type") != activity_type:
        return False
    goal = int(mission.get("goal", template.get("goal", 0)))
    mission["progress"] = min(int(mission.get("progress", 0)) + amount, goal)
    if mission["progress"] >= goal:
        mission["is_completed"] = True
    return True


def other_party(friendship: Dict[str, Any], user_id: str) -> str:
    if friendship["user1_id"] == user_id:
        return friendship["user2_id"]
    return friendship["user1_id"]


def is_participant(friendship: Dict[str, Any], user_id: str) -> bool:
    return user_id in (friendship["user1_id"], friendship["user2_id"])


async def are_friends(db: Database, user_a: str, user_b: str) -> bool:
    if user_a == user_b:
        return False
    if await db.get_friendship_between(user_a, user_b) is not None:
        return True
    user = await db.get_user(user_a)
    legacy = (user or {}).get("data", {}).get("friends") or []
    return user_b in legacy


# -- requests -----------------------------------------------------------


async def send_request(db: Database, user_id: str, target_id: str) -> None:
    if not target_id or target_id == user_id:
        raise InvalidInput("Invalid target user.")
    async with db.transaction():
        user = await db.get_user(user_id)
        target = await db.get_user(target_id)
        if user is None:
            raise NotFound("Current user not found.")
        if target is None:
            raise NotFound("Target user not found.")
        if await are_friends(db, user_id, target_id):
            raise Conflict("Already friends or request sent.")
        received = target["data"].setdefault("friend_requests_received", [])
        sent = user["data"].setdefault("friend_requests_sent", [])
        if user_id in received or target_id in user["data"].get("friend_requests_received", []):
            raise Conflict("Already friends or request sent.")
        received.append(user_id)
        if target_id not in sent:
            sent.append(target_id)
        await db.update_user_data(target_id, target["data"])
        await db.update_user_data(user_id, user["data"])


async def respond_request(
    db: Database, user_id: str, target_id: str, accept: bool
) -> Optional[Dict[str, Any]]:
    async with db.transaction():
        user = await db.get_user(user_id)
        target = await db.get_user(target_id)
        if user is None or target is None:
            raise NotFound("User not found.")
        received = user["data"].get("friend_requests_received") or []
        if target_id not in received:
            raise NotFound("Friend request not found.")
        user["data"]["friend_requests_received"] = [i for i in received if i != target_id]
        sent = target["data"].get("friend_requests_sent") or []
        target["data"]["friend_requests_sent"] = [i for i in sent if i != user_id]
        await db.update_user_data(user_id, user["data"])
        await db.update_user_data(target_id, target["data"])
        if not accept:
            return None
        friendship = await db.create_friendship(user_id, target_id)
    log.info("friendship %s created between %s and %s", friendship["id"], user_id, target_id)
    return friendship


async def remove_friend(db: Database, user_id: str, target_id: str) -> None:
    if not target_id:
        raise InvalidInput("Invalid target user.")
    async with db.transaction():
        removed = await db.delete_friendship_between(user_id, target_id)
        for owner, other in ((user_id, target_id), (target_id, user_id)):
            user = await db.get_user(owner)
            legacy = (user or {}).get("data", {}).get("friends")
            if user and legacy and other in legacy:
                user["data"]["friends"] = [i for i in legacy if i != other]
                await db.update_user_data(owner, user["data"])
                removed = True
        if not removed:
            raise NotFound("Friendship not found.")


async def list_friends(db: Database, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
    user = await db.get_user(user_id)
    if user is None:
        raise NotFound("Current user not found.")
    friendships = await db.list_friendships(user_id)
    by_friend = {other_party(f, user_id): f for f in friendships}
    friends = await db.get_users(by_friend.keys())
    request_ids = user["data"].get("friend_requests_received") or []
    requesters = await db.get_users(request_ids)
    return {
        "friends": [
            {
                "user_id": friend["id"],
                "username": friend["username"],
                "is_verified": friend["is_verified"],
                "role": friend["role"],
                "profile_picture_id": friend["data"].get("profile_picture_id"),
                "friendship": by_friend[friend["id"]],
            }
            for friend in sorted(friends, key=lambda u: u["username"].lower())
        ],
        "requests": [
            {"user_id": requester["id"], "username": requester["username"]}
            for requester in requesters
        ],
    }


# -- missions -----------------------------------------------------------


async def _participant_friendship(
    db: Database, user_id: str, friendship_id: int
) -> Dict[str, Any]:
    friendship = await db.get_friendship(friendship_id)
    if friendship is None or not is_participant(friendship, user_id):
        raise NotFound("Friendship not found.")
    return friendship


async def start_mission(
    db: Database, user_id: str, friendship_id: int, mission_id: str
) -> Dict[str, Any]:
    template = GAME_DATA.get_friendship_mission(mission_id)
    if template is None:
        raise NotFound("Mission not found.")
    async with db.transaction():
        friendship = await _participant_friendship(db, user_id, friendship_id)
        active = friendship["active_mission"]
        if active is not None:
            if active.get("is_completed"):
                raise Conflict("Claim the completed mission first.")
            raise Conflict("A mission is already in progress.")
        friendship["active_mission"] = {
            "mission_id": template["id"],
            "progress": 0,
            "goal": int(template["goal"]),
            "is_completed": False,
        }
        await db.update_friendship(
            friendship["id"], friendship["level"], friendship["xp"], friendship["active_mission"]
        )
    return friendship


async def record_progress(
    db: Database, user_a: str, user_b: str, activity_type: str, amount: int = 1
) -> Optional[Dict[str, Any]]:
    if user_a == user_b or amount <= 0:
        return None
    async with db.transaction():
        friendship = await db.get_friendship_between(user_a, user_b)
        if friendship is None or friendship["active_mission"] is None:
            return None
        mission = friendship["active_mission"]
        template = GAME_DATA.get_friendship_mission(mission.get("mission_id", ""))
        if template is None or not advance_mission(mission, template, activity_type, amount):
            return None
        await db.update_friendship(
            friendship["id"], friendship["level"], friendship["xp"], mission
        )
    return friendship


async def claim_reward(db: Database, user_id: str, friendship_id: int) -> Dict[str, Any]:
    async with db.transaction():
        friendship = await _participant_friendship(db, user_id, friendship_id)
        mission = friendship["active_mission"]
        if not mission or not mission.get("is_completed"):
            raise NothingToClaim("No completed mission to claim.")
        template = GAME_DATA.get_friendship_mission(mission.get("mission_id", "")) or {}
        reward = int(template.get("reward_xp", 0))
        settings = await db.get_settings()
        level, xp = apply_friendship_xp(
            friendship["level"],
            friendship["xp"],
            reward,
            int(settings["friendship_xp_per_level"]),
            int(settings["friendship_max_level"]),
        )
        await db.update_friendship(friendship["id"], level, xp, None)
    log.info(
        "friendship %s claimed %s: level %d -> %d",
        friendship_id,
        mission.get("mission_id"),
        friendship["level"],
        level,
    )
    return {"level": level, "xp": xp, "reward_xp": reward}


async def distribute_bonus(db: Database, user_id: str, coins_earned: int) -> Dict[str, int]:
    if coins_earned <= 0:
        return {}
    bonuses: Dict[str, int] = {}
    async with db.transaction():
        settings = await db.get_settings()
        for friendship in await db.list_friendships(user_id):
            friend_id = other_party(friendship, user_id)
            if friend_id == user_id:
                continue
            bonus = friend_bonus(coins_earned, friendship["level"], settings)
            if bonus > 0:
                await db.increment_user_counter(friend_id, "coins", bonus)
                bonuses[friend_id] = bonus
    return bonuses

