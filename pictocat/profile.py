"""
Player profiles: creation on first sight, schema migration and the
client-editable part of the data bag.

Profiles are versioned. A profile whose ``schema_version`` is behind
``SCHEMA_VERSION`` is migrated once (at startup, by the migration command,
or on its first load); repairing is never destructive, existing values win.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, List, Optional

from .auth import Identity
from .config import ADMIN_SUBJECT_ID, DEFAULTS
from .db import Database
from .errors import Conflict, InvalidInput, NotFound
from .game_data import GAME_DATA
from . import community, missions

log = logging.getLogger(__name__)

SCHEMA_VERSION = 2
EPOCH = "1970-01-01T00:00:00+00:00"
DEFAULT_BIO = "¡Hola! Soy nuevo en PictoCat."
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
USERNAME_MIN, USERNAME_MAX = 3, 20
BIO_MAX = 280
ROLES = ("user", "mod", "admin")

LIST_FIELDS = (
    "phrases",
    "unlocked_image_ids",
    "purchased_upgrades",
    "friend_requests_sent",
    "friend_requests_received",
    "daily_missions",
)
CLIENT_FIELDS = {"phrases", "bio", "profile_picture_id"}

# camelCase keys written by older clients
LEGACY_KEYS = {
    "unlockedImageIds": "unlocked_image_ids",
    "playerStats": "player_stats",
    "purchasedUpgrades": "purchased_upgrades",
    "profilePictureId": "profile_picture_id",
    "friendRequestsSent": "friend_requests_sent",
    "friendRequestsReceived": "friend_requests_received",
    "tradeNotifications": "trade_notifications",
    "dailyMissions": "daily_missions",
    "lastMissionReset": "last_mission_reset",
}
LEGACY_STATS_KEYS = {"xpToNextLevel": "xp_to_next_level"}
LEGACY_PHRASE_KEYS = {
    "selectedImageId": "selected_image_id",
    "isCustom": "is_custom",
    "isPublic": "is_public",
}
LEGACY_MISSION_KEYS = {
    "isClaimed": "is_claimed",
    "rewardCoins": "reward_coins",
    "rewardXp": "reward_xp",
}


def default_user_data(settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    settings = settings or {}
    return {
        "coins": int(settings.get("starting_coins", DEFAULTS.starting_coins)),
        "player_stats": {
            "level": 1,
            "xp": 0,
            "xp_to_next_level": DEFAULTS.start_xp_to_next_level,
        },
        "phrases": copy.deepcopy(GAME_DATA.initial_phrases),
        "unlocked_image_ids": [],
        "purchased_upgrades": [],
        "bio": DEFAULT_BIO,
        "profile_picture_id": None,
        "friend_requests_sent": [],
        "friend_requests_received": [],
        "trade_notifications": 0,
        "daily_missions": [],
        "last_mission_reset": EPOCH,
    }


def _rename_keys(record: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    renamed = dict(record)
    for old, new in mapping.items():
        if old in renamed:
            value = renamed.pop(old)
            renamed.setdefault(new, value)
    return renamed


def rename_legacy_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    renamed = _rename_keys(data, LEGACY_KEYS)
    if isinstance(renamed.get("player_stats"), dict):
        renamed["player_stats"] = _rename_keys(renamed["player_stats"], LEGACY_STATS_KEYS)
    if isinstance(renamed.get("phrases"), list):
        renamed["phrases"] = [
            _rename_keys(p, LEGACY_PHRASE_KEYS) if isinstance(p, dict) else p
            for p in renamed["phrases"]
        ]
    if isinstance(renamed.get("daily_missions"), list):
        renamed["daily_missions"] = [
            _rename_keys(m, LEGACY_MISSION_KEYS) if isinstance(m, dict) else m
            for m in renamed["daily_missions"]
        ]
    return renamed


def repair_user_data(data: Any) -> Dict[str, Any]:
    defaults = default_user_data()
    if not isinstance(data, dict):
        return defaults
    repaired = {**defaults, **data}
    stats = data.get("player_stats")
    repaired["player_stats"] = {
        **defaults["player_stats"],
        **(stats if isinstance(stats, dict) else {}),
    }
    for field in LIST_FIELDS:
        if not isinstance(repaired.get(field), list):
            repaired[field] = defaults[field]
    if not isinstance(repaired.get("coins"), int) or repaired["coins"] < 0:
        repaired["coins"] = max(0, _as_int(repaired.get("coins"), defaults["coins"]))
    return repaired


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def sanitize_username(raw: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_]", "", raw or "")[:USERNAME_MAX]
    return cleaned


async def _unique_username(db: Database, base: str, user_id: str) -> str:
    base = base[:USERNAME_MAX]
    if len(base) < USERNAME_MIN:
        suffix = sanitize_username(user_id.split("|")[-1])[-6:] or "cat"
        base = f"user_{suffix}"[:USERNAME_MAX]
    candidate = base
    counter = 1
    while await db.username_taken(candidate, exclude_id=user_id):
        tail = str(counter)
        candidate = f"{base[:USERNAME_MAX - len(tail)]}{tail}"
        counter += 1
    return candidate


async def _derive_username(db: Database, user_id: str, email: Optional[str]) -> str:
    local = (email or "").split("@", 1)[0]
    return await _unique_username(db, sanitize_username(local), user_id)


async def migrate_profile(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    """Bring one profile up to ``SCHEMA_VERSION``. Safe to run repeatedly."""
    async with db.transaction():
        current = await db.get_user(user["id"])
        if current is None:
            raise NotFound("User not found.")
        data = repair_user_data(rename_legacy_keys(current["data"]))
        legacy_friends = data.pop("friends", None) or []
        created = 0
        for friend_id in legacy_friends:
            if not isinstance(friend_id, str) or friend_id == current["id"]:
                continue
            if await db.get_friendship_between(current["id"], friend_id) is not None:
                continue
            if await db.get_user(friend_id) is None:
                continue
            await db.create_friendship(current["id"], friend_id)
            created += 1
        updates: Dict[str, Any] = {"schema_version": SCHEMA_VERSION}
        if not current["username"]:
            updates["username"] = await _derive_username(db, current["id"], current["email"])
        await db.update_user_data(current["id"], data)
        await db.update_user(current["id"], **updates)
    if created:
        log.info("migrated %d legacy friends of %s", created, current["id"])
    return {**current, **updates, "data": data}


async def migrate_all(db: Database) -> int:
    backfilled = await db.backfill_image_rarity()
    if backfilled:
        log.info("backfilled rarity on %d catalog items", backfilled)
    migrated = 0
    for user in await db.list_users():
        if user["schema_version"] >= SCHEMA_VERSION:
            continue
        await migrate_profile(db, user)
        migrated += 1
    if migrated:
        log.info("migrated %d profiles to schema %d", migrated, SCHEMA_VERSION)
    return migrated


async def get_or_create_profile(
    db: Database,
    identity: Identity,
    admin_subject_id: str = ADMIN_SUBJECT_ID,
) -> Dict[str, Any]:
    user = await db.get_user(identity.sub)
    if user is None:
        async with db.transaction():
            user = await db.get_user(identity.sub)
            if user is None:
                settings = await db.get_settings()
                user = {
                    "id": identity.sub,
                    "username": await _derive_username(db, identity.sub, identity.email),
                    "email": identity.email,
                    "role": "admin" if identity.sub == admin_subject_id else "user",
                    "is_verified": False,
                    "schema_version": SCHEMA_VERSION,
                    "data": default_user_data(settings),
                }
                await db.create_user(user)
                log.info("created profile %s (%s)", user["username"], user["id"])
    elif user["schema_version"] < SCHEMA_VERSION:
        user = await migrate_profile(db, user)
    if identity.sub == admin_subject_id and user["role"] != "admin":
        await db.update_user(user["id"], role="admin")
        user = {**user, "role": "admin"}
    return await missions.ensure_daily_missions(db, user)


async def require_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = await db.get_user(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _validate_phrases(phrases: Any) -> List[Dict[str, Any]]:
    if not isinstance(phrases, list):
        raise InvalidInput("phrases must be a list.")
    seen = set()
    cleaned = []
    for phrase in phrases:
        if not isinstance(phrase, dict) or not phrase.get("id"):
            raise InvalidInput("Every phrase needs an id.")
        phrase_id = str(phrase["id"])
        if phrase_id in seen:
            raise InvalidInput("Duplicate phrase id.", {"id": phrase_id})
        seen.add(phrase_id)
        image_id = phrase.get("selected_image_id")
        if image_id is not None and (isinstance(image_id, bool) or not isinstance(image_id, int)):
            raise InvalidInput("selected_image_id must be an image id.", {"id": phrase_id})
        cleaned.append(
            {
                "id": phrase_id,
                "text": str(phrase.get("text", "")),
                "selected_image_id": image_id,
                "is_custom": bool(phrase.get("is_custom")),
                "is_public": bool(phrase.get("is_public")),
            }
        )
    return cleaned


async def save_user_data(db: Database, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(changes, dict) or not changes:
        raise InvalidInput("Nothing to save.")
    forbidden = set(changes) - CLIENT_FIELDS
    if forbidden:
        raise InvalidInput("Field not editable.", {"fields": sorted(forbidden)})
    async with db.transaction():
        user = await require_user(db, user_id)
        data = user["data"]
        unlocked = set(data.get("unlocked_image_ids") or [])
        if "phrases" in changes:
            data["phrases"] = _validate_phrases(changes["phrases"])
        if "bio" in changes:
            data["bio"] = _validate_bio(changes["bio"])
        if "profile_picture_id" in changes:
            picture = changes["profile_picture_id"]
            if picture is not None and picture not in unlocked:
                raise InvalidInput("Profile picture must be an unlocked image.")
            data["profile_picture_id"] = picture
        await db.update_user_data(user_id, data)
        if "phrases" in changes:
            await community.sync_public_phrases(db, user, data["phrases"])
    return user


def _validate_bio(bio: Any) -> str:
    if not isinstance(bio, str):
        raise InvalidInput("bio must be text.")
    if len(bio) > BIO_MAX:
        raise InvalidInput(f"bio is limited to {BIO_MAX} characters.")
    return bio


async def update_profile(
    db: Database,
    user_id: str,
    username: Optional[str] = None,
    bio: Optional[str] = None,
) -> Dict[str, Any]:
    async with db.transaction():
        user = await require_user(db, user_id)
        if username is not None and username != user["username"]:
            if not USERNAME_RE.match(username):
                raise InvalidInput(
                    "Username must be 3-20 letters, digits or underscores."
                )
            if await db.username_taken(username, exclude_id=user_id):
                raise Conflict("Username already taken.")
            await db.update_user(user_id, username=username)
            await db.update_public_phrase_author(user_id, username=username)
            user["username"] = username
        if bio is not None:
            user["data"]["bio"] = _validate_bio(bio)
            await db.update_user_data(user_id, user["data"])
    return user


def to_public_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "is_verified": user["is_verified"],
        "data": user["data"],
    }
