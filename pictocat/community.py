from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .config import DEFAULTS
from .db import Database
from .errors import InvalidInput, NotFound
from . import friendship, missions

log = logging.getLogger(__name__)


def _public_candidates(phrases: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        phrase
        for phrase in phrases
        if isinstance(phrase, dict)
        and phrase.get("id")
        and phrase.get("is_custom")
        and phrase.get("is_public")
        and phrase.get("selected_image_id") is not None
    ]


async def sync_public_phrases(
    db: Database, user: Dict[str, Any], phrases: List[Dict[str, Any]]
) -> int:
    """Mirror the player's public custom phrases into the feed.

    Phrases whose image cannot be resolved are left out. Returns how many
    phrases are public after the sync.
    """
    candidates = _public_candidates(phrases)
    images = {
        image["id"]: image
        for image in await db.get_images(int(p["selected_image_id"]) for p in candidates)
    }
    kept: List[str] = []
    async with db.transaction():
        for phrase in candidates:
            image = images.get(int(phrase["selected_image_id"]))
            if image is None:
                continue
            await db.upsert_public_phrase(
                {
                    "user_id": user["id"],
                    "phrase_id": str(phrase["id"]),
                    "text": str(phrase.get("text", "")),
                    "image_url": image["url"],
                    "image_theme": image["theme"],
                    "username": user["username"],
                    "is_user_verified": user["is_verified"],
                }
            )
            kept.append(str(phrase["id"]))
        removed = await db.delete_public_phrases_except(user["id"], kept)
    if removed:
        log.debug("removed %d public phrases of %s", removed, user["id"])
    return len(kept)


async def get_catalog(db: Database) -> List[Dict[str, Any]]:
    return await db.list_images()


async def _with_like_flags(
    db: Database, phrases: List[Dict[str, Any]], viewer_id: Optional[str]
) -> List[Dict[str, Any]]:
    liked = set()
    if viewer_id:
        liked = await db.liked_phrase_ids(viewer_id, [p["id"] for p in phrases])
    return [{**phrase, "is_liked_by_me": phrase["id"] in liked} for phrase in phrases]


async def get_feed(
    db: Database, viewer_id: Optional[str], limit: Optional[int] = None
) -> List[Dict[str, Any]]:
    if limit is None:
        settings = await db.get_settings()
        limit = int(settings["feed_limit"])
    phrases = await db.list_public_phrases(limit=max(1, limit))
    return await _with_like_flags(db, phrases, viewer_id)


async def get_public_profile(
    db: Database, username: str, viewer_id: Optional[str] = None
) -> Dict[str, Any]:
    if not username:
        raise InvalidInput("Username is required.")
    user = await db.get_user_by_username(username)
    if user is None:
        raise NotFound("User not found.")
    data = user["data"]
    phrases = await db.list_public_phrases(user_id=user["id"])
    unlocked = await db.get_images(data.get("unlocked_image_ids") or [])
    return {
        "id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "is_verified": user["is_verified"],
        "bio": data.get("bio", ""),
        "profile_picture_id": data.get("profile_picture_id"),
        "level": int((data.get("player_stats") or {}).get("level", 1)),
        "public_phrases": await _with_like_flags(db, phrases, viewer_id),
        "unlocked_images": unlocked,
    }


async def search_users(
    db: Database, query: str, limit: int = DEFAULTS.search_limit
) -> List[Dict[str, Any]]:
    query = (query or "").strip()
    if len(query) < DEFAULTS.search_min_length:
        return []
    return await db.search_users(query, limit)


async def toggle_like(db: Database, user_id: str, public_phrase_id: int) -> Dict[str, Any]:
    phrase = await db.get_public_phrase(public_phrase_id)
    if phrase is None:
        raise NotFound("Phrase not found.")
    liked = await db.add_like(public_phrase_id, user_id)
    if not liked:
        await db.remove_like(public_phrase_id, user_id)
    else:
        await missions.record_activity(db, user_id, "LIKE_PUBLIC_PHRASE")
        await friendship.record_progress(db, user_id, phrase["user_id"], "LIKE_PHRASES")
    return {"liked": liked, "like_count": await db.count_likes(public_phrase_id)}
