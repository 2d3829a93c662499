from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .db import ENVELOPE_FIELDS, UPGRADE_FIELDS, Database
from .errors import Forbidden, InvalidInput, NotFound
from .profile import ROLES
from .trading import CANCELLED, PENDING, STATUSES
from . import community

log = logging.getLogger(__name__)

RARITIES = ("common", "rare", "epic")


def require_admin(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not user or user.get("role") != "admin":
        raise Forbidden("Admin access required.")
    return user


# -- users --------------------------------------------------------------


async def list_users(db: Database) -> List[Dict[str, Any]]:
    return [
        {
            "id": user["id"],
            "username": user["username"],
            "email": user["email"],
            "role": user["role"],
            "is_verified": user["is_verified"],
            "coins": int(user["data"].get("coins", 0)),
            "level": int((user["data"].get("player_stats") or {}).get("level", 1)),
        }
        for user in await db.list_users()
    ]


async def set_verified(db: Database, user_id: str, is_verified: bool) -> None:
    if not isinstance(is_verified, bool):
        raise InvalidInput("is_verified must be true or false.")
    async with db.transaction():
        if await db.get_user(user_id) is None:
            raise NotFound("User not found.")
        await db.update_user(user_id, is_verified=is_verified)
        await db.update_public_phrase_author(user_id, is_user_verified=is_verified)
    log.info("user %s verified=%s", user_id, is_verified)


async def set_role(db: Database, user_id: str, role: str) -> None:
    if role not in ROLES:
        raise InvalidInput("Unknown role.", {"roles": list(ROLES)})
    if await db.get_user(user_id) is None:
        raise NotFound("User not found.")
    await db.update_user(user_id, role=role)
    log.info("user %s role=%s", user_id, role)


# -- public phrases -----------------------------------------------------


async def list_phrases(db: Database) -> List[Dict[str, Any]]:
    return await db.list_public_phrases()


async def censor_phrase(db: Database, public_phrase_id: int) -> None:
    async with db.transaction():
        phrase = await db.get_public_phrase(public_phrase_id)
        if phrase is None:
            raise NotFound("Phrase not found.")
        await db.delete_public_phrase(public_phrase_id)
        owner = await db.get_user(phrase["user_id"])
        if owner is not None:
            for own in owner["data"].get("phrases") or []:
                if isinstance(own, dict) and str(own.get("id")) == phrase["phrase_id"]:
                    own["is_public"] = False
            await db.update_user_data(owner["id"], owner["data"])
    log.warning("public phrase %s of %s censored", public_phrase_id, phrase["user_id"])


# -- catalog ------------------------------------------------------------


def _check_rarity(rarity: Optional[str]) -> None:
    if rarity is not None and rarity not in RARITIES:
        raise InvalidInput("Unknown rarity.", {"rarities": list(RARITIES)})


async def create_image(
    db: Database, url: str, theme: str, rarity: str = "common", is_shiny: bool = False
) -> Dict[str, Any]:
    if not url:
        raise InvalidInput("Image url is required.")
    _check_rarity(rarity)
    image_id = await db.create_image(url, theme or "", rarity, is_shiny)
    image = await db.get_image(image_id)
    assert image is not None
    return image


async def update_image(db: Database, image_id: int, **fields: Any) -> Dict[str, Any]:
    fields = {k: v for k, v in fields.items() if v is not None}
    _check_rarity(fields.get("rarity"))
    try:
        updated = await db.update_image(image_id, **fields)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    if not updated:
        raise NotFound("Image not found.")
    image = await db.get_image(image_id)
    assert image is not None
    return image


async def delete_image(db: Database, image_id: int) -> None:
    if not await db.delete_image(image_id):
        raise NotFound("Image not found.")


def _require_fields(record: Dict[str, Any], required: tuple) -> None:
    missing = [field for field in required if record.get(field) in (None, "")]
    if missing:
        raise InvalidInput("Missing fields.", {"missing": missing})


async def upsert_envelope(db: Database, envelope: Dict[str, Any]) -> Dict[str, Any]:
    _require_fields(envelope, ("id", "name", "base_cost", "image_count"))
    record = {"id": envelope["id"], **{k: envelope[k] for k in ENVELOPE_FIELDS if k in envelope}}
    if int(record["base_cost"]) < 0 or int(record["image_count"]) < 1:
        raise InvalidInput("Envelope cost must be >= 0 and image count >= 1.")
    await db.upsert_envelope(record)
    saved = await db.get_envelope(record["id"])
    assert saved is not None
    return saved


async def delete_envelope(db: Database, envelope_id: str) -> None:
    if not await db.delete_envelope(envelope_id):
        raise NotFound("Envelope not found.")


async def upsert_upgrade(db: Database, upgrade: Dict[str, Any]) -> Dict[str, Any]:
    _require_fields(upgrade, ("id", "name", "cost"))
    record = {"id": upgrade["id"], **{k: upgrade[k] for k in UPGRADE_FIELDS if k in upgrade}}
    await db.upsert_upgrade(record)
    saved = await db.get_upgrade(record["id"])
    assert saved is not None
    return saved


async def delete_upgrade(db: Database, upgrade_id: str) -> None:
    if not await db.delete_upgrade(upgrade_id):
        raise NotFound("Upgrade not found.")


# -- trades -------------------------------------------------------------


async def list_trades(db: Database, status: Optional[str] = None) -> List[Dict[str, Any]]:
    if status is not None and status not in STATUSES:
        raise InvalidInput("Unknown trade status.", {"statuses": list(STATUSES)})
    return await db.list_trades(status=status)


async def cancel_trade(db: Database, trade_id: int) -> None:
    async with db.transaction():
        trade = await db.get_trade(trade_id)
        if trade is None or trade["status"] != PENDING:
            raise NotFound("Trade not found or not pending.")
        await db.update_trade_status(trade_id, CANCELLED, "Cancelled by an admin.")
    log.info("trade %s cancelled by admin", trade_id)


# -- settings -----------------------------------------------------------


async def get_settings(db: Database) -> Dict[str, Any]:
    return await db.get_settings()


async def update_settings(db: Database, updates: Dict[str, Any]) -> Dict[str, Any]:
    if not updates:
        raise InvalidInput("No settings to update.")
    current = await db.get_settings()
    unknown = sorted(set(updates) - set(current))
    if unknown:
        raise InvalidInput("Unknown settings.", {"unknown": unknown})
    cleaned: Dict[str, Any] = {}
    for key, value in updates.items():
        try:
            cleaned[key] = type(current[key])(value)
        except (TypeError, ValueError):
            raise InvalidInput(f"Invalid value for {key}.") from None
        if cleaned[key] < 0:
            raise InvalidInput(f"{key} cannot be negative.")
    settings = await db.update_settings(**cleaned)
    log.info("settings updated: %s", ", ".join(sorted(cleaned)))
    return settings


async def overview(db: Database) -> Dict[str, Any]:
    return {
        "users": await list_users(db),
        "phrases": await list_phrases(db),
        "images": await community.get_catalog(db),
        "envelopes": await db.list_envelopes(),
        "upgrades": await db.list_upgrades(),
        "trades": await list_trades(db, PENDING),
        "settings": await get_settings(db),
    }
