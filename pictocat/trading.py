"""
Two-party item swaps between friends.

A trade is ``pending`` until the target accepts or rejects it or the
proposer cancels it; every other status is terminal. Ownership is checked
when the trade is proposed and again, inside the accepting transaction,
when it is accepted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from .db import Database
from .errors import Conflict, InvalidInput, InvalidItems, NotFound, NotFriends
from . import friendship

log = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
CANCELLED = "cancelled"
STATUSES = (PENDING, ACCEPTED, REJECTED, CANCELLED)
ITEM_GONE_REASON = "Item no longer available."


def _clean_ids(raw: Any, label: str) -> List[int]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidItems(f"{label} must be a list of image ids.")
    try:
        ids = [int(i) for i in raw]
    except (TypeError, ValueError):
        raise InvalidItems(f"{label} must be a list of image ids.") from None
    if len(set(ids)) != len(ids):
        raise InvalidItems(f"{label} contains duplicates.")
    return ids


def owns_all(data: Dict[str, Any], image_ids: Iterable[int]) -> bool:
    unlocked = set(data.get("unlocked_image_ids") or [])
    return all(i in unlocked for i in image_ids)


def owns_any(data: Dict[str, Any], image_ids: Iterable[int]) -> bool:
    unlocked = set(data.get("unlocked_image_ids") or [])
    return any(i in unlocked for i in image_ids)


def can_swap(
    proposer: Dict[str, Any],
    target: Dict[str, Any],
    offered: List[int],
    requested: List[int],
) -> bool:
    """True when both sides hold their items and neither already has what it gets.

    Inventories are sets, so receiving a duplicate would silently drop a copy.
    """
    return (
        owns_all(proposer, offered)
        and owns_all(target, requested)
        and not owns_any(target, offered)
        and not owns_any(proposer, requested)
    )


def swap_items(
    giver: Dict[str, Any], gives: List[int], gets: List[int]
) -> List[int]:
    """Return the giver's unlocked ids after handing over ``gives`` and receiving ``gets``."""
    remaining = [i for i in giver.get("unlocked_image_ids") or [] if i not in set(gives)]
    for image_id in gets:
        if image_id not in remaining:
            remaining.append(image_id)
    return remaining


async def create_trade(
    db: Database,
    from_user_id: str,
    to_user_id: str,
    offered_image_ids: Any,
    requested_image_ids: Any,
) -> Dict[str, Any]:
    if not to_user_id:
        raise InvalidInput("Target user is required.")
    if to_user_id == from_user_id:
        raise InvalidInput("You cannot trade with yourself.")
    offered = _clean_ids(offered_image_ids, "offered_image_ids")
    requested = _clean_ids(requested_image_ids, "requested_image_ids")
    if not offered and not requested:
        raise InvalidItems("A trade needs at least one item.")
    if set(offered) & set(requested):
        raise InvalidItems("An item cannot be both offered and requested.")
    async with db.transaction():
        proposer = await db.get_user(from_user_id)
        target = await db.get_user(to_user_id)
        if proposer is None:
            raise NotFound("Current user not found.")
        if target is None:
            raise NotFound("Target user not found.")
        if not await friendship.are_friends(db, from_user_id, to_user_id):
            raise NotFriends("You can only trade with friends.")
        if not owns_all(proposer["data"], offered):
            raise InvalidItems("You do not own every offered item.")
        if not owns_all(target["data"], requested):
            raise InvalidItems("Your friend does not own every requested item.")
        if owns_any(target["data"], offered):
            raise InvalidItems("Your friend already owns an offered item.")
        if owns_any(proposer["data"], requested):
            raise InvalidItems("You already own a requested item.")
        trade_id = await db.create_trade(from_user_id, to_user_id, offered, requested)
        await db.increment_user_counter(to_user_id, "trade_notifications", 1)
        await friendship.record_progress(db, from_user_id, to_user_id, "SEND_TRADE")
    log.info("trade %s proposed by %s to %s", trade_id, from_user_id, to_user_id)
    trade = await db.get_trade(trade_id)
    assert trade is not None
    return trade


async def respond_trade(
    db: Database, user_id: str, trade_id: int, action: str
) -> Dict[str, Any]:
    if action not in ("accept", "reject"):
        raise InvalidInput("Action must be accept or reject.")
    async with db.transaction():
        trade = await db.get_trade(trade_id)
        if trade is None or trade["to_user_id"] != user_id or trade["status"] != PENDING:
            raise NotFound("Trade not found or not pending.")
        if action == "reject":
            await db.update_trade_status(trade_id, REJECTED)
            return {**trade, "status": REJECTED}
        proposer = await db.get_user(trade["from_user_id"])
        target = await db.get_user(trade["to_user_id"])
        offered = trade["offered_image_ids"]
        requested = trade["requested_image_ids"]
        if (
            proposer is None
            or target is None
            or not can_swap(proposer["data"], target["data"], offered, requested)
        ):
            await db.update_trade_status(trade_id, REJECTED, ITEM_GONE_REASON)
            stale = True
        else:
            proposer["data"]["unlocked_image_ids"] = swap_items(proposer["data"], offered, requested)
            target["data"]["unlocked_image_ids"] = swap_items(target["data"], requested, offered)
            await db.update_user_data(proposer["id"], proposer["data"])
            await db.update_user_data(target["id"], target["data"])
            await db.update_trade_status(trade_id, ACCEPTED)
            stale = False
    # raised after the commit so the rejection is kept
    if stale:
        log.warning("trade %s rejected on accept: items no longer owned", trade_id)
        raise Conflict(ITEM_GONE_REASON, {"trade_id": trade_id})
    log.info("trade %s accepted by %s", trade_id, user_id)
    return {**trade, "status": ACCEPTED}


async def cancel_trade(db: Database, user_id: str, trade_id: int) -> Dict[str, Any]:
    async with db.transaction():
        trade = await db.get_trade(trade_id)
        if trade is None or trade["from_user_id"] != user_id or trade["status"] != PENDING:
            raise NotFound("Trade not found or not pending.")
        await db.update_trade_status(trade_id, CANCELLED)
    return {**trade, "status": CANCELLED}


def _party(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "is_verified": user["is_verified"],
        "profile_picture_id": user["data"].get("profile_picture_id"),
    }


async def list_trades(db: Database, user_id: str) -> List[Dict[str, Any]]:
    trades = await db.list_pending_trades(user_id)
    user_ids = {t["from_user_id"] for t in trades} | {t["to_user_id"] for t in trades}
    users = {u["id"]: u for u in await db.get_users(user_ids)}
    image_ids = [i for t in trades for i in t["offered_image_ids"] + t["requested_image_ids"]]
    images = {image["id"]: image for image in await db.get_images(image_ids)}
    result = []
    for trade in trades:
        proposer = users.get(trade["from_user_id"])
        target = users.get(trade["to_user_id"])
        if proposer is None or target is None:
            continue
        result.append(
            {
                **trade,
                "from_user": _party(proposer),
                "to_user": _party(target),
                "offered_images": [images[i] for i in trade["offered_image_ids"] if i in images],
                "requested_images": [
                    images[i] for i in trade["requested_image_ids"] if i in images
                ],
            }
        )
    await db.set_user_counter(user_id, "trade_notifications", 0)
    return result
