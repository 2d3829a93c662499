from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pictocat import admin, community, economy, friendship, missions, profile, trading
from pictocat.assistant import PictoAssistant, chat
from pictocat.auth import Identity, parse_bearer, verify_token
from pictocat.config import ADMIN_SUBJECT_ID, AUTH_SECRET, HOST, PORT, SEED_CATALOG
from pictocat.db import Database
from pictocat.errors import InvalidInput, PictoCatError
from pictocat.game_data import GAME_DATA
from pictocat.logs import setup_logging

log = logging.getLogger("pictocat.webapp")


class ProfileSaveRequest(BaseModel):
    data: Dict[str, Any]


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = None
    bio: Optional[str] = None


class ShopRequest(BaseModel):
    action: str
    envelope_id: Optional[str] = None
    upgrade_id: Optional[str] = None


class FriendsActionRequest(BaseModel):
    action: str
    target_user_id: Optional[str] = None
    public_phrase_id: Optional[int] = None


class FriendRespondRequest(BaseModel):
    target_user_id: str
    accept: bool


class FriendshipRequest(BaseModel):
    action: str
    friendship_id: int
    mission_id: Optional[str] = None


class TradeCreateRequest(BaseModel):
    to_user_id: str
    offered_image_ids: List[int] = []
    requested_image_ids: List[int] = []


class TradeRespondRequest(BaseModel):
    trade_id: int
    action: str


class MissionsRequest(BaseModel):
    action: str
    mission_id: Optional[str] = None
    history: Optional[List[Dict[str, Any]]] = None


class GameRequest(BaseModel):
    action: str
    coins_earned: int = 0
    xp_earned: int = 0


class AdminCreateRequest(BaseModel):
    resource: str
    data: Dict[str, Any]


class AdminUpdateRequest(BaseModel):
    resource: str
    id: Optional[str] = None
    data: Dict[str, Any]


def _require(value: Any, name: str) -> Any:
    if value is None or value == "":
        raise InvalidInput(f"{name} is required.")
    return value


def _int_id(value: Any, name: str) -> int:
    try:
        return int(_require(value, name))
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be an integer.") from None


def create_app(
    db: Optional[Database] = None,
    assistant: Optional[PictoAssistant] = None,
    auth_secret: str = AUTH_SECRET,
    admin_subject_id: str = ADMIN_SUBJECT_ID,
    seed_catalog: bool = SEED_CATALOG,
) -> FastAPI:
    db = db or Database()
    assistant = assistant or PictoAssistant()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging()
        await db.connect()
        await db.init()
        await profile.migrate_all(db)
        if seed_catalog:
            created = await db.seed_catalog(GAME_DATA.seed_catalog)
            if any(created.values()):
                log.info("seeded catalog: %s", created)
        try:
            yield
        finally:
            await db.close()

    app = FastAPI(title="PictoCat API", lifespan=lifespan)
    app.state.db = db
    app.state.assistant = assistant

    @app.exception_handler(PictoCatError)
    async def domain_error(request: Request, exc: PictoCatError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        content = InvalidInput(
            "Invalid request body.", {"errors": jsonable_encoder(exc.errors())}
        ).to_dict()
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.exception("%s %s crashed", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "message": str(exc) or "Internal error.", "error": "InternalError"},
        )

    def _identity(request: Request) -> Identity:
        token = parse_bearer(request.headers.get("authorization"))
        return verify_token(token, auth_secret)

    def _viewer_id(request: Request) -> Optional[str]:
        if not request.headers.get("authorization"):
            return None
        return _identity(request).sub

    async def _current_user(request: Request) -> Dict[str, Any]:
        return await profile.get_or_create_profile(db, _identity(request), admin_subject_id)

    async def _admin_user(request: Request) -> Dict[str, Any]:
        return admin.require_admin(await _current_user(request))

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    # -- profile --------------------------------------------------------

    @app.get("/api/profile")
    async def profile_get(request: Request) -> Dict[str, Any]:
        user = await _current_user(request)
        return {"ok": True, "profile": profile.to_public_profile(user)}

    @app.post("/api/profile")
    async def profile_save(request: Request, payload: ProfileSaveRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        user = await profile.save_user_data(db, user["id"], payload.data)
        return {"ok": True, "profile": profile.to_public_profile(user)}

    @app.put("/api/profile")
    async def profile_update(request: Request, payload: ProfileUpdateRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        user = await profile.update_profile(db, user["id"], payload.username, payload.bio)
        return {"ok": True, "profile": profile.to_public_profile(user)}

    # -- shop and game --------------------------------------------------

    @app.get("/api/shop")
    async def shop_get(resource: str = "data") -> Dict[str, Any]:
        if resource != "data":
            raise InvalidInput("Unknown resource.")
        return {"ok": True, **await economy.shop_data(db)}

    @app.post("/api/shop")
    async def shop_post(request: Request, payload: ShopRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        if payload.action == "purchaseEnvelope":
            envelope_id = _require(payload.envelope_id, "envelope_id")
            result = await economy.purchase_envelope(db, user["id"], envelope_id)
        elif payload.action == "purchaseUpgrade":
            upgrade_id = _require(payload.upgrade_id, "upgrade_id")
            result = await economy.purchase_upgrade(db, user["id"], upgrade_id)
        else:
            raise InvalidInput("Unknown action.")
        return {"ok": True, **result}

    @app.post("/api/game")
    async def game_post(request: Request, payload: GameRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        if payload.action != "saveResults":
            raise InvalidInput("Unknown action.")
        result = await economy.save_game_results(
            db, user["id"], payload.coins_earned, payload.xp_earned
        )
        return {"ok": True, **result}

    # -- community ------------------------------------------------------

    @app.get("/api/community")
    async def community_get(
        request: Request,
        resource: str,
        username: Optional[str] = None,
        query: Optional[str] = None,
    ) -> Dict[str, Any]:
        viewer_id = _viewer_id(request)
        if resource == "catalog":
            return {"ok": True, "images": await community.get_catalog(db)}
        if resource == "feed":
            return {"ok": True, "phrases": await community.get_feed(db, viewer_id)}
        if resource == "profile":
            user = await community.get_public_profile(db, username or "", viewer_id)
            return {"ok": True, "profile": user}
        if resource == "search":
            return {"ok": True, "users": await community.search_users(db, query or "")}
        raise InvalidInput("Unknown resource.")

    # -- friends --------------------------------------------------------

    @app.get("/api/friends")
    async def friends_get(request: Request) -> Dict[str, Any]:
        user = await _current_user(request)
        return {"ok": True, **await friendship.list_friends(db, user["id"])}

    @app.post("/api/friends")
    async def friends_post(request: Request, payload: FriendsActionRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        if payload.action == "add":
            target_id = _require(payload.target_user_id, "target_user_id")
            await friendship.send_request(db, user["id"], target_id)
            return {"ok": True, "message": "Friend request sent."}
        if payload.action == "like":
            phrase_id = _int_id(payload.public_phrase_id, "public_phrase_id")
            return {"ok": True, **await community.toggle_like(db, user["id"], phrase_id)}
        raise InvalidInput("Unknown action.")

    @app.put("/api/friends")
    async def friends_put(request: Request, payload: FriendRespondRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        created = await friendship.respond_request(
            db, user["id"], payload.target_user_id, payload.accept
        )
        return {"ok": True, "friendship": created}

    @app.delete("/api/friends")
    async def friends_delete(request: Request, target_user_id: str) -> Dict[str, Any]:
        user = await _current_user(request)
        await friendship.remove_friend(db, user["id"], target_user_id)
        return {"ok": True, "message": "Friend removed."}

    @app.get("/api/friendship")
    async def friendship_get() -> Dict[str, Any]:
        return {"ok": True, "missions": GAME_DATA.list_friendship_missions()}

    @app.post("/api/friendship")
    async def friendship_post(request: Request, payload: FriendshipRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        if payload.action == "startMission":
            mission_id = _require(payload.mission_id, "mission_id")
            record = await friendship.start_mission(
                db, user["id"], payload.friendship_id, mission_id
            )
            return {"ok": True, "friendship": record}
        if payload.action == "claimReward":
            result = await friendship.claim_reward(db, user["id"], payload.friendship_id)
            return {"ok": True, **result}
        raise InvalidInput("Unknown action.")

    # -- trades ---------------------------------------------------------

    @app.get("/api/trades")
    async def trades_get(request: Request) -> Dict[str, Any]:
        user = await _current_user(request)
        return {"ok": True, "trades": await trading.list_trades(db, user["id"])}

    @app.post("/api/trades", status_code=201)
    async def trades_post(request: Request, payload: TradeCreateRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        trade = await trading.create_trade(
            db,
            user["id"],
            payload.to_user_id,
            payload.offered_image_ids,
            payload.requested_image_ids,
        )
        return {"ok": True, "trade": trade}

    @app.put("/api/trades")
    async def trades_put(request: Request, payload: TradeRespondRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        trade = await trading.respond_trade(db, user["id"], payload.trade_id, payload.action)
        return {"ok": True, "trade": trade}

    @app.delete("/api/trades")
    async def trades_delete(request: Request, trade_id: int) -> Dict[str, Any]:
        user = await _current_user(request)
        trade = await trading.cancel_trade(db, user["id"], trade_id)
        return {"ok": True, "trade": trade}

    # -- missions -------------------------------------------------------

    @app.post("/api/missions")
    async def missions_post(request: Request, payload: MissionsRequest) -> Dict[str, Any]:
        user = await _current_user(request)
        if payload.action == "claimReward":
            mission_id = _require(payload.mission_id, "mission_id")
            user = await missions.claim_mission(db, user["id"], mission_id)
            return {"ok": True, "profile": profile.to_public_profile(user)}
        if payload.action == "chat":
            reply = await chat(db, assistant, user["id"], payload.history)
            return {"ok": True, "reply": reply}
        raise InvalidInput("Unknown action.")

    # -- admin ----------------------------------------------------------

    @app.get("/api/admin")
    async def admin_get(
        request: Request, resource: str = "overview", status: Optional[str] = None
    ) -> Dict[str, Any]:
        await _admin_user(request)
        if resource == "overview":
            return {"ok": True, **await admin.overview(db)}
        if resource == "users":
            return {"ok": True, "users": await admin.list_users(db)}
        if resource == "phrases":
            return {"ok": True, "phrases": await admin.list_phrases(db)}
        if resource == "images":
            return {"ok": True, "images": await community.get_catalog(db)}
        if resource == "envelopes":
            return {"ok": True, "envelopes": await db.list_envelopes()}
        if resource == "upgrades":
            return {"ok": True, "upgrades": await db.list_upgrades()}
        if resource == "trades":
            return {"ok": True, "trades": await admin.list_trades(db, status)}
        if resource == "settings":
            return {"ok": True, "settings": await admin.get_settings(db)}
        raise InvalidInput("Unknown resource.")

    @app.post("/api/admin")
    async def admin_post(request: Request, payload: AdminCreateRequest) -> Dict[str, Any]:
        await _admin_user(request)
        data = payload.data
        if payload.resource == "images":
            image = await admin.create_image(
                db,
                str(_require(data.get("url"), "url")),
                str(data.get("theme", "")),
                str(data.get("rarity", "common")),
                bool(data.get("is_shiny")),
            )
            return {"ok": True, "image": image}
        if payload.resource == "envelopes":
            return {"ok": True, "envelope": await admin.upsert_envelope(db, data)}
        if payload.resource == "upgrades":
            return {"ok": True, "upgrade": await admin.upsert_upgrade(db, data)}
        raise InvalidInput("Unknown resource.")

    @app.put("/api/admin")
    async def admin_put(request: Request, payload: AdminUpdateRequest) -> Dict[str, Any]:
        await _admin_user(request)
        data = payload.data
        if payload.resource == "users":
            user_id = _require(payload.id, "id")
            if "is_verified" in data:
                await admin.set_verified(db, user_id, data["is_verified"])
            if "role" in data:
                await admin.set_role(db, user_id, str(data["role"]))
            return {"ok": True, "message": "User updated."}
        if payload.resource == "images":
            image = await admin.update_image(
                db,
                _int_id(payload.id, "id"),
                url=data.get("url"),
                theme=data.get("theme"),
                rarity=data.get("rarity"),
                is_shiny=data.get("is_shiny"),
            )
            return {"ok": True, "image": image}
        if payload.resource == "settings":
            return {"ok": True, "settings": await admin.update_settings(db, data)}
        raise InvalidInput("Unknown resource.")

    @app.delete("/api/admin")
    async def admin_delete(request: Request, resource: str, id: str) -> Dict[str, Any]:
        await _admin_user(request)
        if resource == "phrases":
            await admin.censor_phrase(db, _int_id(id, "id"))
        elif resource == "images":
            await admin.delete_image(db, _int_id(id, "id"))
        elif resource == "envelopes":
            await admin.delete_envelope(db, id)
        elif resource == "upgrades":
            await admin.delete_upgrade(db, id)
        elif resource == "trades":
            await admin.cancel_trade(db, _int_id(id, "id"))
        else:
            raise InvalidInput("Unknown resource.")
        return {"ok": True, "message": "Deleted."}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host=HOST, port=PORT)


if __name__ == "__main__":
    main()
