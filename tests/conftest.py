"""
Shared fixtures for the PictoCat test suite.

Domain tests run against a fresh sqlite file per test; HTTP tests drive the
FastAPI app through ``TestClient`` so the lifespan (schema, migration,
catalog seed) runs exactly as in production.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from pictocat.assistant import PictoAssistant
from pictocat.auth import create_token
from pictocat.db import Database
from pictocat.game_data import GAME_DATA
from pictocat.profile import SCHEMA_VERSION, default_user_data
from pictocat_webapp.app import create_app

SECRET = "test-secret"
ADMIN_SUB = "admin-sub"


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "pictocat-test.db")
    await database.connect()
    await database.init()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def seeded_db(db):
    await db.seed_catalog(GAME_DATA.seed_catalog)
    return db


@pytest.fixture
def make_user(db):
    """Factory inserting a profile with explicit economy state."""

    async def _make_user(
        user_id: str,
        username: Optional[str] = None,
        coins: int = 500,
        unlocked: Optional[List[int]] = None,
        level: int = 1,
        **data: Any,
    ) -> Dict[str, Any]:
        bag = default_user_data()
        bag["coins"] = coins
        bag["unlocked_image_ids"] = list(unlocked or [])
        bag["player_stats"]["level"] = level
        bag["last_mission_reset"] = datetime.now(timezone.utc).isoformat()
        bag.update(data)
        user = {
            "id": user_id,
            "username": username or user_id.replace("-", "_"),
            "email": f"{user_id}@example.com",
            "role": "user",
            "is_verified": False,
            "schema_version": SCHEMA_VERSION,
            "data": bag,
        }
        await db.create_user(user)
        return user

    return _make_user


@pytest_asyncio.fixture
async def friends(db, make_user):
    """Two befriended players, each owning a distinct pair of cats."""
    alice = await make_user("alice", unlocked=[1, 2])
    bob = await make_user("bob", unlocked=[3, 4])
    record = await db.create_friendship("alice", "bob")
    return alice, bob, record


class StubAssistant(PictoAssistant):
    def __init__(self) -> None:
        super().__init__(api_key="")
        self.calls: List[List[Dict[str, str]]] = []

    async def reply(self, history):
        self.calls.append(history)
        return "Miau!"


def auth_headers(sub: str, email: Optional[str] = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_token(sub, email, secret=SECRET)}"}


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
def assistant():
    return StubAssistant()


@pytest.fixture
def client(tmp_path, assistant):
    app = create_app(
        db=Database(tmp_path / "pictocat-api.db"),
        assistant=assistant,
        auth_secret=SECRET,
        admin_subject_id=ADMIN_SUB,
        seed_catalog=True,
    )
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
