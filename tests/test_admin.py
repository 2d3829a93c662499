"""
Tests for the admin console, both the domain functions and the HTTP routes.
"""

import pytest

from pictocat import admin, community
from pictocat.errors import Forbidden, InvalidInput, NotFound


class TestRequireAdmin:
    def test_roles(self):
        assert admin.require_admin({"role": "admin"})["role"] == "admin"
        for user in (None, {"role": "user"}, {"role": "mod"}):
            with pytest.raises(Forbidden):
                admin.require_admin(user)


@pytest.mark.asyncio
class TestConsole:
    """Domain-level admin operations."""

    async def test_verify_updates_phrase_snapshot(self, seeded_db, make_user):
        user = await make_user("p1")
        await community.sync_public_phrases(
            seeded_db,
            user,
            [{"id": "a", "text": "hola", "selected_image_id": 1, "is_custom": True, "is_public": True}],
        )

        await admin.set_verified(seeded_db, "p1", True)

        feed = await community.get_feed(seeded_db, None)
        assert feed[0]["is_user_verified"] is True
        assert (await seeded_db.get_user("p1"))["is_verified"] is True

    async def test_verify_needs_real_boolean(self, db, make_user):
        await make_user("p1")
        with pytest.raises(InvalidInput):
            await admin.set_verified(db, "p1", "false")
        assert (await db.get_user("p1"))["is_verified"] is False

    async def test_censor_flips_owner_phrase(self, seeded_db, make_user):
        phrase = {"id": "a", "text": "feo", "selected_image_id": 1, "is_custom": True, "is_public": True}
        user = await make_user("p1", phrases=[phrase])
        await community.sync_public_phrases(seeded_db, user, [phrase])
        public_id = (await community.get_feed(seeded_db, None))[0]["id"]

        await admin.censor_phrase(seeded_db, public_id)

        assert await community.get_feed(seeded_db, None) == []
        owner = await seeded_db.get_user("p1")
        assert owner["data"]["phrases"][0]["is_public"] is False

    async def test_image_lifecycle(self, seeded_db):
        image = await admin.create_image(seeded_db, "https://cdn/x.png", "Nuevos", "epic")
        assert image["id"] == 13

        updated = await admin.update_image(seeded_db, 13, is_shiny=True)
        assert updated["is_shiny"] is True

        await admin.delete_image(seeded_db, 13)
        with pytest.raises(NotFound):
            await admin.delete_image(seeded_db, 13)

    async def test_bad_rarity(self, seeded_db):
        with pytest.raises(InvalidInput):
            await admin.create_image(seeded_db, "https://cdn/x.png", "Nuevos", "legendary")

    async def test_envelope_upsert(self, seeded_db):
        saved = await admin.upsert_envelope(
            seeded_db,
            {"id": "bronze", "name": "Bronce", "base_cost": 80, "image_count": 3},
        )
        assert saved["base_cost"] == 80
        with pytest.raises(InvalidInput):
            await admin.upsert_envelope(seeded_db, {"id": "x", "name": "X"})

    async def test_cancel_pending_trade(self, seeded_db, friends):
        trade_id = await seeded_db.create_trade("alice", "bob", [1], [3])

        await admin.cancel_trade(seeded_db, trade_id)

        assert (await seeded_db.get_trade(trade_id))["status"] == "cancelled"
        assert await admin.list_trades(seeded_db, "pending") == []

    async def test_settings(self, db):
        settings = await admin.update_settings(db, {"feed_limit": "5", "friend_bonus_cap_pct": 9})
        assert settings["feed_limit"] == 5
        assert settings["friend_bonus_cap_pct"] == 9.0
        with pytest.raises(InvalidInput):
            await admin.update_settings(db, {"free_money": 1})
        with pytest.raises(InvalidInput):
            await admin.update_settings(db, {"feed_limit": "lots"})


class TestAdminRoutes:
    """The admin HTTP surface."""

    def test_non_admin_refused(self, client, auth):
        response = client.get("/api/admin", headers=auth("p1"))
        assert response.status_code == 403

    def test_admin_overview_and_settings(self, client, auth):
        headers = auth("admin-sub", "boss@example.com")

        overview = client.get("/api/admin", headers=headers)
        updated = client.put(
            "/api/admin",
            json={"resource": "settings", "data": {"daily_mission_count": 2}},
            headers=headers,
        )

        assert overview.status_code == 200
        assert len(overview.json()["images"]) == 12
        assert updated.json()["settings"]["daily_mission_count"] == 2

    def test_admin_verifies_user(self, client, auth):
        client.get("/api/profile", headers=auth("p1", "paws@example.com"))
        headers = auth("admin-sub")

        client.put(
            "/api/admin",
            json={"resource": "users", "id": "p1", "data": {"is_verified": True, "role": "mod"}},
            headers=headers,
        )
        users = client.get("/api/admin", params={"resource": "users"}, headers=headers).json()["users"]

        target = next(u for u in users if u["id"] == "p1")
        assert target["is_verified"] is True
        assert target["role"] == "mod"

    def test_verified_flag_as_string_refused(self, client, auth):
        client.get("/api/profile", headers=auth("p1", "paws@example.com"))

        response = client.put(
            "/api/admin",
            json={"resource": "users", "id": "p1", "data": {"is_verified": "false"}},
            headers=auth("admin-sub"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidInput"

    def test_admin_creates_and_deletes_image(self, client, auth):
        headers = auth("admin-sub")

        created = client.post(
            "/api/admin",
            json={"resource": "images", "data": {"url": "https://cdn/new.png", "theme": "Nuevos"}},
            headers=headers,
        )
        image_id = created.json()["image"]["id"]
        deleted = client.delete(
            "/api/admin", params={"resource": "images", "id": image_id}, headers=headers
        )

        assert deleted.status_code == 200
        catalog = client.get("/api/community", params={"resource": "catalog"}).json()["images"]
        assert image_id not in [i["id"] for i in catalog]
