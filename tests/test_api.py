"""
HTTP tests driving the FastAPI app end to end.
"""

import pytest

from pictocat import economy


def _profile(client, headers):
    response = client.get("/api/profile", headers=headers)
    assert response.status_code == 200
    return response.json()["profile"]


class TestBasics:
    """Health, authentication and error rendering."""

    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_missing_token(self, client):
        response = client.get("/api/profile")
        assert response.status_code == 401
        assert response.json() == {
            "ok": False,
            "message": "Unauthorized",
            "error": "Unauthenticated",
        }

    def test_bad_token(self, client):
        response = client.get("/api/profile", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_app_built_by_entry_point(self, monkeypatch):
        import uvicorn
        from fastapi import FastAPI

        from pictocat_webapp import app as webapp

        started = {}
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: started.update(app=app, **kwargs))

        webapp.main()

        assert not hasattr(webapp, "app")
        assert isinstance(started["app"], FastAPI)
        assert started["port"] == webapp.PORT

    def test_malformed_body_is_400(self, client, auth):
        response = client.post("/api/shop", json={}, headers=auth("p1"))
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidInput"


class TestProfileRoutes:
    def test_profile_created_on_first_request(self, client, auth):
        profile = _profile(client, auth("p1", "tom@example.com"))

        assert profile["username"] == "tom"
        assert profile["data"]["coins"] == 500

    def test_save_and_rename(self, client, auth):
        headers = auth("p1", "tom@example.com")
        _profile(client, headers)

        saved = client.post("/api/profile", json={"data": {"bio": "Miau"}}, headers=headers)
        renamed = client.put("/api/profile", json={"username": "tomcat"}, headers=headers)

        assert saved.json()["profile"]["data"]["bio"] == "Miau"
        assert renamed.json()["profile"]["username"] == "tomcat"

    def test_coins_not_writable(self, client, auth):
        headers = auth("p1")
        response = client.post("/api/profile", json={"data": {"coins": 10**6}}, headers=headers)
        assert response.status_code == 400


class TestShopRoutes:
    def test_shop_data_is_public(self, client):
        body = client.get("/api/shop", params={"resource": "data"}).json()
        assert [e["id"] for e in body["envelopes"]] == ["bronze", "emotions", "silver", "gold"]

    def test_purchase_flow(self, client, auth):
        headers = auth("p1")

        bought = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "bronze"}, headers=headers
        )

        assert bought.status_code == 200
        assert bought.json()["new_coins"] == 400
        assert len(bought.json()["new_images"]) == 3

    def test_purchase_errors(self, client, auth):
        headers = auth("p1")

        unknown = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "nope"}, headers=headers
        )
        gold = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "gold"}, headers=headers
        )
        broke = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "bronze"}, headers=headers
        )

        assert unknown.status_code == 400
        assert unknown.json()["error"] == "InvalidOffer"
        assert gold.json()["new_coins"] == 0
        assert broke.status_code == 402
        assert broke.json()["details"] == {"required": 67, "current": 0}

    def test_game_results(self, client, auth):
        headers = auth("p1")
        _profile(client, headers)

        response = client.post(
            "/api/game",
            json={"action": "saveResults", "coins_earned": 25, "xp_earned": 10},
            headers=headers,
        )
        negative = client.post(
            "/api/game",
            json={"action": "saveResults", "coins_earned": -1, "xp_earned": 0},
            headers=headers,
        )

        assert response.json()["coins"] == 525
        assert negative.status_code == 400


class TestSocialRoutes:
    """Friends, trades and the feed through HTTP."""

    @pytest.fixture
    def pair(self, client, auth):
        alice, bob = auth("alice", "alice@example.com"), auth("bob", "bob@example.com")
        _profile(client, alice)
        _profile(client, bob)
        sent = client.post(
            "/api/friends", json={"action": "add", "target_user_id": "bob"}, headers=alice
        )
        assert sent.status_code == 200
        accepted = client.put(
            "/api/friends", json={"target_user_id": "alice", "accept": True}, headers=bob
        )
        assert accepted.json()["friendship"] is not None
        return alice, bob

    def test_friends_listing(self, client, pair):
        alice, _ = pair
        body = client.get("/api/friends", headers=alice).json()
        assert [f["username"] for f in body["friends"]] == ["bob"]

    def test_trade_round_trip(self, client, pair, monkeypatch):
        alice, bob = pair
        drawn = iter(range(0, 12, 3))

        def draw_in_order(pool, count, rng=None):
            start = next(drawn)
            return sorted(pool, key=lambda image: image["id"])[start:start + count]

        monkeypatch.setattr(economy, "draw_items", draw_in_order)
        offered = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "bronze"}, headers=alice
        ).json()["new_images"][0]["id"]
        requested = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "bronze"}, headers=bob
        ).json()["new_images"][0]["id"]

        created = client.post(
            "/api/trades",
            json={"to_user_id": "bob", "offered_image_ids": [offered], "requested_image_ids": [requested]},
            headers=alice,
        )
        assert created.status_code == 201
        trade_id = created.json()["trade"]["id"]

        listing = client.get("/api/trades", headers=bob).json()["trades"]
        assert [t["id"] for t in listing] == [trade_id]

        accepted = client.put(
            "/api/trades", json={"trade_id": trade_id, "action": "accept"}, headers=bob
        )
        assert accepted.json()["trade"]["status"] == "accepted"
        bob_profile = _profile(client, bob)
        assert offered in bob_profile["data"]["unlocked_image_ids"]

    def test_trade_with_stranger(self, client, auth):
        alice, carol = auth("alice"), auth("carol")
        _profile(client, alice)
        _profile(client, carol)
        response = client.post(
            "/api/trades",
            json={"to_user_id": "carol", "offered_image_ids": [], "requested_image_ids": [1]},
            headers=alice,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NotFriends"

    def test_friendship_mission_routes(self, client, pair):
        alice, bob = pair
        friendship_id = client.get("/api/friends", headers=alice).json()["friends"][0]["friendship"]["id"]

        started = client.post(
            "/api/friendship",
            json={"action": "startMission", "friendship_id": friendship_id, "mission_id": "send_1_trade"},
            headers=alice,
        )
        again = client.post(
            "/api/friendship",
            json={"action": "startMission", "friendship_id": friendship_id, "mission_id": "send_1_trade"},
            headers=bob,
        )
        early = client.post(
            "/api/friendship",
            json={"action": "claimReward", "friendship_id": friendship_id},
            headers=bob,
        )

        assert started.status_code == 200
        assert again.status_code == 409
        assert early.status_code == 400
        assert early.json()["error"] == "NothingToClaim"

    def test_feed_and_like(self, client, pair):
        alice, bob = pair
        image = client.post(
            "/api/shop", json={"action": "purchaseEnvelope", "envelope_id": "bronze"}, headers=alice
        ).json()["new_images"][0]
        phrase = {
            "id": "custom-1",
            "text": "Hola amigos",
            "selected_image_id": image["id"],
            "is_custom": True,
            "is_public": True,
        }
        client.post("/api/profile", json={"data": {"phrases": [phrase]}}, headers=alice)

        feed = client.get("/api/community", params={"resource": "feed"}, headers=bob).json()["phrases"]
        liked = client.post(
            "/api/friends", json={"action": "like", "public_phrase_id": feed[0]["id"]}, headers=bob
        )

        assert feed[0]["text"] == "Hola amigos"
        assert liked.json()["like_count"] == 1

    def test_community_search_and_profile(self, client, pair):
        found = client.get("/api/community", params={"resource": "search", "query": "al"}).json()
        page = client.get("/api/community", params={"resource": "profile", "username": "bob"})
        missing = client.get("/api/community", params={"resource": "profile", "username": "zed"})

        assert [u["username"] for u in found["users"]] == ["alice"]
        assert page.json()["profile"]["username"] == "bob"
        assert missing.status_code == 404

    def test_remove_friend(self, client, pair):
        alice, _ = pair
        removed = client.delete("/api/friends", params={"target_user_id": "bob"}, headers=alice)
        assert removed.status_code == 200
        assert client.get("/api/friends", headers=alice).json()["friends"] == []


class TestMissionRoutes:
    def test_chat_uses_assistant(self, client, auth, assistant):
        headers = auth("p1")
        response = client.post(
            "/api/missions",
            json={"action": "chat", "history": [{"role": "user", "text": "Hola Picto"}]},
            headers=headers,
        )
        assert response.json() == {"ok": True, "reply": "Miau!"}
        assert assistant.calls == [[{"role": "user", "text": "Hola Picto"}]]

    def test_unclassified_error_is_500(self, client, auth, assistant, monkeypatch):
        async def boom(history):
            raise RuntimeError("assistant exploded")

        monkeypatch.setattr(assistant, "reply", boom)
        response = client.post(
            "/api/missions",
            json={"action": "chat", "history": [{"role": "user", "text": "Hola"}]},
            headers=auth("p1"),
        )

        assert response.status_code == 500
        assert response.json()["message"] == "assistant exploded"

    def test_chat_requires_user_turn_last(self, client, auth):
        response = client.post(
            "/api/missions",
            json={"action": "chat", "history": [{"role": "model", "text": "Hola"}]},
            headers=auth("p1"),
        )
        assert response.status_code == 400

    def test_claim_unfinished_mission(self, client, auth):
        headers = auth("p1")
        mission_id = _profile(client, headers)["data"]["daily_missions"][0]["id"]
        response = client.post(
            "/api/missions", json={"action": "claimReward", "mission_id": mission_id}, headers=headers
        )
        assert response.status_code == 400
