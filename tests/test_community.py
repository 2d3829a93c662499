"""
Tests for the public phrase feed, likes, public profiles and user search.
"""

import pytest

from pictocat import community
from pictocat.errors import NotFound


def _phrase(phrase_id, image_id, is_public=True, is_custom=True):
    return {
        "id": phrase_id,
        "text": f"frase {phrase_id}",
        "selected_image_id": image_id,
        "is_custom": is_custom,
        "is_public": is_public,
    }


@pytest.mark.asyncio
class TestSync:
    """Mirroring owned phrases into the feed."""

    async def test_only_public_custom_phrases_are_published(self, seeded_db, make_user):
        user = await make_user("alice")
        phrases = [
            _phrase("a", 1),
            _phrase("b", 2, is_public=False),
            _phrase("c", 3, is_custom=False),
            _phrase("d", 999),
        ]

        published = await community.sync_public_phrases(seeded_db, user, phrases)

        assert published == 1
        feed = await community.get_feed(seeded_db, None)
        assert [p["phrase_id"] for p in feed] == ["a"]
        assert feed[0]["username"] == "alice"
        assert feed[0]["image_url"].endswith("happy-1.png")

    async def test_unpublishing_removes_from_feed(self, seeded_db, make_user):
        user = await make_user("alice")
        await community.sync_public_phrases(seeded_db, user, [_phrase("a", 1)])

        await community.sync_public_phrases(seeded_db, user, [_phrase("a", 1, is_public=False)])

        assert await community.get_feed(seeded_db, None) == []

    async def test_feed_is_newest_first_and_limited(self, seeded_db, make_user):
        user = await make_user("alice")
        await community.sync_public_phrases(
            seeded_db, user, [_phrase(str(i), 1) for i in range(5)]
        )

        feed = await community.get_feed(seeded_db, None, limit=3)

        assert [p["phrase_id"] for p in feed] == ["4", "3", "2"]


@pytest.mark.asyncio
class TestLikes:
    """Like toggling and its mission side effects."""

    async def _publish(self, db, user):
        await community.sync_public_phrases(db, user, [_phrase("a", 1)])
        feed = await community.get_feed(db, None)
        return feed[0]["id"]

    async def test_double_toggle_restores_state(self, seeded_db, friends):
        phrase_id = await self._publish(seeded_db, friends[0])

        liked = await community.toggle_like(seeded_db, "bob", phrase_id)
        assert liked == {"liked": True, "like_count": 1}
        feed = await community.get_feed(seeded_db, "bob")
        assert feed[0]["is_liked_by_me"] is True

        unliked = await community.toggle_like(seeded_db, "bob", phrase_id)
        assert unliked == {"liked": False, "like_count": 0}
        feed = await community.get_feed(seeded_db, "bob")
        assert feed[0]["is_liked_by_me"] is False

    async def test_like_progresses_friendship_mission(self, seeded_db, friends):
        mission = {"mission_id": "like_5_phrases", "progress": 0, "goal": 5, "is_completed": False}
        await seeded_db.update_friendship(friends[2]["id"], 1, 0, mission)
        phrase_id = await self._publish(seeded_db, friends[0])

        await community.toggle_like(seeded_db, "bob", phrase_id)

        record = await seeded_db.get_friendship(friends[2]["id"])
        assert record["active_mission"]["progress"] == 1

    async def test_unknown_phrase(self, seeded_db, friends):
        with pytest.raises(NotFound):
            await community.toggle_like(seeded_db, "bob", 404)


@pytest.mark.asyncio
class TestProfilesAndSearch:
    """Public profile pages and the user search box."""

    async def test_public_profile(self, seeded_db, make_user):
        user = await make_user("alice", unlocked=[1, 2], bio="miau")
        await community.sync_public_phrases(seeded_db, user, [_phrase("a", 2)])

        page = await community.get_public_profile(seeded_db, "alice")

        assert page["bio"] == "miau"
        assert [i["id"] for i in page["unlocked_images"]] == [1, 2]
        assert len(page["public_phrases"]) == 1

    async def test_public_profile_unknown(self, seeded_db):
        with pytest.raises(NotFound):
            await community.get_public_profile(seeded_db, "nobody")

    async def test_search_prefix_case_insensitive(self, db, make_user):
        await make_user("u1", username="CatLover")
        await make_user("u2", username="catnap")
        await make_user("u3", username="dog_person")

        found = await community.search_users(db, "cat")

        assert [u["username"] for u in found] == ["CatLover", "catnap"]

    async def test_short_query_returns_nothing(self, db, make_user):
        await make_user("u1", username="catnap")
        assert await community.search_users(db, "c") == []

    async def test_underscore_is_literal(self, db, make_user):
        await make_user("u1", username="dog_person")
        await make_user("u2", username="dogXperson")
        found = await community.search_users(db, "dog_")
        assert [u["username"] for u in found] == ["dog_person"]
