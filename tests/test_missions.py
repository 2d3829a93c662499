"""
Tests for the daily mission tracker.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from pictocat import missions
from pictocat.errors import NothingToClaim
from pictocat.game_data import GAME_DATA

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


def _mission(mission_id, progress=0, is_claimed=False):
    template = GAME_DATA.get_daily_mission(mission_id)
    return {**template, "progress": progress, "is_claimed": is_claimed}


class TestReset:
    """UTC day rollover."""

    def test_never_reset(self):
        assert missions.needs_reset(None, NOW)
        assert missions.needs_reset("1970-01-01T00:00:00+00:00", NOW)

    def test_same_day(self):
        assert not missions.needs_reset("2026-03-14T00:00:01+00:00", NOW)

    def test_previous_day(self):
        assert missions.needs_reset("2026-03-13T23:59:59+00:00", NOW)

    def test_naive_timestamp_is_utc(self):
        assert not missions.needs_reset("2026-03-14T08:00:00", NOW)

    def test_roll_draws_distinct_templates(self):
        rolled = missions.roll_daily_missions(GAME_DATA.daily_missions, 3, random.Random(1))
        assert len({m["id"] for m in rolled}) == 3
        assert all(m["progress"] == 0 and m["is_claimed"] is False for m in rolled)


class TestApplyActivity:
    """Progress bookkeeping on mission instances."""

    def test_progress_clamped_at_goal(self):
        daily = [_mission("play_3_games")]
        assert missions.apply_activity(daily, "PLAY_ANY_GAME", 100)
        assert daily[0]["progress"] == 3

    def test_only_matching_type(self):
        daily = [_mission("play_1_game"), _mission("open_1_envelope")]
        missions.apply_activity(daily, "OPEN_ENVELOPE", 1)
        assert [m["progress"] for m in daily] == [0, 1]

    def test_claimed_missions_do_not_move(self):
        daily = [_mission("play_1_game", progress=1, is_claimed=True)]
        assert not missions.apply_activity(daily, "PLAY_ANY_GAME", 1)


@pytest.mark.asyncio
class TestDailyMissions:
    """Lazy reset, activity recording and claims against the store."""

    async def test_reset_happens_once_per_day(self, db, make_user):
        user = await make_user("p1", last_mission_reset="2026-03-13T10:00:00+00:00")

        first = await missions.ensure_daily_missions(db, user, now=NOW)
        second = await missions.ensure_daily_missions(db, first, now=NOW + timedelta(hours=2))

        assert len(first["data"]["daily_missions"]) == 3
        assert second["data"]["daily_missions"] == first["data"]["daily_missions"]
        stored = await db.get_user("p1")
        assert stored["data"]["last_mission_reset"] == NOW.isoformat()

    async def test_next_day_rolls_fresh_missions(self, db, make_user):
        user = await make_user(
            "p1",
            daily_missions=[_mission("play_1_game", progress=1, is_claimed=True)],
            last_mission_reset=NOW.isoformat(),
        )

        rolled = await missions.ensure_daily_missions(db, user, now=NOW + timedelta(days=1))

        assert all(not m["is_claimed"] for m in rolled["data"]["daily_missions"])

    async def test_mission_count_follows_settings(self, db, make_user):
        await db.update_settings(daily_mission_count=2)
        user = await make_user("p1", last_mission_reset="2026-03-13T10:00:00+00:00")

        rolled = await missions.ensure_daily_missions(db, user, now=NOW)

        assert len(rolled["data"]["daily_missions"]) == 2

    async def test_record_and_claim(self, db, make_user):
        await make_user("p1", coins=100, daily_missions=[_mission("play_3_games")])

        await missions.record_activity(db, "p1", "PLAY_ANY_GAME", 2)
        with pytest.raises(NothingToClaim):
            await missions.claim_mission(db, "p1", "play_3_games")
        await missions.record_activity(db, "p1", "PLAY_ANY_GAME", 5)

        user = await missions.claim_mission(db, "p1", "play_3_games")

        assert user["data"]["coins"] == 250
        assert user["data"]["player_stats"]["xp"] == 75
        assert user["data"]["daily_missions"][0]["progress"] == 3
        assert user["data"]["daily_missions"][0]["is_claimed"] is True

    async def test_claim_twice(self, db, make_user):
        await make_user("p1", daily_missions=[_mission("chat_with_picto", progress=1)])
        await missions.claim_mission(db, "p1", "chat_with_picto")
        with pytest.raises(NothingToClaim):
            await missions.claim_mission(db, "p1", "chat_with_picto")

    async def test_claim_unknown_mission(self, db, make_user):
        await make_user("p1")
        with pytest.raises(NothingToClaim):
            await missions.claim_mission(db, "p1", "fly_to_the_moon")
