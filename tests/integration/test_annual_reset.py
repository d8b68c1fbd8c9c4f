"""Annual reset: archive-once, reset, annual awards, podium notifications, isolation."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from dojoxp.database import get_session_factory
from dojoxp.db.models import LeaderboardHistory, Notification, Season, SeasonReward, StudentAchievement
from dojoxp.gamification.annual_reset import AnnualResetJob
from dojoxp.gamification.season_service import SeasonService
from dojoxp.gamification.xp_ledger import XPLedger
from tests.conftest import make_achievement, make_dojo, make_season, make_student, read_xp

pytestmark = pytest.mark.asyncio

YEAR = 2025


async def _history(db, dojo_id: str, year: int = YEAR) -> list[LeaderboardHistory]:
    result = await db.execute(
        select(LeaderboardHistory)
        .where(LeaderboardHistory.dojo_id == dojo_id, LeaderboardHistory.year == year)
        .order_by(LeaderboardHistory.final_rank)
    )
    return list(result.scalars())


async def _three_students(db, dojo_id: str = "dojo-1", prefix: str = "") -> None:
    await make_dojo(db, dojo_id)
    for i, xp in enumerate([100, 300, 200]):
        await make_student(
            db, f"{prefix}s{i}", dojo_id, joined=i, total_xp=xp,
            current_streak=4, last_activity_date=date(2025, 12, 30),
        )


class TestAnnualReset:
    async def test_archives_ranks_and_resets(self, db_session, config):
        await _three_students(db_session)

        result = await AnnualResetJob(get_session_factory(), config).run(YEAR)

        history = await _history(db_session, "dojo-1")
        assert [(h.user_id, h.final_xp, h.final_rank) for h in history] == [
            ("s1", 300, 1),
            ("s2", 200, 2),
            ("s0", 100, 3),
        ]
        for user_id in ("s0", "s1", "s2"):
            row = await read_xp(db_session, user_id)
            assert (row.total_xp, row.level, row.current_streak, row.longest_streak) == (0, 1, 0, 0)
            assert row.last_activity_date is None

        assert result.year == YEAR
        assert result.total_archived == 3
        assert result.total_reset == 3
        assert [t.user_id for t in result.top_three_by_dojo["dojo-1"]] == ["s1", "s2", "s0"]
        assert result.failed_dojos == []

    async def test_default_year_is_previous(self, db_session, config):
        await _three_students(db_session)

        result = await AnnualResetJob(get_session_factory(), config, today=date(2026, 1, 1)).run()

        assert result.year == 2025
        assert len(await _history(db_session, "dojo-1", 2025)) == 3

    async def test_second_run_is_noop(self, db_session, config):
        await _three_students(db_session)
        job = AnnualResetJob(get_session_factory(), config)
        await job.run(YEAR)

        # XP earned after the reset must survive a re-run
        await XPLedger(db_session, config).grant_xp("s0", 30, date(2026, 1, 2))
        again = await job.run(YEAR)

        assert again.skipped_dojos == ["dojo-1"]
        assert again.total_archived == 0
        assert again.total_reset == 0
        assert len(await _history(db_session, "dojo-1")) == 3
        assert (await read_xp(db_session, "s0")).total_xp == 30

    async def test_excludes_staff_and_students_without_xp(self, db_session, config):
        await _three_students(db_session)
        await make_student(db_session, "sensei", role="sensei", total_xp=9999)
        await make_student(db_session, "newcomer")

        await AnnualResetJob(get_session_factory(), config).run(YEAR)

        history = await _history(db_session, "dojo-1")
        assert {h.user_id for h in history} == {"s0", "s1", "s2"}
        assert (await read_xp(db_session, "sensei")).total_xp == 9999

    async def test_podium_notifications(self, db_session, config):
        await _three_students(db_session)
        await make_student(db_session, "s3", total_xp=50)
        redis = AsyncMock()

        await AnnualResetJob(get_session_factory(), config, redis=redis).run(YEAR)

        result = await db_session.execute(
            select(Notification).where(Notification.type == "annual_ranking").order_by(Notification.id)
        )
        notifications = result.scalars().all()
        assert [n.user_id for n in notifications] == ["s1", "s2", "s0"]
        assert notifications[0].title == "🥇 Annual Ranking 2025"
        assert notifications[0].message == "You finished #1 with 300 XP! Congratulations!"
        assert redis.publish.await_count == 3

    async def test_annual_rank_achievements(self, db_session, config):
        await _three_students(db_session)
        champion = await make_achievement(
            db_session, "champion_2025", "annual_rank", 1, is_annual=True, annual_year=YEAR, rarity="legendary"
        )
        podium = await make_achievement(
            db_session, "podium_2025", "annual_rank", 3, is_annual=True, annual_year=YEAR, rarity="epic"
        )
        await make_achievement(db_session, "champion_2024", "annual_rank", 1, is_annual=True, annual_year=2024)

        await AnnualResetJob(get_session_factory(), config).run(YEAR)

        result = await db_session.execute(select(StudentAchievement.user_id, StudentAchievement.achievement_id))
        unlocks = set(result.all())
        assert unlocks == {
            ("s1", champion.id),
            ("s1", podium.id),
            ("s2", podium.id),
            ("s0", podium.id),
        }

    async def test_failing_dojo_is_isolated(self, db_session, config):
        await _three_students(db_session, "dojo-a", prefix="a")
        await make_dojo(db_session, "dojo-b")
        # Corrupt record: longest streak below current streak
        await make_student(db_session, "broken", "dojo-b", total_xp=500, current_streak=5, longest_streak=1)
        await _three_students(db_session, "dojo-c", prefix="c")

        result = await AnnualResetJob(get_session_factory(), config).run(YEAR)

        assert result.failed_dojos == ["dojo-b"]
        assert result.total_archived == 6
        assert set(result.top_three_by_dojo) == {"dojo-a", "dojo-c"}
        assert await _history(db_session, "dojo-b") == []
        assert (await read_xp(db_session, "broken")).total_xp == 500
        assert (await read_xp(db_session, "cs1")).total_xp == 0

    async def test_closes_active_season(self, db_session, config):
        await _three_students(db_session)
        season = await make_season(db_session, "q4-2025", date(2025, 10, 1), date(2025, 12, 31), active=True)
        next_season = await make_season(db_session, "q1-2026", date(2026, 1, 1), date(2026, 3, 31))

        result = await AnnualResetJob(get_session_factory(), config).run(YEAR)

        assert result.season_results.season == season.name
        assert result.season_results.next_season == next_season.name
        assert result.season_failed is False
        count = await db_session.scalar(select(func.count()).select_from(SeasonReward))
        assert count == 0

    async def test_second_run_leaves_running_season_alone(self, db_session, config):
        await _three_students(db_session)
        await make_season(db_session, "q4-2025", date(2025, 10, 1), date(2025, 12, 31), active=True)
        await make_season(db_session, "q1-2026", date(2026, 1, 1), date(2026, 3, 31))
        await make_season(db_session, "q2-2026", date(2026, 4, 1), date(2026, 6, 30))
        job = AnnualResetJob(get_session_factory(), config)

        first = await job.run(YEAR)
        assert first.season_results.season == "Q4 2025"

        await SeasonService(db_session, config).grant_season_xp("s0", 50, date(2026, 1, 5))
        again = await job.run(YEAR)

        assert again.skipped_dojos == ["dojo-1"]
        assert again.season_results is None
        active = await db_session.scalar(select(Season.slug).where(Season.is_active.is_(True)))
        assert active == "q1-2026"
        rewards = await db_session.scalar(select(func.count()).select_from(SeasonReward))
        assert rewards == 0

    async def test_no_push_for_rolled_back_dojo(self, db_session, config, monkeypatch):
        await _three_students(db_session)
        redis = AsyncMock()
        job = AnnualResetJob(get_session_factory(), config, redis=redis)
        notify_podium = job._notify_podium

        async def _notify_then_fail(*args):
            await notify_podium(*args)
            raise RuntimeError("reset step failed")

        monkeypatch.setattr(job, "_notify_podium", _notify_then_fail)

        result = await job.run(YEAR)

        assert result.failed_dojos == ["dojo-1"]
        redis.publish.assert_not_awaited()
        count = await db_session.scalar(select(func.count()).select_from(Notification))
        assert count == 0
        assert (await read_xp(db_session, "s1")).total_xp == 300
