"""XP ledger against a real database: lazy creation, streak bonus, concurrency."""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from dojoxp.config import GamificationConfig
from dojoxp.database import get_session_factory
from dojoxp.db.models import StudentXP
from dojoxp.exceptions import PersistenceError, ValidationError
from dojoxp.gamification.xp_ledger import XPLedger, get_or_create_student_xp
from tests.conftest import make_dojo, make_student, read_xp

pytestmark = pytest.mark.asyncio

TODAY = date(2026, 3, 15)
YESTERDAY = TODAY - timedelta(days=1)


class TestGetOrCreate:
    async def test_creates_zeroed_record(self, db_session):
        await make_dojo(db_session)
        await make_student(db_session, "ana")

        row = await get_or_create_student_xp(db_session, "ana")
        assert row.total_xp == 0
        assert row.level == 1
        assert row.current_streak == 0
        assert row.last_activity_date is None
        assert row.version == 0

    async def test_second_call_returns_same_row(self, db_session):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=120)

        row = await get_or_create_student_xp(db_session, "ana")
        assert row.total_xp == 120
        again = await get_or_create_student_xp(db_session, "ana")
        assert again is row
        count = await db_session.scalar(select(func.count()).select_from(StudentXP))
        assert count == 1


class TestGrantXP:
    async def test_first_grant_initializes_record(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana")

        result = await XPLedger(db_session, config).grant_xp("ana", 25, TODAY)

        assert result.xp_granted == 25
        assert result.multiplier == 1.0
        assert result.new_total == 25
        assert result.current_streak == 1
        row = await read_xp(db_session, "ana")
        assert row.total_xp == 25
        assert row.last_activity_date == TODAY
        assert row.version == 1

    async def test_streak_bonus_scenario(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=0, current_streak=6, last_activity_date=YESTERDAY)

        result = await XPLedger(db_session, config).grant_xp("ana", 10, TODAY)

        assert result.current_streak == 7
        assert result.multiplier == 1.5
        assert result.xp_granted == 15
        assert result.new_total == 15
        assert result.leveled_up is False
        row = await read_xp(db_session, "ana")
        assert (row.total_xp, row.level, row.current_streak, row.longest_streak) == (15, 1, 7, 7)

    async def test_same_day_double_grant(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=0, current_streak=2, last_activity_date=YESTERDAY)
        ledger = XPLedger(db_session, config)

        first = await ledger.grant_xp("ana", 10, TODAY)
        second = await ledger.grant_xp("ana", 10, TODAY)

        assert first.current_streak == second.current_streak == 3
        assert first.multiplier == second.multiplier == 1.25
        assert second.new_total == first.new_total + second.xp_granted

    async def test_level_up(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=290, current_streak=1, last_activity_date=YESTERDAY)

        result = await XPLedger(db_session, config).grant_xp("ana", 10, TODAY)

        assert result.new_total == 300
        assert result.new_level == 3
        assert result.leveled_up is True

    async def test_streak_resets_after_gap(self, db_session, config):
        await make_dojo(db_session)
        await make_student(
            db_session, "ana", total_xp=500, current_streak=9, last_activity_date=TODAY - timedelta(days=5)
        )

        result = await XPLedger(db_session, config).grant_xp("ana", 10, TODAY)

        assert result.current_streak == 1
        assert result.longest_streak == 9
        assert result.xp_granted == 10

    async def test_invalid_amount_touches_nothing(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana")
        ledger = XPLedger(db_session, config)

        with pytest.raises(ValidationError):
            await ledger.grant_xp("ana", -5, TODAY)
        with pytest.raises(ValidationError):
            await ledger.grant_xp("ana", 2.5, TODAY)  # type: ignore[arg-type]

        assert await read_xp(db_session, "ana") is None

    async def test_corrupt_record_is_rejected(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=50, current_streak=5, longest_streak=1)

        with pytest.raises(PersistenceError):
            await XPLedger(db_session, config).grant_xp("ana", 10, TODAY)

        row = await read_xp(db_session, "ana")
        assert row.total_xp == 50


class TestConcurrentGrants:
    async def test_stale_read_is_retried(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=0)
        ledger = XPLedger(db_session, config)
        read_state = ledger._read_state
        raced = False

        async def read_then_race(user_id):
            nonlocal raced
            state = await read_state(user_id)
            if not raced:
                raced = True
                async with get_session_factory()() as other:
                    await XPLedger(other, config).grant_xp(user_id, 40, TODAY)
            return state

        ledger._read_state = read_then_race
        result = await ledger.grant_xp("ana", 10, TODAY)

        # Neither grant is lost
        assert result.new_total == 50
        row = await read_xp(db_session, "ana")
        assert row.total_xp == 50
        assert row.version == 2

    async def test_gives_up_after_max_retries(self, db_session):
        config = GamificationConfig(max_write_retries=2)
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=0)
        ledger = XPLedger(db_session, config)
        read_state = ledger._read_state

        async def always_race(user_id):
            state = await read_state(user_id)
            async with get_session_factory()() as other:
                await XPLedger(other, config).grant_xp(user_id, 40, TODAY)
            return state

        ledger._read_state = always_race
        with pytest.raises(PersistenceError):
            await ledger.grant_xp("ana", 10, TODAY)

        row = await read_xp(db_session, "ana")
        assert row.total_xp == 80


class TestSummary:
    async def test_summary_without_record(self, db_session, config):
        summary = await XPLedger(db_session, config).get_summary("nobody")
        assert summary.total_xp == 0
        assert summary.level == 1
        assert summary.needed_for_next == 100
        assert summary.streak_multiplier == 1.0
        assert await read_xp(db_session, "nobody") is None

    async def test_summary_with_progress(self, db_session, config):
        await make_dojo(db_session)
        await make_student(db_session, "ana", total_xp=150, current_streak=8, last_activity_date=TODAY)

        summary = await XPLedger(db_session, config).get_summary("ana")
        assert summary.level == 2
        assert summary.progress == 50
        assert summary.needed_for_next == 200
        assert summary.progress_percent == 25.0
        assert summary.streak_multiplier == 1.5
