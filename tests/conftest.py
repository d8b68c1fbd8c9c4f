"""Shared test fixtures.

Tests run against a throwaway SQLite file through aiosqlite: the
gamification code only relies on ON CONFLICT inserts and conditional
UPDATEs, which both dialects support. A file (rather than :memory:)
gives every session its own connection, like PostgreSQL does.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from dojoxp.config import GamificationConfig
from dojoxp.database import close_db, get_engine, get_session_factory, init_db
from dojoxp.db.base import Base
from dojoxp.db.models import AchievementDefinition, Dojo, Profile, Season, StudentXP

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database with all tables, registered as the app's engine."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'dojoxp.db'}")
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await close_db()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def config() -> GamificationConfig:
    return GamificationConfig()


# ── Factories ──


async def make_dojo(db: AsyncSession, dojo_id: str = "dojo-1", name: str = "Shinkai Dojo") -> Dojo:
    dojo = Dojo(id=dojo_id, name=name)
    db.add(dojo)
    await db.commit()
    return dojo


async def make_student(
    db: AsyncSession,
    user_id: str,
    dojo_id: str | None = "dojo-1",
    *,
    name: str | None = None,
    role: str = "student",
    status: str = "approved",
    joined: int = 0,
    total_xp: int | None = None,
    current_streak: int = 0,
    longest_streak: int | None = None,
    last_activity_date: date | None = None,
) -> Profile:
    """Create a profile, plus a StudentXP row when ``total_xp`` is given.

    ``joined`` offsets created_at in minutes so tie-break order is explicit.
    """
    profile = Profile(
        user_id=user_id,
        dojo_id=dojo_id,
        name=name or user_id.title(),
        role=role,
        registration_status=status,
        created_at=BASE_TIME + timedelta(minutes=joined),
    )
    db.add(profile)
    if total_xp is not None:
        db.add(StudentXP(
            user_id=user_id,
            total_xp=total_xp,
            level=_level(total_xp),
            current_streak=current_streak,
            longest_streak=current_streak if longest_streak is None else longest_streak,
            last_activity_date=last_activity_date,
        ))
    await db.commit()
    return profile


def _level(total_xp: int) -> int:
    from dojoxp.gamification.level_curve import level_for

    return level_for(total_xp)


async def make_achievement(
    db: AsyncSession,
    slug: str,
    criteria_type: str,
    criteria_value: int,
    *,
    rarity: str = "common",
    xp_reward: int = 10,
    is_annual: bool = False,
    annual_year: int | None = None,
) -> AchievementDefinition:
    achievement = AchievementDefinition(
        slug=slug,
        name=slug.replace("_", " ").title(),
        description=f"Test achievement {slug}",
        category="test",
        criteria_type=criteria_type,
        criteria_value=criteria_value,
        xp_reward=xp_reward,
        rarity=rarity,
        is_annual=is_annual,
        annual_year=annual_year,
    )
    db.add(achievement)
    await db.commit()
    return achievement


async def make_season(
    db: AsyncSession,
    slug: str,
    start: date,
    end: date,
    *,
    active: bool = False,
    xp_multiplier: float = 1.0,
    title_reward: str | None = None,
    border_style: str | None = None,
) -> Season:
    season = Season(
        name=slug.replace("-", " ").title(),
        slug=slug,
        theme="dragon",
        year=start.year,
        quarter=(start.month - 1) // 3 + 1,
        start_date=start,
        end_date=end,
        is_active=active,
        xp_multiplier=xp_multiplier,
        title_reward=title_reward,
        border_style=border_style,
    )
    db.add(season)
    await db.commit()
    return season


async def read_xp(db: AsyncSession, user_id: str) -> StudentXP | None:
    """Re-read a StudentXP row, bypassing the identity map."""
    result = await db.execute(
        select(StudentXP)
        .where(StudentXP.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
