"""Gamification API endpoints.

Thin handlers: each opens a session, calls one gamification operation
and returns its typed result. Errors are mapped in middleware.error_handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.config import GamificationConfig
from dojoxp.database import get_session, get_session_factory
from dojoxp.dependencies import get_config, get_redis_dep, require_service_key
from dojoxp.gamification.achievement_service import AchievementUnlocker
from dojoxp.gamification.annual_reset import AnnualResetJob
from dojoxp.gamification.leaderboard_service import LeaderboardAggregator
from dojoxp.gamification.schemas import (
    AchievementDefinitionSchema,
    AchievementStats,
    ActiveSeasonResponse,
    AnnualResetRequest,
    AnnualResetResult,
    GrantResult,
    GrantXPRequest,
    LeaderboardHistoryEntry,
    LeaderboardView,
    SeasonGrantResult,
    StudentAchievementsResponse,
    XPSummary,
)
from dojoxp.gamification.season_service import SeasonService, days_remaining
from dojoxp.gamification.streak_tracker import today_in
from dojoxp.gamification.xp_ledger import XPLedger
from dojoxp.notifications import NotificationService

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


# ── XP ──


@router.post("/students/{user_id}/xp", response_model=GrantResult)
async def grant_xp(
    user_id: str,
    body: GrantXPRequest,
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    """Apply one XP-granting activity to a student."""
    ledger = XPLedger(db, config)
    return await ledger.grant_xp(user_id, body.base_amount, body.activity_date)


@router.get("/students/{user_id}/xp", response_model=XPSummary)
async def get_xp(
    user_id: str,
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    """Current XP, level progress and streak multiplier."""
    return await XPLedger(db, config).get_summary(user_id)


# ── Achievements ──


@router.post(
    "/students/{user_id}/achievements/check",
    response_model=list[AchievementDefinitionSchema],
)
async def check_achievements(
    user_id: str,
    stats: AchievementStats,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Unlock achievements the given stats satisfy; returns only the new ones."""
    unlocker = AchievementUnlocker(db, NotificationService(db, redis))
    return await unlocker.check_and_unlock(user_id, stats)


@router.get("/students/{user_id}/achievements", response_model=StudentAchievementsResponse)
async def list_achievements(
    user_id: str,
    db: AsyncSession = Depends(get_session),
):
    unlocker = AchievementUnlocker(db)
    return StudentAchievementsResponse(
        unlocked=await unlocker.list_unlocked(user_id),
        progress=await unlocker.progress(user_id),
    )


# ── Leaderboard ──


@router.get("/dojos/{dojo_id}/leaderboard", response_model=LeaderboardView)
async def get_leaderboard(
    dojo_id: str,
    user_id: str | None = Query(None, description="Highlight this student's position"),
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    return await LeaderboardAggregator(db, config).leaderboard_view(dojo_id, user_id)


@router.get(
    "/dojos/{dojo_id}/leaderboard/history",
    response_model=list[LeaderboardHistoryEntry],
)
async def get_leaderboard_history(
    dojo_id: str,
    year: int | None = Query(None),
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    """Archived yearly standings for a dojo."""
    return await LeaderboardAggregator(db, config).get_history(dojo_id, year)


# ── Seasons ──


@router.get("/seasons/active", response_model=ActiveSeasonResponse)
async def get_active_season(
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    season = await SeasonService(db, config).get_active_season()
    if season is None:
        return ActiveSeasonResponse()
    return ActiveSeasonResponse(
        season=season,
        days_remaining=days_remaining(season, today_in(config.activity_timezone)),
    )


@router.post("/students/{user_id}/season-xp", response_model=SeasonGrantResult)
async def grant_season_xp(
    user_id: str,
    body: GrantXPRequest,
    db: AsyncSession = Depends(get_session),
    config: GamificationConfig = Depends(get_config),
):
    """Credit season XP; 404 when no season is running."""
    result = await SeasonService(db, config).grant_season_xp(user_id, body.base_amount, body.activity_date)
    if result is None:
        raise HTTPException(status_code=404, detail="No active season")
    return result


# ── Internal jobs ──


@router.post(
    "/jobs/annual-reset",
    response_model=AnnualResetResult,
    dependencies=[Depends(require_service_key)],
)
async def run_annual_reset(
    body: AnnualResetRequest | None = None,
    redis: object = Depends(get_redis_dep),
    config: GamificationConfig = Depends(get_config),
):
    """Archive last year's standings and reset XP for every dojo."""
    job = AnnualResetJob(get_session_factory(), config, redis)
    return await job.run(body.target_year if body else None)
