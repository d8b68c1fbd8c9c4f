"""Annual leaderboard close-out.

For every dojo, in its own transaction:

1. Rank approved students that have an XP record
2. Skip the dojo if it is already archived for the target year
3. Archive the ranking to leaderboard_history
4. Unlock annual-rank achievements and notify the podium
5. Reset XP, level and streaks to a fresh start

Archive and reset commit together, so a re-run never resets a dojo
twice. A failing dojo is rolled back and reported; the rest proceed.
After the dojo loop the active season is closed in a separate
transaction, provided it ended within the target year.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dojoxp.config import GamificationConfig
from dojoxp.db.models import AchievementDefinition, Dojo, LeaderboardHistory, StudentXP
from dojoxp.db.upsert import insert_ignore
from dojoxp.exceptions import ConflictError
from dojoxp.gamification.achievement_service import record_unlock, unlock_notification
from dojoxp.gamification.leaderboard_service import LeaderboardAggregator
from dojoxp.gamification.schemas import (
    AchievementDefinitionSchema,
    AnnualResetResult,
    CriteriaType,
    LeaderboardEntry,
    TopFinisher,
)
from dojoxp.gamification.season_service import MEDALS, SeasonService
from dojoxp.gamification.streak_tracker import today_in
from dojoxp.notifications import NotificationPayload, NotificationService

logger = structlog.get_logger()


class AnnualResetJob:
    """Archive-and-reset batch, safe to re-run for the same year."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: GamificationConfig | None = None,
        redis: object | None = None,
        today: date | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or GamificationConfig()
        self.redis = redis
        self.today = today

    def default_target_year(self) -> int:
        today = self.today or today_in(self.config.activity_timezone)
        return today.year - 1

    async def run(self, target_year: int | None = None) -> AnnualResetResult:
        year = target_year if target_year is not None else self.default_target_year()
        result = AnnualResetResult(year=year)

        async with self.session_factory() as db:
            dojo_ids = list((await db.execute(select(Dojo.id).order_by(Dojo.id))).scalars())

        logger.info("annual_reset_started", year=year, dojos=len(dojo_ids))

        for dojo_id in dojo_ids:
            try:
                async with self.session_factory() as db:
                    processed = await self._process_dojo(db, dojo_id, year)
            except Exception:
                logger.exception("annual_reset_dojo_failed", dojo_id=dojo_id, year=year)
                result.failed_dojos.append(dojo_id)
                continue

            if processed is None:
                result.skipped_dojos.append(dojo_id)
                logger.info("annual_reset_dojo_skipped", dojo_id=dojo_id, year=year)
                continue

            entries, archived = processed
            result.total_archived += archived
            result.total_reset += len(entries)
            if entries:
                result.top_three_by_dojo[dojo_id] = [
                    TopFinisher(user_id=e.user_id, name=e.name, rank=e.rank, xp=e.total_xp)
                    for e in entries[:3]
                ]

        try:
            async with self.session_factory() as db:
                seasons = SeasonService(db, self.config, NotificationService(db, self.redis))
                result.season_results = await seasons.close_active_season(ended_by=date(year, 12, 31))
        except Exception:
            logger.exception("annual_reset_season_close_failed", year=year)
            result.season_failed = True

        logger.info(
            "annual_reset_completed",
            year=year,
            total_archived=result.total_archived,
            total_reset=result.total_reset,
            skipped=len(result.skipped_dojos),
            failed=len(result.failed_dojos),
        )
        return result

    async def _process_dojo(
        self,
        db: AsyncSession,
        dojo_id: str,
        year: int,
    ) -> tuple[list[LeaderboardEntry], int] | None:
        """Close out one dojo. Returns None when it was already archived for ``year``."""
        existing = await db.scalar(
            select(func.count(LeaderboardHistory.id)).where(
                LeaderboardHistory.dojo_id == dojo_id,
                LeaderboardHistory.year == year,
            )
        )
        if existing:
            return None

        aggregator = LeaderboardAggregator(db, self.config)
        entries = await aggregator.build_leaderboard(dojo_id, require_xp_record=True)
        if not entries:
            return entries, 0

        try:
            archived = await insert_ignore(
                db,
                LeaderboardHistory,
                [
                    {
                        "user_id": e.user_id,
                        "dojo_id": dojo_id,
                        "year": year,
                        "final_xp": e.total_xp,
                        "final_rank": e.rank,
                    }
                    for e in entries
                ],
                conflict_columns=["dojo_id", "year", "user_id"],
                strict=True,
            )
        except ConflictError:
            # A concurrent run archived this dojo between the guard and the insert
            await db.rollback()
            return None

        notifier = NotificationService(db, self.redis)
        await self._award_annual_achievements(db, notifier, entries, year)
        await self._notify_podium(notifier, entries, year)

        await db.execute(
            update(StudentXP)
            .where(StudentXP.user_id.in_([e.user_id for e in entries]))
            .values(
                total_xp=0,
                level=1,
                current_streak=0,
                longest_streak=0,
                last_activity_date=None,
                version=StudentXP.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await notifier.publish_pending()

        logger.info("annual_reset_dojo_done", dojo_id=dojo_id, year=year, archived=archived)
        return entries, archived

    async def _award_annual_achievements(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        entries: list[LeaderboardEntry],
        year: int,
    ) -> None:
        result = await db.execute(
            select(AchievementDefinition).where(
                AchievementDefinition.is_annual.is_(True),
                AchievementDefinition.annual_year == year,
                AchievementDefinition.criteria_type == CriteriaType.ANNUAL_RANK.value,
            )
        )
        annual = [AchievementDefinitionSchema.model_validate(row) for row in result.scalars()]

        for achievement in annual:
            for entry in entries:
                if entry.rank > achievement.criteria_value:
                    break
                if await record_unlock(db, entry.user_id, achievement.id):
                    await notifier.send(unlock_notification(entry.user_id, achievement))

    async def _notify_podium(
        self,
        notifier: NotificationService,
        entries: list[LeaderboardEntry],
        year: int,
    ) -> None:
        for entry in entries[: min(self.config.annual_top_notified, len(MEDALS))]:
            await notifier.send(NotificationPayload(
                user_id=entry.user_id,
                title=f"{MEDALS[entry.rank - 1]} Annual Ranking {year}",
                message=f"You finished #{entry.rank} with {entry.total_xp} XP! Congratulations!",
                type="annual_ranking",
                metadata={"year": year, "rank": entry.rank, "xp": entry.total_xp},
            ))
