"""Quarterly seasons: a separate XP pool with its own multiplier and end-of-season rewards."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.config import GamificationConfig
from dojoxp.db.models import Profile, Season, SeasonReward, SeasonXP
from dojoxp.db.upsert import insert_ignore, upsert
from dojoxp.exceptions import PersistenceError
from dojoxp.gamification.schemas import (
    SeasonCloseResult,
    SeasonGrantResult,
    SeasonSchema,
    TopFinisher,
)
from dojoxp.gamification.streak_tracker import today_in
from dojoxp.gamification.xp_ledger import apply_activity, to_state, validate_base_amount
from dojoxp.notifications import NotificationPayload, NotificationService

logger = logging.getLogger(__name__)

MEDALS = ("🥇", "🥈", "🥉")


def days_remaining(season: SeasonSchema, today: date) -> int:
    """Whole days until the season ends; 0 once it has ended."""
    return max((season.end_date - today).days, 0)


class SeasonService:
    def __init__(
        self,
        db: AsyncSession,
        config: GamificationConfig | None = None,
        notifier: NotificationService | None = None,
    ) -> None:
        self.db = db
        self.config = config or GamificationConfig()
        self.notifier = notifier or NotificationService(db)

    async def _active_season_row(self) -> Season | None:
        result = await self.db.execute(
            select(Season).where(Season.is_active.is_(True)).order_by(Season.start_date).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_season(self) -> SeasonSchema | None:
        try:
            season = await self._active_season_row()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to read active season") from exc
        return SeasonSchema.model_validate(season) if season else None

    async def _load_season_xp(self, user_id: str, season_id: int) -> SeasonXP | None:
        result = await self.db.execute(
            select(SeasonXP)
            .where(SeasonXP.user_id == user_id, SeasonXP.season_id == season_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_season_xp(self, user_id: str, season_id: int) -> SeasonXP:
        row = await self._load_season_xp(user_id, season_id)
        if row is None:
            await insert_ignore(
                self.db,
                SeasonXP,
                [{"user_id": user_id, "season_id": season_id}],
                conflict_columns=["user_id", "season_id"],
            )
            row = await self._load_season_xp(user_id, season_id)
            if row is None:
                raise PersistenceError(f"season_xp row for {user_id} vanished after insert")
        return row

    async def grant_season_xp(
        self,
        user_id: str,
        base_amount: int,
        activity_date: date | None = None,
    ) -> SeasonGrantResult | None:
        """Credit season XP; returns None when no season is active.

        Uses the same streak rules and optimistic write as the main
        ledger, with the season multiplier applied on top of the streak
        multiplier.
        """
        base_amount = validate_base_amount(base_amount)
        if activity_date is None:
            activity_date = today_in(self.config.activity_timezone)

        season = await self.get_active_season()
        if season is None:
            return None

        for attempt in range(1, self.config.max_write_retries + 1):
            try:
                row = await self._get_or_create_season_xp(user_id, season.id)
                state = to_state(row)
                outcome = apply_activity(
                    state.total_xp,
                    state.current_streak,
                    state.longest_streak,
                    state.last_activity_date,
                    base_amount,
                    activity_date,
                    self.config,
                    extra_multiplier=season.xp_multiplier,
                )
                result = await self.db.execute(
                    update(SeasonXP)
                    .where(SeasonXP.id == row.id, SeasonXP.version == state.version)
                    .values(
                        total_xp=outcome.total_xp,
                        level=outcome.level,
                        current_streak=outcome.current_streak,
                        longest_streak=outcome.longest_streak,
                        last_activity_date=outcome.last_activity_date,
                        version=state.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await self.db.commit()
                    break
                await self.db.rollback()
            except SQLAlchemyError as exc:
                await self.db.rollback()
                raise PersistenceError(f"Failed to grant season XP to {user_id}") from exc
            except PersistenceError:
                await self.db.rollback()
                raise

            logger.info(
                "Concurrent season XP write for user %s, retrying (attempt %d/%d)",
                user_id, attempt, self.config.max_write_retries,
            )
        else:
            raise PersistenceError(
                f"Gave up granting season XP to {user_id} after {self.config.max_write_retries} conflicting writes"
            )

        logger.info(
            "Granted %d season XP to user %s in %s. Season total: %d",
            outcome.xp_granted, user_id, season.slug, outcome.total_xp,
        )
        return SeasonGrantResult(
            season_id=season.id,
            xp_granted=outcome.xp_granted,
            multiplier=outcome.multiplier,
            new_total=outcome.total_xp,
            new_level=outcome.level,
        )

    async def close_active_season(self, ended_by: date | None = None) -> SeasonCloseResult | None:
        """Reward the active season's top 3, deactivate it and activate the next one.

        Returns None when no season is active, or when ``ended_by`` is given
        and the active season ends after it. Rewards are upserted, so
        re-running a close that failed halfway does not duplicate them.
        """
        try:
            season = await self._active_season_row()
            if season is None:
                return None
            if ended_by is not None and season.end_date > ended_by:
                logger.info("Season %s runs until %s, not closing", season.slug, season.end_date)
                return None

            result = await self.db.execute(
                select(SeasonXP, Profile.name)
                .outerjoin(Profile, Profile.user_id == SeasonXP.user_id)
                .where(SeasonXP.season_id == season.id)
                .order_by(SeasonXP.total_xp.desc(), Profile.created_at, SeasonXP.user_id)
                .limit(len(MEDALS))
            )
            finishers = [
                TopFinisher(user_id=xp.user_id, name=name or "Unknown", rank=rank, xp=xp.total_xp)
                for rank, (xp, name) in enumerate(result.all(), start=1)
            ]

            for finisher in finishers:
                await self._reward(season, finisher)

            season.is_active = False
            next_result = await self.db.execute(
                select(Season)
                .where(Season.start_date > season.end_date)
                .order_by(Season.start_date)
                .limit(1)
            )
            next_season = next_result.scalar_one_or_none()
            if next_season is not None:
                next_season.is_active = True

            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            self.notifier.discard_pending()
            raise PersistenceError("Failed to close active season") from exc

        await self.notifier.publish_pending()

        logger.info(
            "Closed season %s (%d rewarded), next: %s",
            season.slug, len(finishers), next_season.slug if next_season else None,
        )
        return SeasonCloseResult(
            season=season.name,
            top3=finishers,
            next_season=next_season.name if next_season else None,
        )

    async def _reward(self, season: Season, finisher: TopFinisher) -> None:
        medal = MEDALS[finisher.rank - 1]
        rewards: list[tuple[str, str]] = []
        if season.title_reward:
            rewards.append(("title", season.title_reward))
        if season.border_style and finisher.rank == 1:
            rewards.append(("border", season.border_style))
        rewards.append(("badge", f"{season.name} - {medal} #{finisher.rank}"))

        for reward_type, reward_value in rewards:
            await upsert(
                self.db,
                SeasonReward,
                {
                    "user_id": finisher.user_id,
                    "season_id": season.id,
                    "reward_type": reward_type,
                    "reward_value": reward_value,
                    "final_rank": finisher.rank,
                    "final_xp": finisher.xp,
                },
                conflict_columns=["user_id", "season_id", "reward_type"],
                update_columns=["reward_value", "final_rank", "final_xp"],
            )

        await self.notifier.send(NotificationPayload(
            user_id=finisher.user_id,
            title=f"{medal} Season {season.name}",
            message=f"You finished #{finisher.rank} this season with {finisher.xp} XP!",
            type="season_reward",
            related_id=str(season.id),
            metadata={"season_id": season.id, "rank": finisher.rank},
        ))
