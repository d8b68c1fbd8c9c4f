"""Achievement unlocking with duplicate prevention and notification."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.db.models import AchievementDefinition, StudentAchievement
from dojoxp.db.upsert import insert_ignore
from dojoxp.exceptions import PersistenceError, ValidationError
from dojoxp.gamification.schemas import (
    RARITY_ORDER,
    AchievementDefinitionSchema,
    AchievementProgress,
    AchievementStats,
    CriteriaType,
    UnlockedAchievement,
)
from dojoxp.gamification.xp_ledger import round_half_up
from dojoxp.notifications import NotificationPayload, NotificationService

logger = logging.getLogger(__name__)

# criteria_type -> AchievementStats field it is compared against
_STAT_FOR_CRITERIA: dict[CriteriaType, str] = {
    CriteriaType.TASKS_COMPLETED: "tasks_completed",
    CriteriaType.STREAK_DAYS: "current_streak",
    CriteriaType.XP_TOTAL: "total_xp",
}


def meets_criteria(achievement: AchievementDefinitionSchema, stats: AchievementStats) -> bool:
    """True when ``stats`` reach the achievement's threshold. Annual ranks never qualify here."""
    field = _STAT_FOR_CRITERIA.get(achievement.criteria_type)
    if field is None:
        return False
    return getattr(stats, field) >= achievement.criteria_value


def unlock_notification(user_id: str, achievement: AchievementDefinitionSchema) -> NotificationPayload:
    return NotificationPayload(
        user_id=user_id,
        title="Achievement unlocked!",
        message=f'You unlocked "{achievement.name}"! +{achievement.xp_reward} XP',
        type="achievement",
        related_id=str(achievement.id),
        metadata={"achievement_id": achievement.id, "xp_reward": achievement.xp_reward},
    )


async def record_unlock(db: AsyncSession, user_id: str, achievement_id: int) -> bool:
    """Insert the unlock record.

    Returns True if this call unlocked it, False if it was already
    unlocked (including by a concurrent caller).
    """
    inserted = await insert_ignore(
        db,
        StudentAchievement,
        [{"user_id": user_id, "achievement_id": achievement_id}],
        conflict_columns=["user_id", "achievement_id"],
    )
    return inserted == 1


class AchievementCatalog:
    """Achievement definitions, loaded once per instance.

    Call ``invalidate()`` to pick up catalog edits.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._cache: list[AchievementDefinitionSchema] | None = None

    async def load(self) -> list[AchievementDefinitionSchema]:
        """Load and cache all valid definitions; malformed rows are skipped with a warning."""
        if self._cache is None:
            result = await self.db.execute(
                select(AchievementDefinition).order_by(AchievementDefinition.id)
            )
            definitions: list[AchievementDefinitionSchema] = []
            for row in result.scalars():
                try:
                    definitions.append(AchievementDefinitionSchema.model_validate(row))
                except pydantic.ValidationError:
                    logger.warning("Skipping malformed achievement definition: %s", row.slug, exc_info=True)
            self._cache = definitions
        return self._cache

    def invalidate(self) -> None:
        self._cache = None


class AchievementUnlocker:
    """Evaluates non-annual achievements against a student's stats."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService | None = None,
        catalog: AchievementCatalog | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier or NotificationService(db)
        self.catalog = catalog or AchievementCatalog(db)

    async def _unlocked_ids(self, user_id: str) -> set[int]:
        result = await self.db.execute(
            select(StudentAchievement.achievement_id).where(StudentAchievement.user_id == user_id)
        )
        return set(result.scalars())

    async def check_and_unlock(
        self,
        user_id: str,
        stats: AchievementStats | dict[str, Any],
    ) -> list[AchievementDefinitionSchema]:
        """Unlock every non-annual achievement ``stats`` now satisfy.

        Returns the newly unlocked definitions; an achievement unlocked
        by an earlier or concurrent call is not returned again.
        """
        if not isinstance(stats, AchievementStats):
            try:
                stats = AchievementStats.model_validate(stats)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid achievement stats: {exc}") from exc

        newly_unlocked: list[AchievementDefinitionSchema] = []
        try:
            catalog = await self.catalog.load()
            already = await self._unlocked_ids(user_id)

            for achievement in catalog:
                if achievement.is_annual or achievement.id in already:
                    continue
                if not meets_criteria(achievement, stats):
                    continue
                if not await record_unlock(self.db, user_id, achievement.id):
                    continue  # Race: unlocked concurrently

                await self.notifier.send(unlock_notification(user_id, achievement))
                newly_unlocked.append(achievement)

            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            self.notifier.discard_pending()
            raise PersistenceError(f"Failed to check achievements for {user_id}") from exc

        await self.notifier.publish_pending()

        for achievement in newly_unlocked:
            logger.info("User %s unlocked achievement %s", user_id, achievement.slug)
        return newly_unlocked

    async def list_unlocked(self, user_id: str) -> list[UnlockedAchievement]:
        """Unlocked achievements, rarest first, then most recent."""
        try:
            result = await self.db.execute(
                select(StudentAchievement).where(StudentAchievement.user_id == user_id)
            )
            rows = result.unique().scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list achievements for {user_id}") from exc

        items: list[UnlockedAchievement] = []
        for row in rows:
            try:
                definition = AchievementDefinitionSchema.model_validate(row.achievement)
            except pydantic.ValidationError:
                logger.warning("Skipping unlock of malformed achievement %s", row.achievement_id)
                continue
            items.append(UnlockedAchievement(achievement=definition, unlocked_at=row.unlocked_at))

        items.sort(key=lambda i: i.unlocked_at, reverse=True)
        items.sort(key=lambda i: RARITY_ORDER.get(i.achievement.rarity.value, 0), reverse=True)
        return items

    async def progress(self, user_id: str) -> AchievementProgress:
        """How much of the non-annual catalog the student has unlocked."""
        try:
            catalog = await self.catalog.load()
            already = await self._unlocked_ids(user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read achievement progress for {user_id}") from exc

        regular = {a.id for a in catalog if not a.is_annual}
        unlocked = len(regular & already)
        total = len(regular)
        percent = round_half_up(Decimal(unlocked * 100) / Decimal(total)) if total else 0
        return AchievementProgress(unlocked_count=unlocked, total_count=total, percent=percent)
