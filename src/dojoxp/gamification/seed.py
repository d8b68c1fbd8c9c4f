"""Default achievement catalog."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.db.models import AchievementDefinition
from dojoxp.db.upsert import upsert

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Tasks
    {
        "slug": "first_task",
        "name": "First Step",
        "description": "Complete your first task",
        "icon": "🎯",
        "category": "tasks",
        "criteria_type": "tasks_completed",
        "criteria_value": 1,
        "xp_reward": 10,
        "rarity": "common",
    },
    {
        "slug": "tasks_10",
        "name": "Dedicated Student",
        "description": "Complete 10 tasks",
        "icon": "📚",
        "category": "tasks",
        "criteria_type": "tasks_completed",
        "criteria_value": 10,
        "xp_reward": 50,
        "rarity": "common",
    },
    {
        "slug": "tasks_50",
        "name": "Relentless",
        "description": "Complete 50 tasks",
        "icon": "💪",
        "category": "tasks",
        "criteria_type": "tasks_completed",
        "criteria_value": 50,
        "xp_reward": 150,
        "rarity": "rare",
    },
    {
        "slug": "tasks_100",
        "name": "Task Master",
        "description": "Complete 100 tasks",
        "icon": "🏅",
        "category": "tasks",
        "criteria_type": "tasks_completed",
        "criteria_value": 100,
        "xp_reward": 300,
        "rarity": "epic",
    },
    # Streaks
    {
        "slug": "streak_3",
        "name": "Warming Up",
        "description": "Train 3 days in a row",
        "icon": "🔥",
        "category": "streak",
        "criteria_type": "streak_days",
        "criteria_value": 3,
        "xp_reward": 15,
        "rarity": "common",
    },
    {
        "slug": "streak_7",
        "name": "One Week Strong",
        "description": "Train 7 days in a row",
        "icon": "⚡",
        "category": "streak",
        "criteria_type": "streak_days",
        "criteria_value": 7,
        "xp_reward": 50,
        "rarity": "rare",
    },
    {
        "slug": "streak_30",
        "name": "Iron Discipline",
        "description": "Train 30 days in a row",
        "icon": "🥋",
        "category": "streak",
        "criteria_type": "streak_days",
        "criteria_value": 30,
        "xp_reward": 250,
        "rarity": "legendary",
    },
    # XP
    {
        "slug": "xp_500",
        "name": "Rising Star",
        "description": "Earn 500 XP",
        "icon": "⭐",
        "category": "xp",
        "criteria_type": "xp_total",
        "criteria_value": 500,
        "xp_reward": 25,
        "rarity": "common",
    },
    {
        "slug": "xp_2000",
        "name": "Veteran",
        "description": "Earn 2,000 XP",
        "icon": "🌟",
        "category": "xp",
        "criteria_type": "xp_total",
        "criteria_value": 2000,
        "xp_reward": 100,
        "rarity": "epic",
    },
]

_UPDATE_COLUMNS = [
    "name", "description", "icon", "category",
    "criteria_type", "criteria_value", "xp_reward", "rarity",
]


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert the default achievement definitions. Returns number seeded."""
    seeded = 0
    for achievement_data in ACHIEVEMENT_SEED_DATA:
        await upsert(
            db,
            AchievementDefinition,
            achievement_data,
            conflict_columns=["slug"],
            update_columns=_UPDATE_COLUMNS,
        )
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
