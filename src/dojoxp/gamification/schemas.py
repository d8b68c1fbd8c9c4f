"""Typed entities for the gamification core.

Rows read from the store are validated into these models before any
rule is applied to them; handler responses reuse the same types.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CriteriaType(str, Enum):
    """What an achievement threshold is compared against."""

    TASKS_COMPLETED = "tasks_completed"
    STREAK_DAYS = "streak_days"
    XP_TOTAL = "xp_total"
    ANNUAL_RANK = "annual_rank"


class Rarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


RARITY_ORDER: dict[str, int] = {
    Rarity.COMMON.value: 1,
    Rarity.RARE.value: 2,
    Rarity.EPIC.value: 3,
    Rarity.LEGENDARY.value: 4,
}


# --- XP ---


class StudentXPState(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    total_xp: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_activity_date: date | None = None
    version: int = 0

    @model_validator(mode="after")
    def _longest_covers_current(self) -> StudentXPState:
        if self.longest_streak < self.current_streak:
            raise ValueError("longest_streak must be >= current_streak")
        return self


class GrantResult(BaseModel):
    xp_granted: int
    multiplier: float
    leveled_up: bool
    new_level: int
    new_total: int
    current_streak: int
    longest_streak: int


class GrantXPRequest(BaseModel):
    base_amount: int = Field(ge=0)
    activity_date: date | None = None


class XPSummary(BaseModel):
    user_id: str
    total_xp: int
    level: int
    progress: int
    needed_for_next: int
    progress_percent: float
    current_streak: int
    longest_streak: int
    streak_multiplier: float


# --- Achievements ---


class AchievementDefinitionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    name: str
    description: str | None = None
    icon: str = ""
    category: str
    criteria_type: CriteriaType
    criteria_value: int = Field(ge=0)
    xp_reward: int = Field(default=0, ge=0)
    is_annual: bool = False
    annual_year: int | None = None
    rarity: Rarity = Rarity.COMMON


class AchievementStats(BaseModel):
    tasks_completed: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    total_xp: int = Field(default=0, ge=0)


class UnlockedAchievement(BaseModel):
    achievement: AchievementDefinitionSchema
    unlocked_at: datetime


class AchievementProgress(BaseModel):
    unlocked_count: int
    total_count: int
    percent: int


class StudentAchievementsResponse(BaseModel):
    unlocked: list[UnlockedAchievement]
    progress: AchievementProgress


# --- Leaderboard ---


class LeaderboardEntry(BaseModel):
    user_id: str
    name: str
    total_xp: int = 0
    level: int = 1
    current_streak: int = 0
    achievement_count: int = 0
    rank: int = 0


class LeaderboardView(BaseModel):
    dojo_id: str
    entries: list[LeaderboardEntry]
    total_participants: int
    top_three: list[LeaderboardEntry]
    top_ten: list[LeaderboardEntry]
    my_entry: LeaderboardEntry | None = None
    my_rank: int | None = None


class LeaderboardHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    dojo_id: str
    year: int
    final_xp: int
    final_rank: int
    name: str = "Unknown"


# --- Annual reset ---


class TopFinisher(BaseModel):
    user_id: str
    name: str
    rank: int
    xp: int


class SeasonCloseResult(BaseModel):
    season: str
    top3: list[TopFinisher]
    next_season: str | None = None


class AnnualResetResult(BaseModel):
    year: int
    total_archived: int = 0
    total_reset: int = 0
    top_three_by_dojo: dict[str, list[TopFinisher]] = Field(default_factory=dict)
    skipped_dojos: list[str] = Field(default_factory=list)
    failed_dojos: list[str] = Field(default_factory=list)
    season_results: SeasonCloseResult | None = None
    season_failed: bool = False


class AnnualResetRequest(BaseModel):
    target_year: int | None = None


# --- Seasons ---


class SeasonSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    theme: str
    year: int
    quarter: int
    start_date: date
    end_date: date
    is_active: bool
    xp_multiplier: float = Field(gt=0)
    title_reward: str | None = None
    border_style: str | None = None


class ActiveSeasonResponse(BaseModel):
    season: SeasonSchema | None = None
    days_remaining: int = 0


class SeasonGrantResult(BaseModel):
    season_id: int
    xp_granted: int
    multiplier: float
    new_total: int
    new_level: int
