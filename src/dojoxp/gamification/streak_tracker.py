"""Daily activity streaks and the streak XP multiplier."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

DEFAULT_MULTIPLIERS: tuple[tuple[int, float], ...] = (
    (3, 1.25),
    (7, 1.5),
    (14, 1.75),
    (30, 2.0),
)


@dataclass(frozen=True)
class StreakUpdate:
    current_streak: int
    longest_streak: int
    multiplier: float
    last_activity_date: date


def today_in(tz_name: str) -> date:
    """Calendar date in the given IANA timezone."""
    return datetime.now(ZoneInfo(tz_name)).date()


def multiplier_for(
    streak: int,
    table: Iterable[tuple[int, float]] = DEFAULT_MULTIPLIERS,
) -> float:
    """Multiplier of the highest threshold not exceeding ``streak``; 1.0 below all thresholds."""
    multiplier = 1.0
    best_threshold = -1
    for threshold, value in table:
        if best_threshold < threshold <= streak:
            best_threshold = threshold
            multiplier = value
    return multiplier


def advance_streak(
    last_activity_date: date | None,
    today: date,
    current_streak: int,
    longest_streak: int,
    table: Iterable[tuple[int, float]] = DEFAULT_MULTIPLIERS,
) -> StreakUpdate:
    """Apply one activity on ``today`` to a streak.

    - yesterday: streak continues (+1)
    - today: unchanged, a second activity on the same day does not count
    - older or never: a new streak of 1 starts
    - after today (a backdated event): unchanged, the later date is kept
    """
    current = max(current_streak, 0)
    last_date = last_activity_date

    if last_activity_date is None:
        current = 1
        last_date = today
    elif last_activity_date == today:
        pass
    elif last_activity_date == today - timedelta(days=1):
        current += 1
        last_date = today
    elif last_activity_date < today:
        current = 1
        last_date = today

    return StreakUpdate(
        current_streak=current,
        longest_streak=max(longest_streak, current),
        multiplier=multiplier_for(current, table),
        last_activity_date=last_date,
    )
