"""Level curve: cumulative XP -> level and intra-level progress.

Each level costs ``level * xp_per_level`` XP to clear, so with the
default 100 XP step:

  Level 1:    0 XP
  Level 2:  100 XP
  Level 3:  300 XP
  Level 4:  600 XP
  Level 5: 1000 XP

Negative inputs are clamped; these functions never raise.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

DEFAULT_XP_PER_LEVEL = 100


@dataclass(frozen=True)
class LevelProgress:
    level: int
    progress: int
    needed: int
    percent: float


def xp_to_reach_level(level: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> int:
    """Cumulative XP at which ``level`` starts."""
    level = max(level, 1)
    return xp_per_level * level * (level - 1) // 2


def level_for(total_xp: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> int:
    """Highest level whose starting XP does not exceed ``total_xp``."""
    total_xp = max(total_xp, 0)
    # Solve xp_per_level * L * (L - 1) / 2 <= total_xp for L, then correct
    # for float error at exact boundaries.
    level = int((1 + math.sqrt(1 + 8 * total_xp / xp_per_level)) / 2)
    level = max(level, 1)
    while xp_to_reach_level(level + 1, xp_per_level) <= total_xp:
        level += 1
    while level > 1 and xp_to_reach_level(level, xp_per_level) > total_xp:
        level -= 1
    return level


def xp_for_next_level(level: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> int:
    """XP needed to advance from ``level`` to ``level + 1``."""
    return max(level, 1) * xp_per_level


def xp_progress_in_level(total_xp: int, level: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> int:
    """XP accumulated since ``level`` started."""
    return max(total_xp, 0) - xp_to_reach_level(level, xp_per_level)


def level_progress(total_xp: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> LevelProgress:
    """Level plus progress-bar values for ``total_xp``."""
    level = level_for(total_xp, xp_per_level)
    progress = xp_progress_in_level(total_xp, level, xp_per_level)
    needed = xp_for_next_level(level, xp_per_level)
    return LevelProgress(
        level=level,
        progress=progress,
        needed=needed,
        percent=min(progress / needed * 100, 100.0),
    )
