"""Dojo leaderboard: ranked, read-only view over student XP.

Ranks are dense and 1-based. Equal XP is ordered by earlier profile
creation, then user_id. Nothing here writes; callers recompute
whenever they want a fresh view.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.config import GamificationConfig
from dojoxp.db.models import LeaderboardHistory, Profile, StudentAchievement, StudentXP
from dojoxp.exceptions import PersistenceError
from dojoxp.gamification.schemas import (
    LeaderboardEntry,
    LeaderboardHistoryEntry,
    LeaderboardView,
)
from dojoxp.gamification.xp_ledger import to_state

logger = logging.getLogger(__name__)


def rank_entries(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Sort by total XP descending and assign ranks 1..N.

    The sort is stable: entries with equal XP keep their input order.
    """
    ordered = sorted(entries, key=lambda e: e.total_xp, reverse=True)
    return [entry.model_copy(update={"rank": i}) for i, entry in enumerate(ordered, start=1)]


class LeaderboardAggregator:
    def __init__(self, db: AsyncSession, config: GamificationConfig | None = None) -> None:
        self.db = db
        self.config = config or GamificationConfig()

    async def build_leaderboard(
        self,
        dojo_id: str,
        *,
        require_xp_record: bool = False,
    ) -> list[LeaderboardEntry]:
        """Rank approved, non-staff students of a dojo.

        Students with no XP record rank with zero XP unless
        ``require_xp_record`` is set, in which case they are left out.
        """
        stmt = select(Profile, StudentXP)
        if require_xp_record:
            stmt = stmt.join(StudentXP, StudentXP.user_id == Profile.user_id)
        else:
            stmt = stmt.outerjoin(StudentXP, StudentXP.user_id == Profile.user_id)
        stmt = stmt.where(
            Profile.dojo_id == dojo_id,
            Profile.registration_status == self.config.approved_status,
            Profile.role.not_in(sorted(self.config.staff_roles)),
        ).order_by(Profile.created_at, Profile.user_id)

        try:
            rows = (await self.db.execute(stmt)).all()
            user_ids = [profile.user_id for profile, _ in rows]
            counts = await self._achievement_counts(user_ids)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to build leaderboard for dojo {dojo_id}") from exc

        entries = []
        for profile, xp in rows:
            entry = LeaderboardEntry(
                user_id=profile.user_id,
                name=profile.name,
                achievement_count=counts.get(profile.user_id, 0),
            )
            if xp is not None:
                state = to_state(xp)
                entry.total_xp = state.total_xp
                entry.level = state.level
                entry.current_streak = state.current_streak
            entries.append(entry)

        return rank_entries(entries)

    async def _achievement_counts(self, user_ids: list[str]) -> dict[str, int]:
        if not user_ids:
            return {}
        result = await self.db.execute(
            select(StudentAchievement.user_id, func.count(StudentAchievement.id))
            .where(StudentAchievement.user_id.in_(user_ids))
            .group_by(StudentAchievement.user_id)
        )
        return {user_id: count for user_id, count in result.all()}

    async def leaderboard_view(self, dojo_id: str, user_id: str | None = None) -> LeaderboardView:
        """Full ranking plus podium, top ten and the caller's own position."""
        entries = await self.build_leaderboard(dojo_id)
        my_entry = next((e for e in entries if e.user_id == user_id), None) if user_id else None
        return LeaderboardView(
            dojo_id=dojo_id,
            entries=entries,
            total_participants=len(entries),
            top_three=entries[:3],
            top_ten=entries[:10],
            my_entry=my_entry,
            my_rank=my_entry.rank if my_entry else None,
        )

    async def get_history(self, dojo_id: str, year: int | None = None) -> list[LeaderboardHistoryEntry]:
        """Archived standings, newest year first, with student names."""
        stmt = (
            select(LeaderboardHistory, Profile.name)
            .outerjoin(Profile, Profile.user_id == LeaderboardHistory.user_id)
            .where(LeaderboardHistory.dojo_id == dojo_id)
            .order_by(LeaderboardHistory.year.desc(), LeaderboardHistory.final_rank)
        )
        if year is not None:
            stmt = stmt.where(LeaderboardHistory.year == year)

        try:
            rows = (await self.db.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read leaderboard history for dojo {dojo_id}") from exc

        return [
            LeaderboardHistoryEntry(
                user_id=row.user_id,
                dojo_id=row.dojo_id,
                year=row.year,
                final_xp=row.final_xp,
                final_rank=row.final_rank,
                name=name or "Unknown",
            )
            for row, name in rows
        ]
