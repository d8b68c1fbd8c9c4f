"""XP ledger: applies XP-granting activity to a student's record.

This is the only writer of total_xp / level / streak fields outside
the annual reset. Each grant is an optimistic read-modify-write:

1. Read (or lazily create) the StudentXP row and its version
2. Advance the streak and compute the multiplied XP
3. UPDATE ... WHERE version = <read version>
4. Zero rows updated means a concurrent grant won: re-read and retry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import pydantic
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.config import GamificationConfig
from dojoxp.db.models import StudentXP
from dojoxp.db.upsert import insert_ignore
from dojoxp.exceptions import PersistenceError, ValidationError
from dojoxp.gamification.level_curve import level_for, level_progress
from dojoxp.gamification.schemas import GrantResult, StudentXPState, XPSummary
from dojoxp.gamification.streak_tracker import advance_streak, multiplier_for, today_in

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityOutcome:
    """New progress values after one activity; not yet persisted."""

    total_xp: int
    level: int
    current_streak: int
    longest_streak: int
    last_activity_date: date
    xp_granted: int
    multiplier: float
    leveled_up: bool


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_base_amount(base_amount: object) -> int:
    """Reject anything but a non-negative int (bools included)."""
    if isinstance(base_amount, bool) or not isinstance(base_amount, int):
        raise ValidationError(f"base_amount must be an integer, got {type(base_amount).__name__}")
    if base_amount < 0:
        raise ValidationError(f"base_amount must be >= 0, got {base_amount}")
    return base_amount


def apply_activity(
    total_xp: int,
    current_streak: int,
    longest_streak: int,
    last_activity_date: date | None,
    base_amount: int,
    activity_date: date,
    config: GamificationConfig,
    extra_multiplier: float = 1.0,
) -> ActivityOutcome:
    """Pure streak + XP + level computation shared by the ledger and seasons."""
    streak = advance_streak(
        last_activity_date,
        activity_date,
        current_streak,
        longest_streak,
        config.streak_multipliers,
    )
    multiplier = streak.multiplier * extra_multiplier
    xp_granted = round_half_up(
        Decimal(base_amount) * Decimal(str(streak.multiplier)) * Decimal(str(extra_multiplier))
    )
    new_total = total_xp + xp_granted
    old_level = level_for(total_xp, config.xp_per_level)
    new_level = level_for(new_total, config.xp_per_level)

    return ActivityOutcome(
        total_xp=new_total,
        level=new_level,
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_activity_date=streak.last_activity_date,
        xp_granted=xp_granted,
        multiplier=multiplier,
        leveled_up=new_level > old_level,
    )


async def _load_student_xp(db: AsyncSession, user_id: str) -> StudentXP | None:
    result = await db.execute(
        select(StudentXP)
        .where(StudentXP.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_student_xp(db: AsyncSession, user_id: str) -> StudentXP:
    """Get the StudentXP row, inserting a zeroed one on first use.

    Concurrent first grants both attempt the insert; the loser's insert
    is ignored and both read the same row.
    """
    row = await _load_student_xp(db, user_id)
    if row is None:
        await insert_ignore(
            db,
            StudentXP,
            [{
                "user_id": user_id,
                "total_xp": 0,
                "level": 1,
                "current_streak": 0,
                "longest_streak": 0,
                "last_activity_date": None,
                "version": 0,
            }],
            conflict_columns=["user_id"],
        )
        row = await _load_student_xp(db, user_id)
        if row is None:
            raise PersistenceError(f"student_xp row for {user_id} vanished after insert")
    return row


def to_state(row: StudentXP) -> StudentXPState:
    """Validate a stored row before any rule touches it."""
    try:
        return StudentXPState.model_validate(row)
    except pydantic.ValidationError as exc:
        raise PersistenceError(f"Corrupt XP row for {row.user_id}: {exc}") from exc


class XPLedger:
    """Grants XP to students in one dojo-agnostic store."""

    def __init__(self, db: AsyncSession, config: GamificationConfig | None = None) -> None:
        self.db = db
        self.config = config or GamificationConfig()

    async def _read_state(self, user_id: str) -> StudentXPState:
        row = await get_or_create_student_xp(self.db, user_id)
        return to_state(row)

    async def grant_xp(
        self,
        user_id: str,
        base_amount: int,
        activity_date: date | None = None,
    ) -> GrantResult:
        """Grant ``base_amount`` XP (times the streak multiplier) for activity on ``activity_date``.

        Raises ValidationError for bad input and PersistenceError when
        the store fails or the write keeps losing to concurrent grants.
        The record is left as it was in both cases.
        """
        base_amount = validate_base_amount(base_amount)
        if activity_date is None:
            activity_date = today_in(self.config.activity_timezone)

        for attempt in range(1, self.config.max_write_retries + 1):
            try:
                state = await self._read_state(user_id)
                outcome = apply_activity(
                    state.total_xp,
                    state.current_streak,
                    state.longest_streak,
                    state.last_activity_date,
                    base_amount,
                    activity_date,
                    self.config,
                )
                result = await self.db.execute(
                    update(StudentXP)
                    .where(
                        StudentXP.user_id == user_id,
                        StudentXP.version == state.version,
                    )
                    .values(
                        total_xp=outcome.total_xp,
                        level=outcome.level,
                        current_streak=outcome.current_streak,
                        longest_streak=outcome.longest_streak,
                        last_activity_date=outcome.last_activity_date,
                        version=state.version + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await self.db.commit()
                    break
                await self.db.rollback()
            except SQLAlchemyError as exc:
                await self.db.rollback()
                raise PersistenceError(f"Failed to grant XP to {user_id}") from exc
            except PersistenceError:
                await self.db.rollback()
                raise

            logger.info(
                "Concurrent XP write for user %s, retrying (attempt %d/%d)",
                user_id, attempt, self.config.max_write_retries,
            )
        else:
            raise PersistenceError(
                f"Gave up granting XP to {user_id} after {self.config.max_write_retries} conflicting writes"
            )

        logger.info(
            "Granted %d XP to user %s (base=%d, x%.2f). Total: %d XP, Level: %d, Streak: %d",
            outcome.xp_granted, user_id, base_amount, outcome.multiplier,
            outcome.total_xp, outcome.level, outcome.current_streak,
        )
        if outcome.leveled_up:
            logger.info("User %s leveled up to %d", user_id, outcome.level)

        return GrantResult(
            xp_granted=outcome.xp_granted,
            multiplier=outcome.multiplier,
            leveled_up=outcome.leveled_up,
            new_level=outcome.level,
            new_total=outcome.total_xp,
            current_streak=outcome.current_streak,
            longest_streak=outcome.longest_streak,
        )

    async def get_summary(self, user_id: str) -> XPSummary:
        """Current XP, level progress and streak multiplier. Never writes."""
        try:
            row = await _load_student_xp(self.db, user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read XP for {user_id}") from exc

        state = to_state(row) if row is not None else StudentXPState(user_id=user_id)
        progress = level_progress(state.total_xp, self.config.xp_per_level)
        return XPSummary(
            user_id=user_id,
            total_xp=state.total_xp,
            level=progress.level,
            progress=progress.progress,
            needed_for_next=progress.needed,
            progress_percent=round(progress.percent, 2),
            current_streak=state.current_streak,
            longest_streak=state.longest_streak,
            streak_multiplier=multiplier_for(state.current_streak, self.config.streak_multipliers),
        )
