"""Error taxonomy for the gamification core."""

from __future__ import annotations


class GamificationError(Exception):
    """Base class for all gamification errors."""


class ValidationError(GamificationError):
    """Invalid input. Raised before any state is touched."""


class PersistenceError(GamificationError):
    """The store failed to read or write. Prior state is left untouched."""


class ConflictError(GamificationError):
    """An idempotent insert collided with an existing row.

    Unlock and archive paths treat this as success; it is only raised
    by helpers asked to be strict about duplicates.
    """
