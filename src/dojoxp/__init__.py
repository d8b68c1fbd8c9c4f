"""Dojo gamification engine: XP, levels, streaks, achievements and leaderboards."""

__version__ = "0.1.0"
