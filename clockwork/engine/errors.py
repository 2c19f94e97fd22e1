"""
clockwork.engine.errors — Typed Domain Errors
===============================================

Every failure the progression engine reports to a caller is one of these.
The API layer maps them onto HTTP status codes; Python callers catch them
directly.
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
class NotFound(ProgressionError):
    """Unknown tier, achievement or series id."""


class TierNotFound(NotFound):
    def __init__(self, tier_id: int) -> None:
        super().__init__(f"Tier not found: {tier_id}")
        self.tier_id = tier_id


class AchievementNotFound(NotFound):
    def __init__(self, achievement_id: int) -> None:
        super().__init__(f"Achievement not found: {achievement_id}")
        self.achievement_id = achievement_id


class SeriesNotFound(NotFound):
    def __init__(self, series_id: int) -> None:
        super().__init__(f"Series not found: {series_id}")
        self.series_id = series_id


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------
class NotCompleted(ProgressionError):
    """Reward claimed before the achievement was completed."""

    def __init__(self, achievement_id: int) -> None:
        super().__init__(f"Achievement {achievement_id} is not completed")
        self.achievement_id = achievement_id


class AlreadyClaimed(ProgressionError):
    """Reward for this (user, achievement) was already claimed."""

    def __init__(self, achievement_id: int) -> None:
        super().__init__(f"Reward for achievement {achievement_id} already claimed")
        self.achievement_id = achievement_id


# ---------------------------------------------------------------------------
# Progress input
# ---------------------------------------------------------------------------
class InvalidProgressValue(ProgressionError):
    """Negative increment or negative absolute value.

    Returned on :class:`~clockwork.engine.progression.ProgressResult`
    rather than raised; the ledger is left untouched.
    """

    def __init__(self, value: int, reason: str) -> None:
        super().__init__(f"Invalid progress value {value}: {reason}")
        self.value = value
        self.reason = reason


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class StoreConflict(ProgressionError):
    """Transient concurrent-update conflict.  The caller retries the call."""
