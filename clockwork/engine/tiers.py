"""
clockwork.engine.tiers — Static Tier Catalog
==============================================

Six ordered tiers (Bronze → Master).  A tier's ``id`` is both its storage
key and its sort key; tier 1 is the unique entry point and tier 6 is
terminal.  Each series scales its base requirement and base reward by the
tier multiplier.

This module is pure lookup — no database I/O, no mutable state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from clockwork.engine.errors import TierNotFound

__all__ = [
    "Tier",
    "TierProgress",
    "TIERS",
    "ENTRY_TIER_ID",
    "TERMINAL_TIER_ID",
    "tier_by_id",
    "next_tier",
    "scale_requirement",
    "scale_reward",
    "tier_progress",
    "round_half_up",
]


@dataclass(frozen=True, slots=True)
class Tier:
    id: int
    display_name: str
    multiplier: int
    reward_xp: int
    color: str
    icon: str
    description: str

    @property
    def css_class(self) -> str:
        return f"tier-{self.display_name.lower()}"


@dataclass(frozen=True, slots=True)
class TierProgress:
    percentage: int
    current: int
    target: int
    remaining: int


# ---------------------------------------------------------------------------
# The catalog
# ---------------------------------------------------------------------------
TIERS: tuple[Tier, ...] = (
    Tier(1, "Bronze", 1, 50, "#cd7f32", "trophy-bronze", "First steps on your journey"),
    Tier(2, "Silver", 2, 150, "#c0c0c0", "trophy-silver", "Rising through the ranks"),
    Tier(3, "Gold", 4, 300, "#ffd700", "trophy-gold", "Becoming a notable member"),
    Tier(4, "Platinum", 8, 500, "#e5e4e2", "trophy-platinum", "Elite achievement status"),
    Tier(5, "Diamond", 12, 1000, "#b9f2ff", "trophy-diamond", "Master of Web3 gaming"),
    Tier(6, "Master", 18, 2000, "#ff7700", "trophy-master", "Legendary guild status"),
)

ENTRY_TIER_ID = TIERS[0].id
TERMINAL_TIER_ID = TIERS[-1].id

_BY_ID: dict[int, Tier] = {t.id: t for t in TIERS}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def tier_by_id(tier_id: int) -> Tier:
    """Return the tier with *tier_id*.

    Raises
    ------
    TierNotFound
        If *tier_id* is outside 1..6.  Callers validate or clamp first.
    """
    tier = _BY_ID.get(tier_id)
    if tier is None:
        raise TierNotFound(tier_id)
    return tier


def next_tier(tier_id: int) -> Tier | None:
    """Tier following *tier_id*, or None at the terminal tier."""
    tier_by_id(tier_id)
    return _BY_ID.get(tier_id + 1)


# ---------------------------------------------------------------------------
# Scaling
# ---------------------------------------------------------------------------
def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def scale_requirement(base: int, tier_id: int) -> int:
    """``round(base * tier.multiplier)``."""
    return round_half_up(base * tier_by_id(tier_id).multiplier)


def scale_reward(base: int, tier_id: int) -> int:
    """Same scaling as :func:`scale_requirement`, applied to rewards."""
    return round_half_up(base * tier_by_id(tier_id).multiplier)


def tier_progress(current: int, target: int) -> TierProgress:
    """Progress toward *target*, capped at 100 %."""
    if target <= 0:
        return TierProgress(100, current, target, 0)
    percentage = min(100, math.floor(current / target * 100))
    return TierProgress(
        percentage=percentage,
        current=current,
        target=target,
        remaining=max(0, target - current),
    )
