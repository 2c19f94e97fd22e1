"""
clockwork.engine.progression — Progression Rules
==================================================

Pure calculation for the progression pipeline — no database I/O.

Every achievement is evaluated as part of a :class:`TierChain`.  A series
is a chain of one link per tier (1..max_tier); a standalone achievement is
a chain of exactly one link with no series cursor, so the pipeline never
branches on "series vs. standalone" beyond whether a cursor is persisted.

Rules implemented here:

* the *active link* of a chain is its lowest tier not yet completed;
* a newly-created counter for a later tier starts from the previous tier's
  frozen value, because every tier of a series measures the same
  cumulative counter;
* counters only move upward (increment, or set-to with monotonic max);
* the series cursor moves at most one step per call, and only onto a
  completed tier (contiguous completed prefix).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from clockwork.engine.errors import InvalidProgressValue
from clockwork.engine.events import ProgressMode
from clockwork.engine.tiers import scale_reward, tier_by_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Catalog snapshot types (built by engine.cache)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChainLink:
    """One achievement inside a chain."""

    achievement_id: int
    tier_id: int
    name: str
    requirement_value: int
    reward_type: str
    reward_value: int


@dataclass(frozen=True, slots=True)
class TierChain:
    """Ordered achievements tracking one requirement type.

    Parameters
    ----------
    requirement_type : Raw activity counter this chain tracks.
    links : Active links, ordered by ``tier_id``.
    series_id : Owning series, or None for a standalone achievement.
    max_tier : Terminal tier of the chain (1 for standalone).
    base_reward_value : Series base reward scaled per tier; None when
        standalone (the link's own ``reward_value`` is used).
    """

    requirement_type: str
    links: tuple[ChainLink, ...]
    series_id: int | None = None
    max_tier: int = 1
    base_reward_value: int | None = None
    name: str = ""

    @property
    def is_series(self) -> bool:
        return self.series_id is not None

    def link_for_tier(self, tier_id: int) -> ChainLink | None:
        for link in self.links:
            if link.tier_id == tier_id:
                return link
        return None

    def previous_link(self, link: ChainLink) -> ChainLink | None:
        """The link just below *link* in tier order, if any."""
        previous = None
        for candidate in self.links:
            if candidate.tier_id >= link.tier_id:
                break
            previous = candidate
        return previous


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Reward:
    achievement_id: int
    reward_type: str
    reward_value: int
    bonus_xp: int = 0


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    """One-time signal that a counter crossed an achievement threshold."""

    achievement_id: int
    user_id: int
    tier_id: int
    reward: Reward
    completed_at: datetime
    series_id: int | None = None
    name: str = ""


@dataclass(slots=True)
class ProgressResult:
    """Outcome of one ``record_progress`` call.

    ``rejected`` carries an :class:`InvalidProgressValue` when the input
    was refused; the ledger is untouched in that case.  ``duplicate`` is
    True when the delivery key had already been processed.
    """

    events: list[CompletionEvent] = field(default_factory=list)
    updated_achievement_ids: list[int] = field(default_factory=list)
    advanced_series: dict[int, int] = field(default_factory=dict)
    duplicate: bool = False
    rejected: InvalidProgressValue | None = None

    @property
    def changed(self) -> bool:
        return bool(self.updated_achievement_ids or self.advanced_series)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------
def validate_value(value: int, mode: ProgressMode) -> InvalidProgressValue | None:
    """Return an error for inputs that can never be applied, else None."""
    if value < 0:
        reason = "negative increment" if mode == ProgressMode.INCREMENT else "negative absolute value"
        return InvalidProgressValue(value, reason)
    return None


def active_link(chain: TierChain, completed_tiers: set[int]) -> ChainLink | None:
    """Lowest link whose achievement is not completed, or None when done."""
    for link in chain.links:
        if link.tier_id not in completed_tiers:
            return link
    return None


def carried_value(
    chain: TierChain, link: ChainLink, values_by_tier: dict[int, int],
) -> int:
    """Starting counter for a link that has no ledger row yet."""
    previous = chain.previous_link(link)
    if previous is None:
        return 0
    return values_by_tier.get(previous.tier_id, 0)


def target_value(current: int, value: int, mode: ProgressMode) -> int | None:
    """New counter value, or None when the counter would not move upward."""
    if mode == ProgressMode.ABSOLUTE:
        return value if value > current else None
    if value <= 0:
        return None
    return current + value


def crosses_threshold(value: int, link: ChainLink) -> bool:
    return value >= link.requirement_value


def next_cursor(current_tier: int, completed_tiers: set[int], max_tier: int) -> int:
    """Advance *current_tier* by one if the next tier is completed.

    Never moves more than one step and never past *max_tier*; a completed
    tier beyond an incomplete one is left for later calls.
    """
    candidate = current_tier + 1
    if candidate <= max_tier and candidate in completed_tiers:
        return candidate
    return current_tier


def make_reward(chain: TierChain, link: ChainLink) -> Reward:
    """Reward paid for completing *link*, scaled by its tier."""
    tier = tier_by_id(link.tier_id)
    if chain.base_reward_value is not None:
        value = scale_reward(chain.base_reward_value, link.tier_id)
    else:
        value = link.reward_value
    return Reward(
        achievement_id=link.achievement_id,
        reward_type=link.reward_type,
        reward_value=value,
        bonus_xp=tier.reward_xp,
    )


def completion_event(
    chain: TierChain, link: ChainLink, user_id: int, completed_at: datetime,
) -> CompletionEvent:
    event = CompletionEvent(
        achievement_id=link.achievement_id,
        user_id=user_id,
        tier_id=link.tier_id,
        reward=make_reward(chain, link),
        completed_at=completed_at,
        series_id=chain.series_id,
        name=link.name,
    )
    logger.info(
        "Achievement completed: %s (id=%d, tier=%d) for user %d",
        link.name, link.achievement_id, link.tier_id, user_id,
    )
    return event
