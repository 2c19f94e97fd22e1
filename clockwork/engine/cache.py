"""
clockwork.engine.cache — In-Memory Achievement Catalog Cache
==============================================================

The progression pipeline resolves "which achievements track this
requirement type?" on every activity report.  The catalog changes rarely
(admin edits), so it is snapshotted in memory as immutable
:class:`~clockwork.engine.progression.TierChain` objects and swapped
atomically under a lock on reload.

Catalog writes call :meth:`CatalogCache.handle_notify` with the table they
touched so the relevant partition is rebuilt.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from clockwork.database.models import AchievementSeries, GuildAchievement
from clockwork.engine.progression import ChainLink, TierChain

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Tables whose mutation requires a catalog reload.
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset({
    "achievement_series",
    "guild_achievements",
})


def _link(achievement: GuildAchievement) -> ChainLink:
    return ChainLink(
        achievement_id=achievement.id,
        tier_id=achievement.tier_id,
        name=achievement.name,
        requirement_value=achievement.requirement_value,
        reward_type=achievement.reward_type,
        reward_value=achievement.reward_value,
    )


class CatalogCache:
    """Thread-safe snapshot of active series and achievements.

    Usage:
        cache = CatalogCache(engine)
        cache.load_all()

        chains = cache.chains_for("chat_message")
        chain = cache.chain_for_achievement(42)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        # requirement_type → list[TierChain]
        self._by_requirement: dict[str, list[TierChain]] = {}
        # achievement_id → TierChain
        self._by_achievement: dict[int, TierChain] = {}
        self._loaded = False

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Rebuild every chain from the database.  Call on startup."""
        with Session(self._engine) as session:
            series_rows = session.scalars(
                select(AchievementSeries).where(AchievementSeries.is_active.is_(True))
            ).all()
            achievements = session.scalars(
                select(GuildAchievement)
                .where(GuildAchievement.is_active.is_(True))
                .order_by(GuildAchievement.tier_id, GuildAchievement.id)
            ).all()

            active_series = {s.id: s for s in series_rows}
            links_by_series: dict[int, list[ChainLink]] = {}
            chains: list[TierChain] = []

            for ach in achievements:
                if ach.series_id is None:
                    chains.append(TierChain(
                        requirement_type=ach.requirement_type,
                        links=(_link(ach),),
                        name=ach.name,
                    ))
                elif ach.series_id in active_series:
                    series = active_series[ach.series_id]
                    if ach.tier_id <= series.max_tier:
                        links_by_series.setdefault(ach.series_id, []).append(_link(ach))

            for series_id, links in links_by_series.items():
                series = active_series[series_id]
                links.sort(key=lambda link: link.tier_id)
                chains.append(TierChain(
                    requirement_type=series.requirement_type,
                    links=tuple(links),
                    series_id=series_id,
                    max_tier=series.max_tier,
                    base_reward_value=series.base_reward_value,
                    name=series.name,
                ))

        by_requirement: dict[str, list[TierChain]] = {}
        by_achievement: dict[int, TierChain] = {}
        for chain in chains:
            by_requirement.setdefault(chain.requirement_type, []).append(chain)
            for link in chain.links:
                by_achievement[link.achievement_id] = chain

        with self._lock:
            self._by_requirement = by_requirement
            self._by_achievement = by_achievement
            self._loaded = True

        logger.info(
            "CatalogCache loaded: %d chains, %d achievements, %d requirement types",
            len(chains), len(by_achievement), len(by_requirement),
        )

    # -------------------------------------------------------------------
    # Reads (thread-safe)
    # -------------------------------------------------------------------
    def chains_for(self, requirement_type: str) -> list[TierChain]:
        with self._lock:
            return list(self._by_requirement.get(requirement_type, []))

    def chain_for_achievement(self, achievement_id: int) -> TierChain | None:
        with self._lock:
            return self._by_achievement.get(achievement_id)

    def achievement_link(self, achievement_id: int) -> ChainLink | None:
        chain = self.chain_for_achievement(achievement_id)
        if chain is None:
            return None
        for link in chain.links:
            if link.achievement_id == achievement_id:
                return link
        return None

    def requirement_types(self) -> list[str]:
        with self._lock:
            return sorted(self._by_requirement)

    @property
    def loaded(self) -> bool:
        return self._loaded

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload the catalog after a write to *table_name*."""
        table_name = table_name.strip().lower()
        if table_name not in ALLOWED_NOTIFY_TABLES:
            logger.warning("Unknown table in catalog notify: %s — ignoring", table_name)
            return
        logger.info("Catalog cache invalidation for table: %s", table_name)
        self.load_all()
