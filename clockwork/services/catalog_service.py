"""
clockwork.services.catalog_service — Catalog Administration
============================================================

Admin mutations of series and achievement definitions.  Every write
follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSON
  5. Commit

Callers reload the :class:`~clockwork.engine.cache.CatalogCache` after a
successful mutation (``cache.handle_notify(table)``).

A series owns one generated achievement per tier; their requirement and
reward values are always ``round_half_up(base × tier.multiplier)`` and are
re-scaled here whenever the series base values change.  Tier rows are never
deleted while the series exists: tiers above a lowered ``max_tier`` are
deactivated so existing progress survives.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from clockwork.database.models import (
    AchievementCategory,
    AchievementSeries,
    AdminActionType,
    AdminLog,
    GuildAchievement,
    RewardType,
    UserSeriesProgress,
)
from clockwork.engine.errors import AchievementNotFound, SeriesNotFound
from clockwork.engine.tiers import TERMINAL_TIER_ID, TIERS, scale_requirement, scale_reward

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

SERIES_FIELDS = frozenset({
    "name", "description", "base_icon", "category", "requirement_type",
    "base_requirement_value", "base_reward_type", "base_reward_value",
    "max_tier", "is_active",
})
STANDALONE_FIELDS = frozenset({
    "name", "description", "icon", "category", "requirement_type",
    "requirement_value", "reward_type", "reward_value", "is_active",
})
# Changing any of these re-generates the series' tier rows.
_RESCALE_FIELDS = frozenset({
    "name", "base_icon", "category", "requirement_type",
    "base_requirement_value", "base_reward_type", "base_reward_value", "max_tier",
})


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=str(action_type),
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


def _series_snapshot(series: AchievementSeries) -> dict:
    snapshot = row_to_dict(series)
    snapshot["tiers"] = [row_to_dict(t) for t in series.tiers]
    return snapshot


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _validate_category(category: str) -> str:
    try:
        return AchievementCategory(category).value
    except ValueError:
        raise ValueError(f"Unknown category: {category!r}") from None


def _validate_reward_type(reward_type: str) -> str:
    try:
        return RewardType(reward_type).value
    except ValueError:
        raise ValueError(f"Unknown reward type: {reward_type!r}") from None


def _validate_series_values(
    base_requirement_value: int, base_reward_value: int, max_tier: int,
) -> None:
    if base_requirement_value < 1:
        raise ValueError("base_requirement_value must be >= 1")
    if base_reward_value < 1:
        raise ValueError("base_reward_value must be >= 1")
    if not 1 <= max_tier <= TERMINAL_TIER_ID:
        raise ValueError(f"max_tier must be between 1 and {TERMINAL_TIER_ID}")


def _validate_standalone_values(requirement_value: int, reward_value: int) -> None:
    if requirement_value < 1:
        raise ValueError("requirement_value must be >= 1")
    if reward_value < 0:
        raise ValueError("reward_value must be >= 0")


def tier_achievement_name(series_name: str, tier_name: str) -> str:
    return f"{series_name} ({tier_name})"


# ---------------------------------------------------------------------------
# Tier generation
# ---------------------------------------------------------------------------
def sync_tier_rows(session: Session, series: AchievementSeries) -> None:
    """Bring the series' generated achievements in line with its base values."""
    existing = {ach.tier_id: ach for ach in series.tiers}
    for tier in TIERS:
        ach = existing.get(tier.id)
        if tier.id > series.max_tier:
            if ach is not None:
                ach.is_active = False
            continue
        if ach is None:
            ach = GuildAchievement(series_id=series.id, tier_id=tier.id)
            series.tiers.append(ach)
        ach.name = tier_achievement_name(series.name, tier.display_name)
        ach.description = series.description or tier.description
        ach.icon = series.base_icon
        ach.category = series.category
        ach.requirement_type = series.requirement_type
        ach.requirement_value = scale_requirement(series.base_requirement_value, tier.id)
        ach.reward_type = series.base_reward_type
        ach.reward_value = scale_reward(series.base_reward_value, tier.id)
        ach.is_active = True
    session.flush()


def _load_series(session: Session, series_id: int) -> AchievementSeries:
    series = session.scalar(
        select(AchievementSeries)
        .options(selectinload(AchievementSeries.tiers))
        .where(AchievementSeries.id == series_id)
    )
    if series is None:
        raise SeriesNotFound(series_id)
    return series


def _detach(session: Session, series: AchievementSeries) -> AchievementSeries:
    session.refresh(series)
    for ach in series.tiers:
        session.refresh(ach)
    session.expunge_all()
    return series


# ---------------------------------------------------------------------------
# Series CRUD
# ---------------------------------------------------------------------------
def create_series(
    engine: Engine,
    *,
    name: str,
    requirement_type: str,
    base_requirement_value: int,
    base_reward_value: int,
    base_reward_type: str = RewardType.TOKENS.value,
    max_tier: int = TERMINAL_TIER_ID,
    description: str = "",
    base_icon: str = "trophy",
    category: str = AchievementCategory.GAMING.value,
    actor_id: int,
) -> AchievementSeries:
    """Create a series together with one achievement per tier 1..max_tier."""
    _validate_series_values(base_requirement_value, base_reward_value, max_tier)
    series = AchievementSeries(
        name=name,
        description=description,
        base_icon=base_icon,
        category=_validate_category(category),
        requirement_type=requirement_type,
        base_requirement_value=base_requirement_value,
        base_reward_type=_validate_reward_type(base_reward_type),
        base_reward_value=base_reward_value,
        max_tier=max_tier,
        is_active=True,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(series)
        session.flush()
        sync_tier_rows(session, series)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table="achievement_series",
            target_id=str(series.id),
            before=None,
            after=_series_snapshot(series),
        )
        session.commit()
        logger.info("Series %r created (id=%d, %d tiers)", name, series.id, max_tier)
        return _detach(session, series)


def update_series(
    engine: Engine,
    *,
    series_id: int,
    actor_id: int,
    **kwargs: Any,
) -> AchievementSeries:
    """Update a series; tier rows are re-scaled when base values change.

    Completed progress stays completed when a requirement is raised.
    """
    unknown = set(kwargs) - SERIES_FIELDS
    if unknown:
        raise ValueError(f"Unknown series fields: {sorted(unknown)}")

    with Session(engine, expire_on_commit=False) as session:
        series = _load_series(session, series_id)
        before = _series_snapshot(series)

        if "category" in kwargs:
            kwargs["category"] = _validate_category(kwargs["category"])
        if "base_reward_type" in kwargs:
            kwargs["base_reward_type"] = _validate_reward_type(kwargs["base_reward_type"])
        _validate_series_values(
            kwargs.get("base_requirement_value", series.base_requirement_value),
            kwargs.get("base_reward_value", series.base_reward_value),
            kwargs.get("max_tier", series.max_tier),
        )

        for key, value in kwargs.items():
            setattr(series, key, value)
        session.flush()
        if _RESCALE_FIELDS & set(kwargs):
            sync_tier_rows(session, series)

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="achievement_series",
            target_id=str(series.id),
            before=before,
            after=_series_snapshot(series),
        )
        session.commit()
        logger.info("Series %d updated: %s", series_id, ", ".join(sorted(kwargs)))
        return _detach(session, series)


def set_series_active(
    engine: Engine, *, series_id: int, is_active: bool, actor_id: int,
) -> AchievementSeries:
    """Enable or disable a whole series without touching its tier rows."""
    with Session(engine, expire_on_commit=False) as session:
        series = _load_series(session, series_id)
        before = row_to_dict(series)
        series.is_active = is_active
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="achievement_series",
            target_id=str(series.id),
            before=before,
            after=row_to_dict(series),
        )
        session.commit()
        logger.info("Series %d %s", series_id, "activated" if is_active else "deactivated")
        return _detach(session, series)


def delete_series(engine: Engine, *, series_id: int, actor_id: int) -> bool:
    """Delete a series, its tier achievements and all progress against them.

    Returns ``True`` if the series existed.
    """
    with Session(engine) as session:
        series = session.get(AchievementSeries, series_id)
        if series is None:
            return False
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_table="achievement_series",
            target_id=str(series.id),
            before=_series_snapshot(series),
            after=None,
        )
        session.execute(
            delete(UserSeriesProgress).where(UserSeriesProgress.series_id == series_id)
        )
        session.delete(series)
        session.commit()
    logger.info("Series %d deleted", series_id)
    return True


def list_series(engine: Engine, *, include_inactive: bool = False) -> list[AchievementSeries]:
    """All series with their tier achievements loaded (detached)."""
    with Session(engine) as session:
        stmt = (
            select(AchievementSeries)
            .options(selectinload(AchievementSeries.tiers))
            .order_by(AchievementSeries.id)
        )
        if not include_inactive:
            stmt = stmt.where(AchievementSeries.is_active.is_(True))
        rows = session.scalars(stmt).all()
        session.expunge_all()
        return list(rows)


# ---------------------------------------------------------------------------
# Standalone achievement CRUD
# ---------------------------------------------------------------------------
def create_standalone_achievement(
    engine: Engine,
    *,
    name: str,
    requirement_type: str,
    requirement_value: int,
    reward_value: int,
    reward_type: str = RewardType.TOKENS.value,
    description: str = "",
    icon: str = "trophy",
    category: str = AchievementCategory.GAMING.value,
    actor_id: int,
) -> GuildAchievement:
    """Create an achievement that belongs to no series (a 1-tier chain)."""
    _validate_standalone_values(requirement_value, reward_value)
    achievement = GuildAchievement(
        series_id=None,
        tier_id=1,
        name=name,
        description=description,
        icon=icon,
        category=_validate_category(category),
        requirement_type=requirement_type,
        requirement_value=requirement_value,
        reward_type=_validate_reward_type(reward_type),
        reward_value=reward_value,
        is_active=True,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(achievement)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table="guild_achievements",
            target_id=str(achievement.id),
            before=None,
            after=row_to_dict(achievement),
        )
        session.commit()
        session.refresh(achievement)
        session.expunge(achievement)
    logger.info("Standalone achievement %r created (id=%d)", name, achievement.id)
    return achievement


def _load_standalone(session: Session, achievement_id: int) -> GuildAchievement:
    achievement = session.get(GuildAchievement, achievement_id)
    if achievement is None:
        raise AchievementNotFound(achievement_id)
    if achievement.series_id is not None:
        raise ValueError(
            f"Achievement {achievement_id} belongs to series {achievement.series_id}; "
            "edit the series instead"
        )
    return achievement


def update_standalone_achievement(
    engine: Engine,
    *,
    achievement_id: int,
    actor_id: int,
    **kwargs: Any,
) -> GuildAchievement:
    """Update a standalone achievement."""
    unknown = set(kwargs) - STANDALONE_FIELDS
    if unknown:
        raise ValueError(f"Unknown achievement fields: {sorted(unknown)}")

    with Session(engine, expire_on_commit=False) as session:
        achievement = _load_standalone(session, achievement_id)
        before = row_to_dict(achievement)

        if "category" in kwargs:
            kwargs["category"] = _validate_category(kwargs["category"])
        if "reward_type" in kwargs:
            kwargs["reward_type"] = _validate_reward_type(kwargs["reward_type"])
        _validate_standalone_values(
            kwargs.get("requirement_value", achievement.requirement_value),
            kwargs.get("reward_value", achievement.reward_value),
        )

        for key, value in kwargs.items():
            setattr(achievement, key, value)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="guild_achievements",
            target_id=str(achievement.id),
            before=before,
            after=row_to_dict(achievement),
        )
        session.commit()
        session.refresh(achievement)
        session.expunge(achievement)
    return achievement


def delete_achievement(engine: Engine, *, achievement_id: int, actor_id: int) -> bool:
    """Delete a standalone achievement and all progress against it.

    Returns ``True`` if the row existed and was deleted.  Series tier rows
    cannot be deleted individually.
    """
    with Session(engine) as session:
        achievement = session.get(GuildAchievement, achievement_id)
        if achievement is None:
            return False
        _load_standalone(session, achievement_id)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_table="guild_achievements",
            target_id=str(achievement.id),
            before=row_to_dict(achievement),
            after=None,
        )
        session.delete(achievement)
        session.commit()
    logger.info("Standalone achievement %d deleted", achievement_id)
    return True
