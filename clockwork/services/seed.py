"""
clockwork.services.seed — Database Seed Service
================================================

Seeds the static tier rows, then the default series and standalone
achievements from YAML fixture files in the ``seeds/`` directory.

YAML is used only for initial seeding.  Post-deployment, the catalog is
managed through the admin API.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from clockwork.database.models import AchievementSeries, AchievementTierRow, GuildAchievement
from clockwork.engine.tiers import TIERS
from clockwork.services.catalog_service import sync_tier_rows

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Resolve the seeds directory relative to the project root
_SEEDS_DIR = Path(__file__).resolve().parent.parent.parent / "seeds"


def _load_yaml(filename: str, seeds_dir: Path | None = None) -> Any:
    """Load a YAML file from the seeds directory."""
    path = (seeds_dir or _SEEDS_DIR) / filename
    if not path.exists():
        logger.warning("Seed file not found: %s", path)
        return {}
    with open(path, encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def seed_tiers(engine: Engine) -> int:
    """Insert any of the six static tiers missing from achievement_tiers."""
    with Session(engine) as session:
        existing = set(session.scalars(select(AchievementTierRow.id)).all())
        count = 0
        for tier in TIERS:
            if tier.id in existing:
                continue
            session.add(AchievementTierRow(
                id=tier.id,
                name=tier.display_name,
                multiplier=tier.multiplier,
                reward_xp=tier.reward_xp,
                color=tier.color,
                icon=tier.icon,
                description=tier.description,
            ))
            count += 1
        session.commit()
    if count:
        logger.info("Seeded %d achievement tiers.", count)
    return count


def _seed_series(session: Session, seeds_dir: Path | None) -> int:
    data = _load_yaml("series.yaml", seeds_dir)
    count = 0
    for s in data.get("series") or []:
        series = AchievementSeries(
            name=s["name"],
            description=s.get("description", ""),
            base_icon=s.get("base_icon", "trophy"),
            category=s.get("category", "gaming"),
            requirement_type=s["requirement_type"],
            base_requirement_value=s["base_requirement_value"],
            base_reward_type=s.get("base_reward_type", "tokens"),
            base_reward_value=s["base_reward_value"],
            max_tier=s.get("max_tier", 6),
            is_active=True,
        )
        session.add(series)
        session.flush()
        sync_tier_rows(session, series)
        count += 1
    logger.info("Seeded %d achievement series.", count)
    return count


def _seed_standalone(session: Session, seeds_dir: Path | None) -> int:
    data = _load_yaml("achievements.yaml", seeds_dir)
    count = 0
    for a in data.get("achievements") or []:
        session.add(GuildAchievement(
            series_id=None,
            tier_id=1,
            name=a["name"],
            description=a.get("description", ""),
            icon=a.get("icon", "trophy"),
            category=a.get("category", "gaming"),
            requirement_type=a["requirement_type"],
            requirement_value=a["requirement_value"],
            reward_type=a.get("reward_type", "tokens"),
            reward_value=a.get("reward_value", 0),
            is_active=True,
        ))
        count += 1
    logger.info("Seeded %d standalone achievements.", count)
    return count


def seed_database(engine: Engine, seeds_dir: Path | None = None) -> bool:
    """Seed the default catalog if no achievements exist yet.

    Idempotent: returns False without writing when the catalog is
    already populated.
    """
    seed_tiers(engine)
    with Session(engine) as session:
        if session.scalar(select(GuildAchievement.id).limit(1)) is not None:
            logger.info("Achievement catalog already seeded — skipping.")
            return False
        _seed_series(session, seeds_dir)
        _seed_standalone(session, seeds_dir)
        session.commit()
    return True
