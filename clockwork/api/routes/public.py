"""
clockwork.api.routes.public — Read-only public endpoints
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from clockwork.api.deps import get_cache, get_price_service, get_session
from clockwork.constants import category_label, format_reward
from clockwork.database.models import AchievementSeries, GuildAchievement
from clockwork.engine.cache import CatalogCache
from clockwork.engine.tiers import TIERS, tier_by_id
from clockwork.services.price_service import TokenPriceService

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def achievement_dict(a: GuildAchievement) -> dict:
    tier = tier_by_id(a.tier_id)
    return {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "icon": a.icon,
        "category": a.category,
        "category_label": category_label(a.category),
        "series_id": a.series_id,
        "tier_id": a.tier_id,
        "tier_name": tier.display_name,
        "tier_class": tier.css_class,
        "requirement_type": a.requirement_type,
        "requirement_value": a.requirement_value,
        "reward_type": a.reward_type,
        "reward_value": a.reward_value,
        "reward_label": format_reward(a.reward_type, a.reward_value),
        "is_active": a.is_active,
    }


def series_dict(s: AchievementSeries) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "description": s.description,
        "base_icon": s.base_icon,
        "category": s.category,
        "requirement_type": s.requirement_type,
        "base_requirement_value": s.base_requirement_value,
        "base_reward_type": s.base_reward_type,
        "base_reward_value": s.base_reward_value,
        "max_tier": s.max_tier,
        "is_active": s.is_active,
        "tiers": [achievement_dict(a) for a in s.tiers if a.is_active],
    }


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@router.get("/tiers")
def list_tiers():
    return {
        "tiers": [
            {
                "id": t.id,
                "name": t.display_name,
                "multiplier": t.multiplier,
                "reward_xp": t.reward_xp,
                "color": t.color,
                "icon": t.icon,
                "description": t.description,
            }
            for t in TIERS
        ]
    }


@router.get("/series")
def list_series(session: Session = Depends(get_session)):
    rows = session.scalars(
        select(AchievementSeries)
        .options(selectinload(AchievementSeries.tiers))
        .where(AchievementSeries.is_active.is_(True))
        .order_by(AchievementSeries.id)
    ).all()
    return {"series": [series_dict(s) for s in rows]}


@router.get("/achievements")
def list_achievements(session: Session = Depends(get_session)):
    rows = session.scalars(
        select(GuildAchievement)
        .outerjoin(AchievementSeries, GuildAchievement.series_id == AchievementSeries.id)
        .where(
            GuildAchievement.is_active.is_(True),
            (GuildAchievement.series_id.is_(None)) | (AchievementSeries.is_active.is_(True)),
        )
        .order_by(GuildAchievement.category, GuildAchievement.id)
    ).all()
    return {"achievements": [achievement_dict(a) for a in rows]}


@router.get("/requirement-types")
def list_requirement_types(cache: CatalogCache = Depends(get_cache)):
    """Requirement types tracked by at least one active achievement."""
    return {"requirement_types": cache.requirement_types()}


# ---------------------------------------------------------------------------
# GET /token-price
# ---------------------------------------------------------------------------
@router.get("/token-price")
def token_price(prices: TokenPriceService = Depends(get_price_service)):
    price = prices.get_price()
    return {
        "symbol": price.symbol,
        "price": price.price,
        "synthetic": price.synthetic,
        "stale": price.stale,
    }
