"""
clockwork.api.routes.admin — Catalog administration & manual grants
====================================================================

Every mutation reloads the in-memory catalog so the next progress report
sees the change.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from clockwork.api.deps import get_cache, get_current_admin, get_engine, get_session
from clockwork.api.routes.achievements import completion_dict
from clockwork.api.routes.public import achievement_dict, series_dict
from clockwork.database.models import AdminLog, GuildAchievement
from clockwork.engine.cache import CatalogCache
from clockwork.engine.tiers import TERMINAL_TIER_ID
from clockwork.services import catalog_service, progress_service

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SeriesCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    base_icon: str = "trophy"
    category: str = "gaming"
    requirement_type: str = Field(min_length=1, max_length=50)
    base_requirement_value: int
    base_reward_type: str = "tokens"
    base_reward_value: int
    max_tier: int = TERMINAL_TIER_ID


class SeriesUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    base_icon: str | None = None
    category: str | None = None
    requirement_type: str | None = None
    base_requirement_value: int | None = None
    base_reward_type: str | None = None
    base_reward_value: int | None = None
    max_tier: int | None = None
    is_active: bool | None = None


class AchievementCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    icon: str = "trophy"
    category: str = "gaming"
    requirement_type: str = Field(min_length=1, max_length=50)
    requirement_value: int
    reward_type: str = "tokens"
    reward_value: int = 0


class AchievementUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    category: str | None = None
    requirement_type: str | None = None
    requirement_value: int | None = None
    reward_type: str | None = None
    reward_value: int | None = None
    is_active: bool | None = None


class GrantAchievement(BaseModel):
    user_id: int
    reason: str | None = None


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------
@router.get("/series")
def list_series(
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    rows = catalog_service.list_series(engine, include_inactive=True)
    return {"series": [series_dict(s) for s in rows]}


@router.post("/series", status_code=201)
def create_series(
    body: SeriesCreate,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    try:
        series = catalog_service.create_series(
            engine, actor_id=admin["user_id"], **body.model_dump(),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    cache.handle_notify("achievement_series")
    return series_dict(series)


@router.patch("/series/{series_id}")
def update_series(
    series_id: int,
    body: SeriesUpdate,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    try:
        if set(changes) == {"is_active"}:
            series = catalog_service.set_series_active(
                engine, series_id=series_id, is_active=changes["is_active"],
                actor_id=admin["user_id"],
            )
        else:
            series = catalog_service.update_series(
                engine, series_id=series_id, actor_id=admin["user_id"], **changes,
            )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    cache.handle_notify("achievement_series")
    return series_dict(series)


@router.delete("/series/{series_id}")
def delete_series(
    series_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    if not catalog_service.delete_series(engine, series_id=series_id, actor_id=admin["user_id"]):
        raise HTTPException(404, "Series not found")
    cache.handle_notify("achievement_series")
    return {"deleted": True}


# ---------------------------------------------------------------------------
# Standalone achievements
# ---------------------------------------------------------------------------
@router.get("/achievements")
def list_achievements(
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    rows = session.scalars(
        select(GuildAchievement).order_by(GuildAchievement.series_id, GuildAchievement.tier_id)
    ).all()
    return {"achievements": [achievement_dict(a) for a in rows]}


@router.post("/achievements", status_code=201)
def create_achievement(
    body: AchievementCreate,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    try:
        achievement = catalog_service.create_standalone_achievement(
            engine, actor_id=admin["user_id"], **body.model_dump(),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    cache.handle_notify("guild_achievements")
    return achievement_dict(achievement)


@router.patch("/achievements/{achievement_id}")
def update_achievement(
    achievement_id: int,
    body: AchievementUpdate,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    try:
        achievement = catalog_service.update_standalone_achievement(
            engine, achievement_id=achievement_id, actor_id=admin["user_id"], **changes,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    cache.handle_notify("guild_achievements")
    return achievement_dict(achievement)


@router.delete("/achievements/{achievement_id}")
def delete_achievement(
    achievement_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    try:
        deleted = catalog_service.delete_achievement(
            engine, achievement_id=achievement_id, actor_id=admin["user_id"],
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    if not deleted:
        raise HTTPException(404, "Achievement not found")
    cache.handle_notify("guild_achievements")
    return {"deleted": True}


@router.post("/achievements/{achievement_id}/grant")
def grant_achievement(
    achievement_id: int,
    body: GrantAchievement,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    event = progress_service.grant_achievement(
        engine,
        cache,
        user_id=body.user_id,
        achievement_id=achievement_id,
        admin_id=admin["user_id"],
        reason=body.reason,
    )
    if event is None:
        raise HTTPException(409, "User has already completed this achievement.")
    return {"granted": True, "completion": completion_dict(event)}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit")
def audit_log(
    limit: int = Query(50, ge=1, le=500),
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    rows = session.scalars(
        select(AdminLog).order_by(AdminLog.id.desc()).limit(limit)
    ).all()
    return {
        "entries": [
            {
                "id": r.id,
                "actor_id": str(r.actor_id),
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
    }
