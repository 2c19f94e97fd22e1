"""
clockwork.api.routes.achievements — User progress, claims & progress reports
=============================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from clockwork.api.deps import (
    get_cache,
    get_config,
    get_current_user,
    get_engine,
    get_service_caller,
)
from clockwork.config import ClockworkConfig
from clockwork.constants import MAX_RECENT_LIMIT, format_reward
from clockwork.engine.cache import CatalogCache
from clockwork.engine.events import ProgressEvent, ProgressMode
from clockwork.engine.progression import CompletionEvent
from clockwork.services import progress_service
from clockwork.services.notification_service import (
    build_claim_notification,
    build_unlock_notification,
)

router = APIRouter(tags=["achievements"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ProgressReport(BaseModel):
    user_id: int
    requirement_type: str = Field(min_length=1, max_length=50)
    value: int = 1
    mode: ProgressMode = ProgressMode.INCREMENT
    delivery_key: str | None = Field(default=None, max_length=128)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def completion_dict(event: CompletionEvent) -> dict:
    return {
        "achievement_id": event.achievement_id,
        "name": event.name,
        "series_id": event.series_id,
        "tier_id": event.tier_id,
        "completed_at": _iso(event.completed_at),
        "reward": {
            "reward_type": event.reward.reward_type,
            "reward_value": event.reward.reward_value,
            "bonus_xp": event.reward.bonus_xp,
            "label": format_reward(event.reward.reward_type, event.reward.reward_value),
        },
        "notification": build_unlock_notification(
            event.user_id,
            event.achievement_id,
            event.name,
            event.reward.reward_type,
            event.reward.reward_value,
        ),
    }


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------
@router.get("/user/achievements")
def my_achievements(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    items = progress_service.list_achievements(engine, user["user_id"])
    for item in items:
        item["completed_at"] = _iso(item["completed_at"])
    return {"achievements": items}


@router.get("/user/series")
def my_series(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    items = progress_service.list_series_progress(engine, user["user_id"])
    for item in items:
        item["completed_at"] = _iso(item["completed_at"])
    return {"series": items}


@router.get("/user/achievements/completed")
def my_recent_completions(
    limit: int = Query(1, ge=1, le=MAX_RECENT_LIMIT),
    since: datetime | None = Query(None),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: ClockworkConfig = Depends(get_config),
):
    rows = progress_service.poll_recent_completions(
        engine, user["user_id"], since=since, limit=limit,
        max_limit=cfg.recent_achievements_limit,    )
    return {
        "achievements": [
            {
                "achievement_id": r.achievement_id,
                "name": r.name,
                "description": r.description,
                "icon": r.icon,
                "tier_id": r.tier_id,
                "series_id": r.series_id,
                "reward_type": r.reward_type,
                "reward_value": r.reward_value,
                "completed_at": _iso(r.completed_at),
            }
            for r in rows
        ]
    }


@router.post("/user/achievements/{achievement_id}/claim")
def claim(
    achievement_id: int,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    reward = progress_service.claim_reward(engine, user["user_id"], achievement_id)
    link = cache.achievement_link(achievement_id)
    name = link.name if link else ""
    return {
        "achievement_id": achievement_id,
        "reward_type": reward.reward_type,
        "reward_value": reward.reward_value,
        "bonus_xp": reward.bonus_xp,
        "label": format_reward(reward.reward_type, reward.reward_value),
        "notification": build_claim_notification(
            user["user_id"], achievement_id, name, reward.reward_type, reward.reward_value,
        ),
    }


# ---------------------------------------------------------------------------
# Feature collaborators
# ---------------------------------------------------------------------------
@router.post("/progress")
def report_progress(
    body: ProgressReport,
    caller: dict = Depends(get_service_caller),
    engine: Engine = Depends(get_engine),
    cache: CatalogCache = Depends(get_cache),
):
    result = progress_service.record_progress(
        engine,
        cache,
        ProgressEvent(
            user_id=body.user_id,
            requirement_type=body.requirement_type,
            value=body.value,
            mode=body.mode,
            delivery_key=body.delivery_key,
        ),
    )
    return {
        "duplicate": result.duplicate,
        "rejected": str(result.rejected) if result.rejected else None,
        "updated_achievement_ids": result.updated_achievement_ids,
        "advanced_series": {str(k): v for k, v in result.advanced_series.items()},
        "completions": [completion_dict(e) for e in result.events],
    }
