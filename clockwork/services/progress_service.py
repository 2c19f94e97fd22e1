"""
clockwork.services.progress_service — Progress Ledger & Reward Claims
======================================================================

Shared service module callable by the HTTP layer and by feature
collaborators in-process.  Applies activity reports to the progress
ledger, detects completions, advances series cursors and settles reward
claims.

Every ledger write is a single conditional UPDATE so concurrent reports
for the same (user, achievement) can neither lose increments nor complete
an achievement twice.  Series cursors are serialised with
``SELECT … FOR UPDATE`` on the series row plus a compare-and-swap on
``current_tier``.  Each call is one transaction: any conflict rolls the
whole call back and surfaces as :class:`StoreConflict`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, case, false, literal, null, select, true, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, joinedload

from clockwork.constants import MAX_RECENT_LIMIT
from clockwork.database.models import (
    AchievementSeries,
    AdminActionType,
    GuildAchievement,
    ProgressDelivery,
    User,
    UserAchievementProgress,
    UserSeriesProgress,
)
from clockwork.engine.errors import (
    AchievementNotFound,
    AlreadyClaimed,
    NotCompleted,
    StoreConflict,
)
from clockwork.engine.events import ProgressEvent, ProgressMode
from clockwork.engine.progression import (
    ChainLink,
    CompletionEvent,
    ProgressResult,
    Reward,
    TierChain,
    active_link,
    carried_value,
    completion_event,
    next_cursor,
    target_value,
    validate_value,
)
from clockwork.engine.tiers import ENTRY_TIER_ID, tier_by_id, tier_progress
from clockwork.services.catalog_service import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from clockwork.engine.cache import CatalogCache

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from the store."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def get_or_create_user(session: Session, user_id: int, username: str | None = None) -> User:
    """Fetch or insert the identity mirror row for *user_id*."""
    user = session.get(User, user_id)
    if user is not None:
        if username and user.username != username:
            user.username = username
        return user
    try:
        with session.begin_nested():   # SAVEPOINT
            user = User(id=user_id, username=username)
            session.add(user)
            session.flush()
    except IntegrityError:
        # Inserted concurrently by another request.
        user = session.get(User, user_id)
        if user is None:
            raise StoreConflict(f"User {user_id} could not be created") from None
    return user


def register_user(engine: Engine, user_id: int, username: str | None = None) -> int:
    """Create the user mirror plus zero-value rows for every entry point.

    Entry points are tier-1 achievements of active series and every active
    standalone achievement.  Existing rows are left alone.  Returns the
    number of progress rows created.
    """
    with Session(engine) as session:
        get_or_create_user(session, user_id, username)
        entry_ids = session.scalars(
            select(GuildAchievement.id)
            .outerjoin(AchievementSeries, GuildAchievement.series_id == AchievementSeries.id)
            .where(
                GuildAchievement.is_active.is_(True),
                GuildAchievement.tier_id == ENTRY_TIER_ID,
                (GuildAchievement.series_id.is_(None)) | (AchievementSeries.is_active.is_(True)),
            )
        ).all()
        existing = set(session.scalars(
            select(UserAchievementProgress.achievement_id).where(
                UserAchievementProgress.user_id == user_id
            )
        ).all())

        created = 0
        for achievement_id in entry_ids:
            if achievement_id in existing:
                continue
            session.add(UserAchievementProgress(
                user_id=user_id,
                achievement_id=achievement_id,
                current_value=0,
            ))
            created += 1
        session.commit()

    logger.info("Registered user %d (%d progress rows created)", user_id, created)
    return created


# ---------------------------------------------------------------------------
# Ledger primitives
# ---------------------------------------------------------------------------
def _lock_series(session: Session, user_id: int, chain: TierChain) -> UserSeriesProgress | None:
    if not chain.is_series:
        return None
    return session.scalar(
        select(UserSeriesProgress)
        .where(
            UserSeriesProgress.user_id == user_id,
            UserSeriesProgress.series_id == chain.series_id,
        )
        .with_for_update()
    )


def _load_rows(
    session: Session, user_id: int, chain: TierChain,
) -> dict[int, UserAchievementProgress]:
    ids = [link.achievement_id for link in chain.links]
    rows = session.scalars(
        select(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id.in_(ids),
        )
        .execution_options(populate_existing=True)
    ).all()
    return {row.achievement_id: row for row in rows}


def _completed_tiers(chain: TierChain, rows: dict[int, UserAchievementProgress]) -> set[int]:
    return {
        link.tier_id
        for link in chain.links
        if link.achievement_id in rows and rows[link.achievement_id].is_completed
    }


def _values_by_tier(chain: TierChain, rows: dict[int, UserAchievementProgress]) -> dict[int, int]:
    return {
        link.tier_id: rows[link.achievement_id].current_value
        for link in chain.links
        if link.achievement_id in rows
    }


def _insert_progress_row(
    session: Session, user_id: int, link: ChainLink, start: int, now: datetime,
) -> None:
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(UserAchievementProgress(
                user_id=user_id,
                achievement_id=link.achievement_id,
                current_value=start,
                updated_at=now,
            ))
            session.flush()
    except IntegrityError as exc:
        logger.info(
            "Concurrent first write for user %d achievement %d",
            user_id, link.achievement_id,
        )
        raise StoreConflict(
            f"Progress row for user {user_id} achievement {link.achievement_id} "
            "was created concurrently"
        ) from exc


def _apply_value(
    session: Session,
    user_id: int,
    link: ChainLink,
    value: int,
    mode: ProgressMode,
    now: datetime,
) -> UserAchievementProgress | None:
    """Move one counter with a single conditional UPDATE.

    Completion state is recomputed inside the same statement, guarded by
    ``is_completed = false``, so a completed row is never touched again.
    Returns the refreshed row when it changed, else None.
    """
    col = UserAchievementProgress.current_value
    if mode == ProgressMode.ABSOLUTE:
        new_value = literal(value)
        guards = [col < value]
    else:
        new_value = col + value
        guards = []
    completes = new_value >= link.requirement_value

    stmt = (
        update(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id == link.achievement_id,
            UserAchievementProgress.is_completed.is_(False),
            *guards,
        )
        .values(
            current_value=new_value,
            is_completed=case((completes, true()), else_=false()),
            completed_at=case(
                (completes, literal(now, DateTime(timezone=True))), else_=null()
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    changed = session.execute(stmt).rowcount

    row = session.scalar(
        select(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id == link.achievement_id,
        )
        .execution_options(populate_existing=True)
    )
    if changed:
        return row
    if row is not None and row.is_completed:
        # Completed by a concurrent writer between our read and the update.
        raise StoreConflict(
            f"Achievement {link.achievement_id} for user {user_id} changed concurrently"
        )
    return None


def _complete_row(
    session: Session, user_id: int, link: ChainLink, now: datetime,
) -> UserAchievementProgress:
    """Mark one incomplete row completed, raising its counter to the requirement.

    A counter already at or past the requirement (the requirement was
    lowered after it was reached) keeps its value.
    """
    col = UserAchievementProgress.current_value
    changed = session.execute(
        update(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id == link.achievement_id,
            UserAchievementProgress.is_completed.is_(False),
        )
        .values(
            current_value=case(
                (col < link.requirement_value, literal(link.requirement_value)), else_=col,
            ),
            is_completed=True,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    if not changed:
        raise StoreConflict(
            f"Achievement {link.achievement_id} for user {user_id} changed concurrently"
        )
    return session.scalar(
        select(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id == link.achievement_id,
        )
        .execution_options(populate_existing=True)
    )


def _advance_series(
    session: Session,
    user_id: int,
    chain: TierChain,
    series_row: UserSeriesProgress | None,
    completed_tiers: set[int],
    now: datetime,
) -> int | None:
    """Create or step the series cursor.  Returns the new tier if it moved."""
    current = series_row.current_tier if series_row is not None else 0
    new_tier = next_cursor(current, completed_tiers, chain.max_tier)
    link = chain.link_for_tier(new_tier) if new_tier != current else None
    finished = new_tier >= chain.max_tier

    if series_row is None:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(UserSeriesProgress(
                    user_id=user_id,
                    series_id=chain.series_id,
                    current_tier=new_tier,
                    highest_achievement_id=link.achievement_id if link else None,
                    is_completed=finished,
                    completed_at=now if finished else None,
                    updated_at=now,
                ))
                session.flush()
        except IntegrityError as exc:
            raise StoreConflict(
                f"Series {chain.series_id} cursor for user {user_id} was created concurrently"
            ) from exc
    elif link is not None:
        values: dict = {
            "current_tier": new_tier,
            "highest_achievement_id": link.achievement_id,
            "updated_at": now,
        }
        if finished:
            values["is_completed"] = True
            values["completed_at"] = now
        swapped = session.execute(
            update(UserSeriesProgress)
            .where(
                UserSeriesProgress.user_id == user_id,
                UserSeriesProgress.series_id == chain.series_id,
                UserSeriesProgress.current_tier == current,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not swapped:
            logger.info(
                "Series cursor CAS lost for user %d series %d (expected tier %d)",
                user_id, chain.series_id, current,
            )
            raise StoreConflict(
                f"Series {chain.series_id} cursor for user {user_id} moved concurrently"
            )

    if link is None:
        return None

    session.execute(
        update(UserAchievementProgress)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.achievement_id == link.achievement_id,
        )
        .values(next_tier_unlocked=True, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Series %d cursor for user %d: tier %d → %d%s",
        chain.series_id, user_id, current, new_tier, " (series complete)" if finished else "",
    )
    return new_tier


def _record_advance(
    session: Session,
    chain: TierChain,
    user_id: int,
    series_row: UserSeriesProgress | None,
    completed: set[int],
    now: datetime,
    result: ProgressResult,
) -> None:
    new_tier = _advance_series(session, user_id, chain, series_row, completed, now)
    if new_tier is not None:
        result.advanced_series[chain.series_id] = new_tier


def _cursor_behind(
    chain: TierChain, series_row: UserSeriesProgress | None, completed: set[int],
) -> bool:
    """True when the next tier above the cursor is already completed."""
    if not chain.is_series:
        return False
    current = series_row.current_tier if series_row is not None else 0
    return next_cursor(current, completed, chain.max_tier) != current


def _progress_chain(
    session: Session,
    chain: TierChain,
    user_id: int,
    value: int,
    mode: ProgressMode,
    now: datetime,
    result: ProgressResult,
) -> None:
    """Apply one report to the active link of *chain*.

    A report that moves no counter still steps a series cursor that lags
    behind tiers completed out of order (manual grants).
    """
    series_row = _lock_series(session, user_id, chain)
    rows = _load_rows(session, user_id, chain)
    completed = _completed_tiers(chain, rows)

    link = active_link(chain, completed)
    row = None
    moves = False
    if link is not None:
        row = rows.get(link.achievement_id)
        current = (
            row.current_value if row is not None
            else carried_value(chain, link, _values_by_tier(chain, rows))
        )
        moves = target_value(current, value, mode) is not None

    if not moves:
        if _cursor_behind(chain, series_row, completed):
            _record_advance(session, chain, user_id, series_row, completed, now, result)
        return

    if row is None:
        get_or_create_user(session, user_id)
        _insert_progress_row(session, user_id, link, current, now)

    updated = _apply_value(session, user_id, link, value, mode, now)
    if updated is None:
        return

    result.updated_achievement_ids.append(link.achievement_id)
    if updated.is_completed:
        completed.add(link.tier_id)
        result.events.append(completion_event(chain, link, user_id, now))

    if chain.is_series:
        _record_advance(session, chain, user_id, series_row, completed, now, result)


def _record_delivery(session: Session, event: ProgressEvent) -> bool:
    """Insert the delivery key.  Returns False when it was seen before."""
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(ProgressDelivery(
                delivery_key=event.delivery_key,
                user_id=event.user_id,
                requirement_type=event.requirement_type,
                value=event.value,
            ))
            session.flush()
    except IntegrityError:
        return False
    return True


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------
def record_progress(
    engine: Engine,
    cache: CatalogCache,
    event: ProgressEvent,
    *,
    now: datetime | None = None,
) -> ProgressResult:
    """Apply an activity report to every chain tracking its requirement type.

    Returns the completions of this call.  A report that moves no counter
    upward changes nothing and returns an empty result.  Negative values are
    returned on ``result.rejected`` without touching the ledger.

    Raises
    ------
    StoreConflict
        On a concurrent conflicting write or a transient store failure.
        Nothing from this call is persisted; the caller may retry.
    """
    result = ProgressResult()
    rejected = validate_value(event.value, event.mode)
    if rejected is not None:
        logger.warning(
            "Rejected progress for user %d (%s): %s",
            event.user_id, event.requirement_type, rejected,
        )
        result.rejected = rejected
        return result

    now = now or datetime.now(UTC)
    chains = cache.chains_for(event.requirement_type)

    try:
        with Session(engine) as session:
            if event.delivery_key is not None and not _record_delivery(session, event):
                logger.info(
                    "Duplicate progress delivery %r for user %d — skipped",
                    event.delivery_key, event.user_id,
                )
                result.duplicate = True
                return result

            for chain in chains:
                _progress_chain(
                    session, chain, event.user_id, event.value, event.mode, now, result,
                )
            session.commit()
    except OperationalError as exc:
        logger.warning("Store failure recording progress for user %d: %s", event.user_id, exc)
        raise StoreConflict("Transient store failure") from exc

    if result.events:
        logger.info(
            "Progress for user %d (%s +%d): %d completion(s)",
            event.user_id, event.requirement_type, event.value, len(result.events),
        )
    return result


def grant_achievement(
    engine: Engine,
    cache: CatalogCache,
    *,
    user_id: int,
    achievement_id: int,
    admin_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> CompletionEvent | None:
    """Manually complete an achievement for a user.

    Completes the row with a conditional UPDATE guarded on
    ``is_completed = false``, raising the counter to the requirement when
    it is below it, then lets the series cursor catch up.  Returns None
    when the achievement was already completed.
    """
    chain = cache.chain_for_achievement(achievement_id)
    link = cache.achievement_link(achievement_id)
    if chain is None or link is None:
        raise AchievementNotFound(achievement_id)
    now = now or datetime.now(UTC)

    try:
        with Session(engine) as session:
            series_row = _lock_series(session, user_id, chain)
            rows = _load_rows(session, user_id, chain)
            row = rows.get(achievement_id)
            if row is not None and row.is_completed:
                logger.info("Grant of %d to user %d skipped: already completed", achievement_id, user_id)
                return None

            get_or_create_user(session, user_id)
            if row is None:
                _insert_progress_row(session, user_id, link, 0, now)
            before = row_to_dict(row)

            updated = _complete_row(session, user_id, link, now)

            if chain.is_series:
                completed = _completed_tiers(chain, rows) | {link.tier_id}
                _advance_series(session, user_id, chain, series_row, completed, now)

            log_admin_action(
                session,
                actor_id=admin_id,
                action_type=AdminActionType.MANUAL_GRANT,
                target_table="user_achievement_progress",
                target_id=f"{user_id}:{achievement_id}",
                before=before,
                after=row_to_dict(updated),
                reason=reason,
            )
            session.commit()
    except OperationalError as exc:
        raise StoreConflict("Transient store failure") from exc

    logger.info("Achievement %d granted to user %d by admin %d", achievement_id, user_id, admin_id)
    return completion_event(chain, link, user_id, now)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------
def claim_reward(
    engine: Engine,
    user_id: int,
    achievement_id: int,
    *,
    now: datetime | None = None,
) -> Reward:
    """Flip ``reward_claimed`` exactly once and return the reward.

    Raises
    ------
    AchievementNotFound
        Unknown achievement id.
    NotCompleted
        The user has not completed the achievement.
    AlreadyClaimed
        The reward was claimed before (including by a concurrent request).
    """
    now = now or datetime.now(UTC)
    try:
        with Session(engine) as session:
            achievement = session.get(GuildAchievement, achievement_id)
            if achievement is None:
                raise AchievementNotFound(achievement_id)

            claimed = session.execute(
                update(UserAchievementProgress)
                .where(
                    UserAchievementProgress.user_id == user_id,
                    UserAchievementProgress.achievement_id == achievement_id,
                    UserAchievementProgress.is_completed.is_(True),
                    UserAchievementProgress.reward_claimed.is_(False),
                )
                .values(reward_claimed=True, claimed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            if not claimed:
                row = session.get(UserAchievementProgress, (user_id, achievement_id))
                if row is None or not row.is_completed:
                    raise NotCompleted(achievement_id)
                raise AlreadyClaimed(achievement_id)

            reward = Reward(
                achievement_id=achievement.id,
                reward_type=achievement.reward_type,
                reward_value=achievement.reward_value,
                bonus_xp=tier_by_id(achievement.tier_id).reward_xp,
            )
            session.commit()
    except OperationalError as exc:
        raise StoreConflict("Transient store failure") from exc

    logger.info(
        "User %d claimed reward for achievement %d (%d %s)",
        user_id, achievement_id, reward.reward_value, reward.reward_type,
    )
    return reward


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CompletedAchievement:
    """One row of the recent-completions feed."""

    achievement_id: int
    name: str
    description: str
    icon: str
    tier_id: int
    series_id: int | None
    reward_type: str
    reward_value: int
    completed_at: datetime


def poll_recent_completions(
    engine: Engine,
    user_id: int,
    *,
    since: datetime | None = None,
    limit: int = 1,
    max_limit: int = MAX_RECENT_LIMIT,
) -> list[CompletedAchievement]:
    """Most-recent-first completions for *user_id*.

    ``limit`` is clamped to 1..max_limit, and never above 5.  With *since*,
    only completions strictly newer than it are returned.
    """
    limit = max(1, min(limit, max_limit, MAX_RECENT_LIMIT))
    stmt = (
        select(UserAchievementProgress, GuildAchievement)
        .join(GuildAchievement, UserAchievementProgress.achievement_id == GuildAchievement.id)
        .where(
            UserAchievementProgress.user_id == user_id,
            UserAchievementProgress.is_completed.is_(True),
            UserAchievementProgress.completed_at.is_not(None),
        )
        .order_by(UserAchievementProgress.completed_at.desc())
        .limit(limit)
    )
    if since is not None:
        since = as_utc(since).astimezone(UTC)
        stmt = stmt.where(UserAchievementProgress.completed_at > since)

    with Session(engine) as session:
        rows = session.execute(stmt).all()
        return [
            CompletedAchievement(
                achievement_id=ach.id,
                name=ach.name,
                description=ach.description,
                icon=ach.icon,
                tier_id=ach.tier_id,
                series_id=ach.series_id,
                reward_type=ach.reward_type,
                reward_value=ach.reward_value,
                completed_at=as_utc(progress.completed_at),
            )
            for progress, ach in rows
        ]


def list_achievements(engine: Engine, user_id: int) -> list[dict]:
    """Every active achievement with the user's progress against it.

    A series tier above the user's next reachable tier is reported as
    ``locked``.
    """
    with Session(engine) as session:
        achievements = session.scalars(
            select(GuildAchievement)
            .options(joinedload(GuildAchievement.series))
            .where(GuildAchievement.is_active.is_(True))
            .order_by(GuildAchievement.series_id, GuildAchievement.tier_id, GuildAchievement.id)
        ).all()
        progress = {
            row.achievement_id: row
            for row in session.scalars(
                select(UserAchievementProgress).where(UserAchievementProgress.user_id == user_id)
            ).all()
        }
        cursors = {
            row.series_id: row.current_tier
            for row in session.scalars(
                select(UserSeriesProgress).where(UserSeriesProgress.user_id == user_id)
            ).all()
        }

        items = []
        for ach in achievements:
            if ach.series is not None and not ach.series.is_active:
                continue
            row = progress.get(ach.id)
            current = row.current_value if row else 0
            tier = tier_by_id(ach.tier_id)
            bar = tier_progress(current, ach.requirement_value)
            completed = bool(row and row.is_completed)
            locked = (
                ach.series_id is not None
                and not completed
                and ach.tier_id > cursors.get(ach.series_id, 0) + 1
            )
            items.append({
                "id": ach.id,
                "name": ach.name,
                "description": ach.description,
                "icon": ach.icon,
                "category": ach.category,
                "series_id": ach.series_id,
                "tier_id": ach.tier_id,
                "tier_name": tier.display_name,
                "tier_color": tier.color,
                "requirement_type": ach.requirement_type,
                "requirement_value": ach.requirement_value,
                "reward_type": ach.reward_type,
                "reward_value": ach.reward_value,
                "current_value": current,
                "percentage": bar.percentage,
                "remaining": bar.remaining,
                "is_completed": completed,
                "completed_at": as_utc(row.completed_at) if row else None,
                "reward_claimed": bool(row and row.reward_claimed),
                "locked": locked,
            })
        return items


def list_series_progress(engine: Engine, user_id: int) -> list[dict]:
    """Cursor state for every active series, including unstarted ones."""
    with Session(engine) as session:
        series_rows = session.scalars(
            select(AchievementSeries)
            .where(AchievementSeries.is_active.is_(True))
            .order_by(AchievementSeries.id)
        ).all()
        cursors = {
            row.series_id: row
            for row in session.scalars(
                select(UserSeriesProgress).where(UserSeriesProgress.user_id == user_id)
            ).all()
        }

        items = []
        for series in series_rows:
            cursor = cursors.get(series.id)
            current_tier = cursor.current_tier if cursor else 0
            items.append({
                "series_id": series.id,
                "name": series.name,
                "category": series.category,
                "requirement_type": series.requirement_type,
                "max_tier": series.max_tier,
                "current_tier": current_tier,
                "current_tier_name": (
                    tier_by_id(current_tier).display_name if current_tier else None
                ),
                "highest_achievement_id": cursor.highest_achievement_id if cursor else None,
                "is_completed": bool(cursor and cursor.is_completed),
                "completed_at": as_utc(cursor.completed_at) if cursor else None,
            })
        return items
