"""
tests/test_progress_service.py — Progress Ledger Integration Tests
===================================================================

Runs ``record_progress`` and ``grant_achievement`` against an in-memory
SQLite database.  Series "Chatterbox" tracks ``chat_message`` with a base
requirement of 10, so tiers need 10, 20, 40, 80, 120 and 180 messages.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from clockwork.database.models import (
    AdminLog,
    ProgressDelivery,
    User,
    UserAchievementProgress,
    UserSeriesProgress,
)
from clockwork.engine.cache import CatalogCache
from clockwork.engine.errors import AchievementNotFound, InvalidProgressValue, StoreConflict
from clockwork.engine.events import ProgressEvent, ProgressMode, RequirementType
from clockwork.services.catalog_service import update_series
from clockwork.services.progress_service import (
    grant_achievement,
    record_progress,
    register_user,
)
from conftest import make_series, make_standalone

USER = 1000


@pytest.fixture
def chatterbox(db_engine):
    return make_series(db_engine)


@pytest.fixture
def catalog(db_engine, chatterbox):
    c = CatalogCache(db_engine)
    c.load_all()
    return c


@pytest.fixture
def tier_ids(chatterbox) -> dict[int, int]:
    """tier_id → achievement id for the Chatterbox series."""
    return {ach.tier_id: ach.id for ach in chatterbox.tiers}


def _report(engine, catalog, value, mode=ProgressMode.INCREMENT, **kwargs):
    event = ProgressEvent(
        user_id=kwargs.pop("user_id", USER),
        requirement_type=kwargs.pop("requirement_type", RequirementType.CHAT_MESSAGE),
        value=value,
        mode=mode,
        **kwargs,
    )
    return record_progress(engine, catalog, event)


def _row(engine, achievement_id, user_id=USER) -> UserAchievementProgress | None:
    with Session(engine) as session:
        return session.get(UserAchievementProgress, (user_id, achievement_id))


def _cursor(engine, series_id, user_id=USER) -> UserSeriesProgress | None:
    with Session(engine) as session:
        return session.get(UserSeriesProgress, (user_id, series_id))


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Series walk-through
# ---------------------------------------------------------------------------
class TestSeriesProgression:
    def test_first_tier_completes_and_cursor_moves(self, db_engine, catalog, chatterbox, tier_ids):
        """+10 completes Bronze and moves the cursor to tier 1."""
        result = _report(db_engine, catalog, 10)

        assert [e.achievement_id for e in result.events] == [tier_ids[1]]
        assert result.events[0].reward.reward_value == 50
        assert result.advanced_series == {chatterbox.id: 1}

        row = _row(db_engine, tier_ids[1])
        assert row.current_value == 10
        assert row.is_completed
        assert row.completed_at is not None
        assert row.next_tier_unlocked
        assert _cursor(db_engine, chatterbox.id).current_tier == 1

    def test_next_tier_row_carries_previous_value(self, db_engine, catalog, chatterbox, tier_ids):
        """+9 after Bronze creates the Silver row at 10 + 9 without completing it."""
        _report(db_engine, catalog, 10)
        result = _report(db_engine, catalog, 9)

        assert result.events == []
        assert result.updated_achievement_ids == [tier_ids[2]]
        assert result.advanced_series == {}
        assert _row(db_engine, tier_ids[1]).current_value == 10
        silver = _row(db_engine, tier_ids[2])
        assert silver.current_value == 19
        assert not silver.is_completed
        assert _cursor(db_engine, chatterbox.id).current_tier == 1

    def test_second_tier_completes_on_threshold(self, db_engine, catalog, chatterbox, tier_ids):
        _report(db_engine, catalog, 10)
        _report(db_engine, catalog, 9)
        result = _report(db_engine, catalog, 1)

        assert [e.tier_id for e in result.events] == [2]
        assert result.events[0].reward.reward_value == 100
        assert _row(db_engine, tier_ids[2]).current_value == 20
        assert _cursor(db_engine, chatterbox.id).current_tier == 2

    def test_only_active_link_moves(self, db_engine, catalog, tier_ids):
        """A large increment completes one tier; the rest waits for later calls."""
        result = _report(db_engine, catalog, 500)

        assert [e.tier_id for e in result.events] == [1]
        assert _row(db_engine, tier_ids[1]).current_value == 500
        assert _row(db_engine, tier_ids[2]) is None

    def test_each_achievement_completes_once(self, db_engine, catalog, chatterbox, tier_ids):
        completed = []
        for _ in range(30):
            completed.extend(e.achievement_id for e in _report(db_engine, catalog, 1).events)

        assert completed == [tier_ids[1], tier_ids[2]]
        assert _row(db_engine, tier_ids[3]).current_value == 30
        assert _cursor(db_engine, chatterbox.id).current_tier == 2

    def test_counters_never_decrease(self, db_engine, catalog, tier_ids):
        _report(db_engine, catalog, 5)
        _report(db_engine, catalog, 3, mode=ProgressMode.ABSOLUTE)
        assert _row(db_engine, tier_ids[1]).current_value == 5

    def test_cursor_stops_at_max_tier(self, db_engine):
        series = make_series(db_engine, name="Short Run", max_tier=2)
        catalog = CatalogCache(db_engine)
        catalog.load_all()

        _report(db_engine, catalog, 100)
        _report(db_engine, catalog, 1)
        result = _report(db_engine, catalog, 5)

        assert not result.changed
        cursor = _cursor(db_engine, series.id)
        assert cursor.current_tier == 2
        assert cursor.is_completed
        assert cursor.completed_at is not None
        assert _count(db_engine, UserAchievementProgress) == 2


# ---------------------------------------------------------------------------
# No-op and rejected input
# ---------------------------------------------------------------------------
class TestNoOpCalls:
    def test_zero_increment_creates_nothing(self, db_engine, catalog):
        result = _report(db_engine, catalog, 0)

        assert not result.changed
        assert result.events == []
        assert _count(db_engine, UserAchievementProgress) == 0
        assert _count(db_engine, UserSeriesProgress) == 0
        assert _count(db_engine, User) == 0

    def test_unknown_requirement_type_is_ignored(self, db_engine, catalog):
        result = _report(db_engine, catalog, 5, requirement_type="nft_purchase")
        assert not result.changed
        assert _count(db_engine, UserAchievementProgress) == 0

    def test_negative_value_is_rejected(self, db_engine, catalog):
        result = _report(db_engine, catalog, -3)

        assert isinstance(result.rejected, InvalidProgressValue)
        assert result.rejected.value == -3
        assert _count(db_engine, UserAchievementProgress) == 0

    def test_absolute_not_higher_changes_nothing(self, db_engine, catalog, tier_ids):
        _report(db_engine, catalog, 7, mode=ProgressMode.ABSOLUTE)
        result = _report(db_engine, catalog, 7, mode=ProgressMode.ABSOLUTE)

        assert not result.changed
        assert _row(db_engine, tier_ids[1]).current_value == 7


# ---------------------------------------------------------------------------
# Absolute mode
# ---------------------------------------------------------------------------
class TestAbsoluteMode:
    def test_sets_counter_to_reported_value(self, db_engine, catalog, tier_ids):
        result = _report(db_engine, catalog, 25, mode=ProgressMode.ABSOLUTE)

        assert [e.tier_id for e in result.events] == [1]
        assert _row(db_engine, tier_ids[1]).current_value == 25

    def test_carried_value_needs_strictly_higher_report(self, db_engine, catalog, tier_ids):
        """Silver starts at 25 (already past 20) but completes only on a higher report."""
        _report(db_engine, catalog, 25, mode=ProgressMode.ABSOLUTE)

        repeat = _report(db_engine, catalog, 25, mode=ProgressMode.ABSOLUTE)
        assert not repeat.changed
        assert _row(db_engine, tier_ids[2]) is None

        higher = _report(db_engine, catalog, 26, mode=ProgressMode.ABSOLUTE)
        assert [e.tier_id for e in higher.events] == [2]
        assert _row(db_engine, tier_ids[2]).current_value == 26


# ---------------------------------------------------------------------------
# Standalone achievements
# ---------------------------------------------------------------------------
class TestStandalone:
    def test_standalone_and_series_share_requirement_type(self, db_engine, chatterbox, tier_ids):
        starter = make_standalone(db_engine)
        catalog = CatalogCache(db_engine)
        catalog.load_all()

        result = _report(db_engine, catalog, 1)

        assert [e.achievement_id for e in result.events] == [starter.id]
        assert result.events[0].series_id is None
        assert sorted(result.updated_achievement_ids) == sorted([starter.id, tier_ids[1]])
        assert _row(db_engine, tier_ids[1]).current_value == 1

    def test_completed_standalone_stops_counting(self, db_engine):
        starter = make_standalone(db_engine, requirement_value=2)
        catalog = CatalogCache(db_engine)
        catalog.load_all()

        _report(db_engine, catalog, 2)
        result = _report(db_engine, catalog, 5)

        assert not result.changed
        assert _row(db_engine, starter.id).current_value == 2


# ---------------------------------------------------------------------------
# Delivery deduplication
# ---------------------------------------------------------------------------
class TestDeliveryKeys:
    def test_duplicate_delivery_is_acknowledged_without_effect(self, db_engine, catalog, tier_ids):
        first = _report(db_engine, catalog, 4, delivery_key="msg-1")
        second = _report(db_engine, catalog, 4, delivery_key="msg-1")

        assert not first.duplicate
        assert second.duplicate
        assert not second.changed
        assert _row(db_engine, tier_ids[1]).current_value == 4

    def test_distinct_keys_both_apply(self, db_engine, catalog, tier_ids):
        _report(db_engine, catalog, 4, delivery_key="msg-1")
        _report(db_engine, catalog, 4, delivery_key="msg-2")
        assert _row(db_engine, tier_ids[1]).current_value == 8
        assert _count(db_engine, ProgressDelivery) == 2


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------
class TestFailures:
    def test_conflict_rolls_back_whole_call(self, db_engine, catalog):
        with patch(
            "clockwork.services.progress_service._advance_series",
            side_effect=StoreConflict("cursor moved"),
        ):
            with pytest.raises(StoreConflict):
                _report(db_engine, catalog, 10, delivery_key="msg-9")

        assert _count(db_engine, UserAchievementProgress) == 0
        assert _count(db_engine, ProgressDelivery) == 0

        # The retried delivery is processed normally.
        retry = _report(db_engine, catalog, 10, delivery_key="msg-9")
        assert not retry.duplicate
        assert len(retry.events) == 1

    def test_operational_error_surfaces_as_store_conflict(self, db_engine, catalog):
        error = OperationalError("UPDATE ...", {}, Exception("database is locked"))
        with patch(
            "clockwork.services.progress_service._progress_chain", side_effect=error,
        ):
            with pytest.raises(StoreConflict):
                _report(db_engine, catalog, 1)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------
class TestRegisterUser:
    def test_creates_entry_point_rows(self, db_engine, chatterbox, tier_ids):
        starter = make_standalone(db_engine)

        created = register_user(db_engine, 2000, "drew")

        assert created == 2
        assert _row(db_engine, starter.id, user_id=2000).current_value == 0
        assert _row(db_engine, tier_ids[1], user_id=2000).current_value == 0
        assert _row(db_engine, tier_ids[2], user_id=2000) is None
        with Session(db_engine) as session:
            assert session.get(User, 2000).username == "drew"

    def test_second_registration_creates_nothing(self, db_engine, chatterbox):
        register_user(db_engine, 2000)
        assert register_user(db_engine, 2000) == 0


# ---------------------------------------------------------------------------
# Manual grants
# ---------------------------------------------------------------------------
class TestGrantAchievement:
    def test_grant_completes_and_audits(self, db_engine, catalog, tier_ids):
        event = grant_achievement(
            db_engine, catalog,
            user_id=USER, achievement_id=tier_ids[1], admin_id=1, reason="event prize",
        )

        assert event is not None
        assert event.tier_id == 1
        row = _row(db_engine, tier_ids[1])
        assert row.is_completed
        assert row.current_value == 10

        with Session(db_engine) as session:
            log = session.scalars(
                select(AdminLog).where(AdminLog.action_type == "MANUAL_GRANT")
            ).one()
        assert log.actor_id == 1
        assert log.target_id == f"{USER}:{tier_ids[1]}"
        assert log.reason == "event prize"

    def test_grant_already_completed_returns_none(self, db_engine, catalog, tier_ids):
        _report(db_engine, catalog, 10)
        assert grant_achievement(
            db_engine, catalog, user_id=USER, achievement_id=tier_ids[1], admin_id=1,
        ) is None

    def test_grant_unknown_achievement(self, db_engine, catalog):
        with pytest.raises(AchievementNotFound):
            grant_achievement(db_engine, catalog, user_id=USER, achievement_id=9999, admin_id=1)

    def test_out_of_order_grant_cursor_catches_up_one_step_per_call(
        self, db_engine, catalog, chatterbox, tier_ids,
    ):
        """Gold granted first: the cursor waits for Bronze, then climbs one tier per report."""
        grant_achievement(db_engine, catalog, user_id=USER, achievement_id=tier_ids[3], admin_id=1)
        assert _cursor(db_engine, chatterbox.id).current_tier == 0

        _report(db_engine, catalog, 10)             # Bronze completes
        assert _cursor(db_engine, chatterbox.id).current_tier == 1

        result = _report(db_engine, catalog, 10)    # Silver 10 → 20 completes
        assert [e.tier_id for e in result.events] == [2]
        assert _cursor(db_engine, chatterbox.id).current_tier == 2

        _report(db_engine, catalog, 1)              # Platinum row starts from Gold's 40
        assert _cursor(db_engine, chatterbox.id).current_tier == 3
        assert _row(db_engine, tier_ids[4]).current_value == 41

    def test_terminal_grant_cursor_finishes_without_counter_moves(self, db_engine):
        """Terminal tier granted first: later calls still walk the cursor to the end."""
        series = make_series(db_engine, max_tier=2)
        catalog = CatalogCache(db_engine)
        catalog.load_all()
        ids = {ach.tier_id: ach.id for ach in series.tiers}
        grant_achievement(db_engine, catalog, user_id=USER, achievement_id=ids[2], admin_id=1)

        _report(db_engine, catalog, 10)             # Bronze completes
        assert _cursor(db_engine, series.id).current_tier == 1

        result = _report(db_engine, catalog, 10)    # every tier done, nothing to count
        assert result.events == []
        assert result.updated_achievement_ids == []
        assert result.advanced_series == {series.id: 2}
        cursor = _cursor(db_engine, series.id)
        assert cursor.current_tier == 2
        assert cursor.is_completed
        assert cursor.completed_at is not None

        assert not _report(db_engine, catalog, 10).changed

    def test_cursor_catches_up_on_absolute_report_that_moves_nothing(self, db_engine):
        series = make_series(db_engine, max_tier=2)
        catalog = CatalogCache(db_engine)
        catalog.load_all()
        ids = {ach.tier_id: ach.id for ach in series.tiers}
        grant_achievement(db_engine, catalog, user_id=USER, achievement_id=ids[2], admin_id=1)
        _report(db_engine, catalog, 10)

        result = _report(db_engine, catalog, 5, mode=ProgressMode.ABSOLUTE)

        assert result.advanced_series == {series.id: 2}
        assert _cursor(db_engine, series.id).is_completed

    def test_grant_after_requirement_lowered_below_counter(
        self, db_engine, catalog, chatterbox, tier_ids,
    ):
        """Counter 5 of 10, requirement lowered to 2: the grant completes and keeps 5."""
        _report(db_engine, catalog, 5)
        update_series(db_engine, series_id=chatterbox.id, actor_id=1, base_requirement_value=2)
        catalog.load_all()

        event = grant_achievement(
            db_engine, catalog, user_id=USER, achievement_id=tier_ids[1], admin_id=1,
        )

        assert event is not None
        assert event.tier_id == 1
        row = _row(db_engine, tier_ids[1])
        assert row.is_completed
        assert row.current_value == 5
        assert _cursor(db_engine, chatterbox.id).current_tier == 1

    def test_grant_raises_low_counter_to_requirement(self, db_engine, catalog, tier_ids):
        _report(db_engine, catalog, 3)

        grant_achievement(db_engine, catalog, user_id=USER, achievement_id=tier_ids[1], admin_id=1)

        assert _row(db_engine, tier_ids[1]).current_value == 10


# ---------------------------------------------------------------------------
# Concurrent reports
# ---------------------------------------------------------------------------
class TestConcurrentReports:
    def test_parallel_increments_lose_nothing(self, file_engine):
        """Eight workers each report +2: the shared counter ends at 16, Bronze fires once."""
        series = make_series(file_engine)
        catalog = CatalogCache(file_engine)
        catalog.load_all()
        ids = {ach.tier_id: ach.id for ach in series.tiers}
        workers, step = 8, 2
        barrier = threading.Barrier(workers)
        results: list = []
        lock = threading.Lock()

        def report():
            barrier.wait()
            for _ in range(50):
                try:
                    result = _report(file_engine, catalog, step)
                    break
                except StoreConflict:
                    time.sleep(0.01)
            else:
                raise AssertionError("report never applied")
            with lock:
                results.append(result)

        threads = [threading.Thread(target=report) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(results) == workers
        bronze_events = [e for r in results for e in r.events if e.tier_id == 1]
        assert len(bronze_events) == 1
        assert _row(file_engine, ids[1]).current_value == 10
        assert _row(file_engine, ids[1]).is_completed
        assert _row(file_engine, ids[2]).current_value == workers * step
        assert not _row(file_engine, ids[2]).is_completed
        assert _cursor(file_engine, series.id).current_tier == 1
