"""
tests/test_progression.py — Progression Rule Unit Tests
========================================================

Pure rules from clockwork.engine.progression — no database.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from clockwork.engine.errors import InvalidProgressValue
from clockwork.engine.events import ProgressMode
from clockwork.engine.progression import (
    ChainLink,
    ProgressResult,
    TierChain,
    active_link,
    carried_value,
    completion_event,
    crosses_threshold,
    make_reward,
    next_cursor,
    target_value,
    validate_value,
)


def _series_chain(base: int = 10, max_tier: int = 6) -> TierChain:
    multipliers = [1, 2, 4, 8, 12, 18]
    links = tuple(
        ChainLink(
            achievement_id=100 + tier,
            tier_id=tier,
            name=f"Chatterbox {tier}",
            requirement_value=base * multipliers[tier - 1],
            reward_type="tokens",
            reward_value=50 * multipliers[tier - 1],
        )
        for tier in range(1, max_tier + 1)
    )
    return TierChain(
        requirement_type="chat_message",
        links=links,
        series_id=7,
        max_tier=max_tier,
        base_reward_value=50,
        name="Chatterbox",
    )


def _standalone_chain() -> TierChain:
    return TierChain(
        requirement_type="join",
        links=(ChainLink(1, 1, "Welcome to the Guild", 1, "tokens", 10),),
        name="Welcome to the Guild",
    )


class TestValidation:
    def test_negative_increment_rejected(self):
        err = validate_value(-1, ProgressMode.INCREMENT)
        assert isinstance(err, InvalidProgressValue)
        assert err.reason == "negative increment"

    def test_negative_absolute_rejected(self):
        err = validate_value(-5, ProgressMode.ABSOLUTE)
        assert err is not None
        assert err.value == -5

    def test_zero_is_valid(self):
        assert validate_value(0, ProgressMode.INCREMENT) is None


class TestTargetValue:
    def test_increment_adds(self):
        assert target_value(10, 5, ProgressMode.INCREMENT) == 15

    def test_zero_increment_is_noop(self):
        assert target_value(10, 0, ProgressMode.INCREMENT) is None

    def test_absolute_takes_max(self):
        assert target_value(10, 25, ProgressMode.ABSOLUTE) == 25

    @pytest.mark.parametrize("value", [0, 9, 10])
    def test_absolute_never_moves_down(self, value):
        assert target_value(10, value, ProgressMode.ABSOLUTE) is None


class TestChains:
    def test_standalone_is_single_link(self):
        chain = _standalone_chain()
        assert not chain.is_series
        assert chain.max_tier == 1
        assert active_link(chain, set()).achievement_id == 1

    def test_active_link_is_lowest_incomplete(self):
        chain = _series_chain()
        assert active_link(chain, set()).tier_id == 1
        assert active_link(chain, {1}).tier_id == 2
        # A completed tier above a gap does not move the active link past the gap.
        assert active_link(chain, {1, 3}).tier_id == 2

    def test_active_link_none_when_all_complete(self):
        chain = _series_chain(max_tier=2)
        assert active_link(chain, {1, 2}) is None

    def test_carried_value_from_previous_tier(self):
        chain = _series_chain()
        link = chain.link_for_tier(2)
        assert carried_value(chain, link, {1: 10}) == 10

    def test_carried_value_for_entry_tier_is_zero(self):
        chain = _series_chain()
        assert carried_value(chain, chain.link_for_tier(1), {}) == 0

    def test_crosses_threshold(self):
        link = _series_chain().link_for_tier(2)
        assert not crosses_threshold(19, link)
        assert crosses_threshold(20, link)


class TestCursor:
    def test_advances_one_step_onto_completed_tier(self):
        assert next_cursor(0, {1}, 6) == 1

    def test_never_skips(self):
        # Tiers 1..3 completed in one go: still only one step per call.
        assert next_cursor(0, {1, 2, 3}, 6) == 1

    def test_waits_on_gap(self):
        assert next_cursor(1, {1, 3}, 6) == 1

    def test_never_exceeds_max_tier(self):
        assert next_cursor(3, {1, 2, 3, 4}, 3) == 3

    def test_reaches_max_tier(self):
        assert next_cursor(5, {1, 2, 3, 4, 5, 6}, 6) == 6


class TestRewards:
    def test_series_reward_scaled_by_tier(self):
        chain = _series_chain()
        reward = make_reward(chain, chain.link_for_tier(3))
        assert reward.reward_value == 200
        assert reward.bonus_xp == 300

    def test_standalone_reward_uses_own_value(self):
        chain = _standalone_chain()
        reward = make_reward(chain, chain.links[0])
        assert reward.reward_value == 10
        assert reward.bonus_xp == 50

    def test_completion_event_fields(self):
        chain = _series_chain()
        at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        event = completion_event(chain, chain.link_for_tier(2), 1000, at)
        assert event.user_id == 1000
        assert event.series_id == 7
        assert event.tier_id == 2
        assert event.completed_at == at
        assert event.reward.achievement_id == 102


class TestProgressResult:
    def test_empty_result_is_unchanged(self):
        assert not ProgressResult().changed

    def test_changed_when_counter_moved(self):
        assert ProgressResult(updated_achievement_ids=[1]).changed
