"""
clockwork.constants — Shared Constants & Helpers
==================================================

Single source of truth for category metadata and reward formatting.
Import from here instead of duplicating in services and routes.
"""

from __future__ import annotations

from clockwork.database.models import AchievementCategory, RewardType

# ---------------------------------------------------------------------------
# Category presentation
# ---------------------------------------------------------------------------
CATEGORY_INFO: dict[AchievementCategory, tuple[str, str]] = {
    AchievementCategory.ONBOARDING: ("Onboarding", "Getting started with the guild"),
    AchievementCategory.COMMUNITY: ("Community", "Engaging with the guild community"),
    AchievementCategory.WEB3: ("Web3", "Blockchain and cryptocurrency activities"),
    AchievementCategory.GAMING: ("Gaming", "Gaming achievements and milestones"),
    AchievementCategory.CONTENT: ("Content", "Creating and sharing content"),
    AchievementCategory.SPECIAL: ("Special", "Exclusive and limited-time achievements"),
}

TOKEN_NAME = "CWG Tokens"

# Upper bound for the recent-completions poll
MAX_RECENT_LIMIT = 5


# ---------------------------------------------------------------------------
# Reward formatting
# ---------------------------------------------------------------------------
def format_reward(reward_type: str, reward_value: int) -> str:
    """Render a reward for display, e.g. ``"50 CWG Tokens"``."""
    if reward_type == RewardType.TOKENS:
        return f"{reward_value} {TOKEN_NAME}"
    if reward_type == RewardType.XP:
        return f"{reward_value} XP"
    if reward_type == RewardType.BADGE:
        return "Special Badge"
    if reward_type == RewardType.DISCOUNT:
        return f"{reward_value}% Discount"
    return f"{reward_value} {reward_type}"


def category_label(category: str) -> str:
    """Human label for a category value; unknown values pass through."""
    try:
        return CATEGORY_INFO[AchievementCategory(category)][0]
    except ValueError:
        return category
