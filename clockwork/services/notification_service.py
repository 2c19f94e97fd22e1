"""
clockwork.services.notification_service — Achievement Notifications
====================================================================

Two halves:

* Payload builders for the notification collaborator (bell icon, e-mail):
  :func:`build_unlock_notification` and :func:`build_claim_notification`.
* :class:`AchievementNotifier` — the client-side "newly completed" toast.
  It polls the recent-completions feed on a fixed interval, shows at most
  one completion at a time, and auto-dismisses it.

Delivery is at-most-once: the watermark moves to the poll's observation
time, so a completion that lands between two polls and is older than the
newest one is never shown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from clockwork.constants import format_reward
from clockwork.database.engine import run_db
from clockwork.services.progress_service import CompletedAchievement, poll_recent_completions

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from clockwork.config import ClockworkConfig

logger = logging.getLogger(__name__)

FetchRecent = Callable[[], Awaitable[list[CompletedAchievement]]]

ACHIEVEMENTS_LINK = "/achievements"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------
def build_unlock_notification(
    user_id: int,
    achievement_id: int,
    achievement_name: str,
    reward_type: str,
    reward_value: int,
) -> dict:
    """Notification sent when a user completes an achievement."""
    reward = format_reward(reward_type, reward_value)
    return {
        "user_id": user_id,
        "type": "achievement",
        "title": "Achievement Unlocked!",
        "message": f"You completed \"{achievement_name}\". Claim your reward: {reward}.",
        "link": ACHIEVEMENTS_LINK,
        "metadata": {
            "achievement_id": achievement_id,
            "reward_type": reward_type,
            "reward_value": reward_value,
        },
    }


def build_claim_notification(
    user_id: int,
    achievement_id: int,
    achievement_name: str,
    reward_type: str,
    reward_value: int,
) -> dict:
    """Notification sent when a user claims an achievement reward."""
    reward = format_reward(reward_type, reward_value)
    return {
        "user_id": user_id,
        "type": "achievement",
        "title": "Reward Claimed",
        "message": f"You received {reward} for \"{achievement_name}\".",
        "link": ACHIEVEMENTS_LINK,
        "metadata": {
            "achievement_id": achievement_id,
            "reward_type": reward_type,
            "reward_value": reward_value,
            "claimed": True,
        },
    }


# ---------------------------------------------------------------------------
# Toast consumer
# ---------------------------------------------------------------------------
class AchievementNotifier:
    """Polls recent completions and exposes one visible notification.

    - The watermark starts at construction time (session open).
    - A completion strictly newer than the watermark becomes visible and
      replaces whatever was shown; the watermark then moves to *now*.
    - A visible notification is dismissed after ``dismiss_after`` seconds.
    - Fetch errors are logged and degrade to "nothing shown".
    """

    def __init__(
        self,
        fetch: FetchRecent,
        *,
        dismiss_after: float = 10.0,
        poll_interval: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self.dismiss_after = timedelta(seconds=dismiss_after)
        self.poll_interval = poll_interval
        self.watermark: datetime = clock()
        self._visible: CompletedAchievement | None = None
        self._visible_until: datetime | None = None
        self._task: asyncio.Task | None = None

    @property
    def current(self) -> CompletedAchievement | None:
        """The visible notification, or None once it has expired."""
        if self._visible is not None and self._clock() >= self._visible_until:
            self.dismiss()
        return self._visible

    def dismiss(self) -> None:
        self._visible = None
        self._visible_until = None

    async def poll(self) -> CompletedAchievement | None:
        """Fetch once; returns the completion that became visible, if any."""
        try:
            recent = await self._fetch()
        except Exception:
            logger.exception("Recent achievements fetch failed")
            return None
        if not recent:
            return None

        latest = recent[0]
        if latest.completed_at <= self.watermark:
            return None

        now = self._clock()
        self._visible = latest
        self._visible_until = now + self.dismiss_after
        self.watermark = now
        logger.info(
            "Showing achievement notification: %s (id=%d)",
            latest.name, latest.achievement_id,
        )
        return latest

    async def run(self, interval: float | None = None) -> None:
        """Poll forever, every *interval* seconds (``poll_interval`` by default)."""
        interval = self.poll_interval if interval is None else interval
        while True:
            await self.poll()
            await asyncio.sleep(interval)

    def start(
        self, loop: asyncio.AbstractEventLoop | None = None, interval: float | None = None,
    ) -> None:
        """Start the background polling task."""
        if self._task is not None:
            return
        loop = loop or asyncio.get_running_loop()
        self._task = loop.create_task(self.run(interval), name="achievement-notifier")

    def stop(self) -> None:
        """Cancel the polling task."""
        if self._task:
            self._task.cancel()
            self._task = None


def notifier_for_user(
    engine: Engine,
    user_id: int,
    *,
    config: ClockworkConfig | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AchievementNotifier:
    """An :class:`AchievementNotifier` reading the ledger directly.

    Dismiss delay and poll cadence come from *config* when given.
    """

    async def fetch() -> list[CompletedAchievement]:
        return await run_db(poll_recent_completions, engine, user_id, limit=1)

    if config is None:
        return AchievementNotifier(fetch, clock=clock)
    return AchievementNotifier(
        fetch,
        dismiss_after=config.notification_dismiss_seconds,
        poll_interval=config.notification_poll_seconds,
        clock=clock,
    )
