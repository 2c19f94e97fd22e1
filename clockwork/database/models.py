"""
clockwork.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- users                     — Identity mirror (ids issued by the auth collaborator)
- achievement_tiers         — The six static tiers, persisted for FK integrity
- achievement_series        — Progression chains with base requirement/reward
- guild_achievements        — Tier instances of a series, or standalone achievements
- user_achievement_progress — Per-user, per-achievement counters (the ledger)
- user_series_progress      — Per-user, per-series tier cursor
- progress_deliveries       — Caller-supplied delivery keys for idempotent progress
- admin_log                 — Append-only audit trail of catalog mutations
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Clockwork ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class AchievementCategory(enum.StrEnum):
    ONBOARDING = "onboarding"
    COMMUNITY = "community"
    WEB3 = "web3"
    GAMING = "gaming"
    CONTENT = "content"
    SPECIAL = "special"


class RewardType(enum.StrEnum):
    TOKENS = "tokens"
    XP = "xp"
    BADGE = "badge"
    DISCOUNT = "discount"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MANUAL_GRANT = "MANUAL_GRANT"


# ---------------------------------------------------------------------------
# Users — identity mirror
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    username: Mapped[str | None] = mapped_column(String(100), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    achievement_progress: Mapped[list[UserAchievementProgress]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    series_progress: Mapped[list[UserSeriesProgress]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r}>"


# ---------------------------------------------------------------------------
# AchievementTierRow — persisted copy of engine.tiers.TIERS
# ---------------------------------------------------------------------------
class AchievementTierRow(Base):
    __tablename__ = "achievement_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    multiplier: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_xp: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False)
    icon: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<AchievementTierRow id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# AchievementSeries — progression chains grouping achievement tiers
# ---------------------------------------------------------------------------
class AchievementSeries(Base):
    __tablename__ = "achievement_series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    base_icon: Mapped[str] = mapped_column(String(50), nullable=False, default="trophy")
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AchievementCategory.GAMING.value,
    )
    requirement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    base_requirement_value: Mapped[int] = mapped_column(Integer, nullable=False)
    base_reward_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardType.TOKENS.value,
    )
    base_reward_value: Mapped[int] = mapped_column(Integer, nullable=False)
    max_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    tiers: Mapped[list[GuildAchievement]] = relationship(
        back_populates="series",
        order_by="GuildAchievement.tier_id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_achievement_series_requirement", "requirement_type"),
        CheckConstraint("base_requirement_value >= 1", name="ck_series_base_requirement"),
        CheckConstraint("base_reward_value >= 1", name="ck_series_base_reward"),
        CheckConstraint("max_tier BETWEEN 1 AND 6", name="ck_series_max_tier"),
    )

    def __repr__(self) -> str:
        return f"<AchievementSeries id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# GuildAchievement — one tier of a series, or a standalone achievement
# ---------------------------------------------------------------------------
class GuildAchievement(Base):
    __tablename__ = "guild_achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("achievement_series.id", ondelete="CASCADE"),
        nullable=True,
    )
    tier_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievement_tiers.id"), nullable=False, default=1,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="trophy")
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AchievementCategory.GAMING.value,
    )

    # Requirement — requirement_value is pre-scaled for series tiers
    requirement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    requirement_value: Mapped[int] = mapped_column(Integer, nullable=False)

    # Reward — reward_value is pre-scaled for series tiers
    reward_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardType.TOKENS.value,
    )
    reward_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    series: Mapped[AchievementSeries | None] = relationship(back_populates="tiers")
    progress: Mapped[list[UserAchievementProgress]] = relationship(
        back_populates="achievement", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("series_id", "tier_id", name="uq_guild_achievements_series_tier"),
        Index("ix_guild_achievements_requirement", "requirement_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<GuildAchievement id={self.id} name={self.name!r} "
            f"series={self.series_id} tier={self.tier_id}>"
        )


# ---------------------------------------------------------------------------
# UserAchievementProgress — the ledger
# ---------------------------------------------------------------------------
class UserAchievementProgress(Base):
    """Per-user counter for one achievement.

    Only :mod:`clockwork.services.progress_service` writes these rows, and
    only through single conditional UPDATE statements.
    """
    __tablename__ = "user_achievement_progress"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    achievement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("guild_achievements.id", ondelete="CASCADE"),
        primary_key=True,
    )
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reward_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_tier_unlocked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="achievement_progress")
    achievement: Mapped[GuildAchievement] = relationship(back_populates="progress")

    __table_args__ = (
        Index("ix_user_achievement_progress_completed", "user_id", "completed_at"),
        CheckConstraint(
            "(is_completed AND completed_at IS NOT NULL) "
            "OR (NOT is_completed AND completed_at IS NULL)",
            name="ck_progress_completed_at",
        ),
        CheckConstraint(
            "NOT reward_claimed OR is_completed", name="ck_progress_claim_after_completion",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserAchievementProgress user={self.user_id} "
            f"achievement={self.achievement_id} value={self.current_value} "
            f"done={self.is_completed}>"
        )


# ---------------------------------------------------------------------------
# UserSeriesProgress — per-user tier cursor
# ---------------------------------------------------------------------------
class UserSeriesProgress(Base):
    __tablename__ = "user_series_progress"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    series_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievement_series.id", ondelete="CASCADE"),
        primary_key=True,
    )
    current_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_achievement_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("guild_achievements.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="series_progress")
    series: Mapped[AchievementSeries] = relationship()

    __table_args__ = (
        CheckConstraint("current_tier BETWEEN 0 AND 6", name="ck_series_progress_tier"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSeriesProgress user={self.user_id} series={self.series_id} "
            f"tier={self.current_tier}>"
        )


# ---------------------------------------------------------------------------
# ProgressDelivery — idempotency keys for progress reports
# ---------------------------------------------------------------------------
class ProgressDelivery(Base):
    __tablename__ = "progress_deliveries"

    delivery_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requirement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_progress_deliveries_user_time", "user_id", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<ProgressDelivery key={self.delivery_key!r} user={self.user_id}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
