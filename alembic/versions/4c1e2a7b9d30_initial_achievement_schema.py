"""Initial achievement progression schema

Revision ID: 4c1e2a7b9d30
Revises:
Create Date: 2026-10-19 09:12:41.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c1e2a7b9d30'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create catalog, ledger, delivery and audit tables."""

    # --- identity mirror ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("username", sa.String(100), nullable=True),
        _created_at(),
    )

    # --- catalog ---
    op.create_table(
        "achievement_tiers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(30), nullable=False, unique=True),
        sa.Column("multiplier", sa.Integer, nullable=False),
        sa.Column("reward_xp", sa.Integer, nullable=False),
        sa.Column("color", sa.String(7), nullable=False),
        sa.Column("icon", sa.String(50), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
    )

    op.create_table(
        "achievement_series",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("base_icon", sa.String(50), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("requirement_type", sa.String(50), nullable=False),
        sa.Column("base_requirement_value", sa.Integer, nullable=False),
        sa.Column("base_reward_type", sa.String(20), nullable=False),
        sa.Column("base_reward_value", sa.Integer, nullable=False),
        sa.Column("max_tier", sa.Integer, nullable=False, server_default="6"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint("base_requirement_value >= 1", name="ck_series_base_requirement"),
        sa.CheckConstraint("base_reward_value >= 1", name="ck_series_base_reward"),
        sa.CheckConstraint("max_tier BETWEEN 1 AND 6", name="ck_series_max_tier"),
    )
    op.create_index(
        "ix_achievement_series_requirement", "achievement_series", ["requirement_type"],
    )

    op.create_table(
        "guild_achievements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "series_id", sa.Integer,
            sa.ForeignKey("achievement_series.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column(
            "tier_id", sa.Integer,
            sa.ForeignKey("achievement_tiers.id"), nullable=False, server_default="1",
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("icon", sa.String(50), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("requirement_type", sa.String(50), nullable=False),
        sa.Column("requirement_value", sa.Integer, nullable=False),
        sa.Column("reward_type", sa.String(20), nullable=False),
        sa.Column("reward_value", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("series_id", "tier_id", name="uq_guild_achievements_series_tier"),
    )
    op.create_index(
        "ix_guild_achievements_requirement", "guild_achievements", ["requirement_type"],
    )

    # --- ledger ---
    op.create_table(
        "user_achievement_progress",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "achievement_id", sa.Integer,
            sa.ForeignKey("guild_achievements.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("current_value", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reward_claimed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_tier_unlocked", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at("updated_at"),
        sa.CheckConstraint(
            "(is_completed AND completed_at IS NOT NULL) "
            "OR (NOT is_completed AND completed_at IS NULL)",
            name="ck_progress_completed_at",
        ),
        sa.CheckConstraint(
            "NOT reward_claimed OR is_completed", name="ck_progress_claim_after_completion",
        ),
    )
    op.create_index(
        "ix_user_achievement_progress_completed", "user_achievement_progress",
        ["user_id", sa.text("completed_at DESC")],
    )

    op.create_table(
        "user_series_progress",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "series_id", sa.Integer,
            sa.ForeignKey("achievement_series.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("current_tier", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "highest_achievement_id", sa.Integer,
            sa.ForeignKey("guild_achievements.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("is_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at("updated_at"),
        sa.CheckConstraint("current_tier BETWEEN 0 AND 6", name="ck_series_progress_tier"),
    )

    # --- idempotency ---
    op.create_table(
        "progress_deliveries",
        sa.Column("delivery_key", sa.String(128), primary_key=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("requirement_type", sa.String(50), nullable=False),
        sa.Column("value", sa.Integer, nullable=False),
        _created_at("received_at"),
    )
    op.create_index(
        "ix_progress_deliveries_user_time", "progress_deliveries",
        ["user_id", "received_at"],
    )

    # --- audit ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.BigInteger, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _created_at("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )


def downgrade() -> None:
    """Drop every table created in upgrade()."""
    op.drop_table("admin_log")
    op.drop_table("progress_deliveries")
    op.drop_table("user_series_progress")
    op.drop_table("user_achievement_progress")
    op.drop_table("guild_achievements")
    op.drop_table("achievement_series")
    op.drop_table("achievement_tiers")
    op.drop_table("users")
