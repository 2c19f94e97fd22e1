"""
clockwork.engine.events — ProgressEvent envelope
==================================================

Every raw activity report from a feature collaborator (wallet linked,
message sent, stream hours logged …) is normalised into a
:class:`ProgressEvent` before the progression pipeline processes it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

__all__ = ["ProgressEvent", "ProgressMode", "RequirementType"]


class ProgressMode(enum.StrEnum):
    """How ``value`` is applied to a counter."""
    INCREMENT = "increment"   # add value
    ABSOLUTE = "absolute"     # set-to, monotonic max


class RequirementType:
    """Requirement-type string constants reported by feature code.

    Not an enum: the catalog may carry types introduced after deployment.
    """
    JOIN = "join"
    PROFILE_COMPLETION = "profile_completion"
    SOCIAL_CONNECTIONS = "social_connections"
    WALLET_CONNECTION = "wallet_connection"
    TOKEN_TRANSACTION = "token_transaction"
    NFT_PURCHASE = "nft_purchase"
    CHAT_MESSAGE = "chat_message"
    REFERRAL = "referral"
    STREAM = "stream"
    STREAM_HOURS = "stream_hours"
    UNIQUE_GAMES = "unique_games"
    TOURNAMENT = "tournament"
    TOURNAMENT_WIN = "tournament_win"
    RENTAL = "rental"
    COURSE_COMPLETION = "course_completion"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Normalised activity report — the sole input to ``record_progress``.

    ``delivery_key`` is the caller's deduplication key; a retried delivery
    carrying the same key is acknowledged without touching the ledger.
    """

    user_id: int
    requirement_type: str
    value: int = 1
    mode: ProgressMode = ProgressMode.INCREMENT
    delivery_key: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
