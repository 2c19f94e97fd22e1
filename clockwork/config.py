"""
clockwork.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for **infrastructure-only** settings (identity,
dashboard port, notification cadence, price feed).  Secrets such as
``DATABASE_URL`` and ``JWT_SECRET`` come from the environment (``.env``).

Usage::

    from clockwork.config import load_config

    cfg = load_config()               # reads ./config.yaml by default
    print(cfg.community_name)         # "ClockWork Gamers"
    print(cfg.notification_poll_seconds)  # 30
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ClockworkConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Dashboard
    dashboard_port: int

    # Notification surfacer
    notification_poll_seconds: int = 30
    notification_dismiss_seconds: int = 10
    recent_achievements_limit: int = 5

    # Token price feed
    price_symbol: str = "BFTOKEN_USDT"
    price_api_url: str = "https://www.mexc.com/open/api/v2/market/ticker"
    price_cache_ttl_seconds: int = 300
    price_fallback: float = 0.03517


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ClockworkConfig:
    """Read *path* and return a :class:`ClockworkConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = ClockworkConfig(community_name="", dashboard_port=0)
    price = raw.get("price") or {}
    notifications = raw.get("notifications") or {}

    return ClockworkConfig(
        community_name=raw["community_name"],
        dashboard_port=int(raw["dashboard_port"]),
        notification_poll_seconds=int(
            notifications.get("poll_seconds", defaults.notification_poll_seconds)
        ),
        notification_dismiss_seconds=int(
            notifications.get("dismiss_seconds", defaults.notification_dismiss_seconds)
        ),
        recent_achievements_limit=int(
            notifications.get("recent_limit", defaults.recent_achievements_limit)
        ),
        price_symbol=str(price.get("symbol", defaults.price_symbol)),
        price_api_url=str(price.get("api_url", defaults.price_api_url)),
        price_cache_ttl_seconds=int(
            price.get("cache_ttl_seconds", defaults.price_cache_ttl_seconds)
        ),
        price_fallback=float(price.get("fallback", defaults.price_fallback)),
    )
