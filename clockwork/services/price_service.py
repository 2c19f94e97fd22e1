"""
clockwork.services.price_service — Token Price Feed
====================================================

Read-through TTL cache in front of the exchange ticker for the guild
token.  When the upstream fetch fails the cache degrades according to an
explicit :class:`FallbackPolicy`:

* ``LAST_KNOWN_GOOD`` — serve the expired value, else fall through to the
  synthetic value when one is configured, else raise;
* ``SYNTHETIC`` — serve a configured placeholder value, flagged
  ``synthetic=True`` and logged at WARNING;
* ``RAISE`` — propagate the fetch error.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackPolicy(enum.StrEnum):
    LAST_KNOWN_GOOD = "last_known_good"
    SYNTHETIC = "synthetic"
    RAISE = "raise"


class PriceUnavailable(Exception):
    """Upstream returned no usable price."""


@dataclass(frozen=True, slots=True)
class CachedValue(Generic[T]):
    value: T
    expires_at: float
    synthetic: bool = False
    stale: bool = False


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
class TTLCache(Generic[T]):
    """Thread-safe read-through cache keyed by string.

    Usage:
        cache = TTLCache(clock=time.monotonic)
        entry = cache.get_or_refresh(
            "BFTOKEN_USDT", fetch, ttl=300,
            fallback=FallbackPolicy.SYNTHETIC, synthetic_value=0.03517,
        )
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CachedValue[T]] = {}

    def get_or_refresh(
        self,
        key: str,
        fetcher: Callable[[], T],
        ttl: float,
        fallback: FallbackPolicy = FallbackPolicy.LAST_KNOWN_GOOD,
        synthetic_value: T | None = None,
    ) -> CachedValue[T]:
        """Return the fresh cached value, refreshing through *fetcher* when expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and not entry.synthetic and now < entry.expires_at:
            return entry

        try:
            value = fetcher()
        except Exception as exc:
            return self._fallback(key, entry, fallback, synthetic_value, now, ttl, exc)

        fresh = CachedValue(value=value, expires_at=now + ttl)
        with self._lock:
            self._entries[key] = fresh
        return fresh

    def _fallback(
        self,
        key: str,
        entry: CachedValue[T] | None,
        policy: FallbackPolicy,
        synthetic_value: T | None,
        now: float,
        ttl: float,
        exc: Exception,
    ) -> CachedValue[T]:
        if policy == FallbackPolicy.RAISE:
            raise exc

        if policy == FallbackPolicy.LAST_KNOWN_GOOD and entry is not None and not entry.synthetic:
            logger.warning("Refresh of %s failed (%s) — serving last known value", key, exc)
            return CachedValue(
                value=entry.value, expires_at=entry.expires_at, stale=True,
            )

        if synthetic_value is None:
            raise exc

        logger.warning(
            "Refresh of %s failed (%s) — serving SYNTHETIC value %r", key, exc, synthetic_value,
        )
        # Retried on the next call; never replaces a real value.
        synthetic = CachedValue(value=synthetic_value, expires_at=now + ttl, synthetic=True)
        with self._lock:
            if key not in self._entries or self._entries[key].synthetic:
                self._entries[key] = synthetic
        return synthetic


# ---------------------------------------------------------------------------
# Exchange ticker
# ---------------------------------------------------------------------------
def fetch_token_price(client: httpx.Client, url: str, symbol: str) -> float:
    """Read the last traded price of *symbol* from an exchange ticker.

    Expects ``{"data": [{"p": "<price>", ...}]}``.
    """
    response = client.get(url, params={"symbol": symbol})
    response.raise_for_status()
    payload = response.json()
    data = payload.get("data") if isinstance(payload, dict) else None
    if not data:
        raise PriceUnavailable(f"Ticker response for {symbol} has no data")
    try:
        return float(data[0]["p"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PriceUnavailable(f"Ticker response for {symbol} has no price") from exc


@dataclass(frozen=True, slots=True)
class TokenPrice:
    symbol: str
    price: float
    synthetic: bool
    stale: bool


class TokenPriceService:
    """Cached token price for the public price endpoint."""

    def __init__(
        self,
        *,
        symbol: str,
        api_url: str,
        ttl_seconds: float = 300,
        fallback_price: float | None = None,
        client: httpx.Client | None = None,
        cache: TTLCache[float] | None = None,
    ) -> None:
        self.symbol = symbol
        self.api_url = api_url
        self.ttl_seconds = ttl_seconds
        self.fallback_price = fallback_price
        self._client = client or httpx.Client(timeout=10.0, follow_redirects=True)
        self._cache: TTLCache[float] = cache or TTLCache()

    def get_price(self) -> TokenPrice:
        entry = self._cache.get_or_refresh(
            self.symbol,
            lambda: fetch_token_price(self._client, self.api_url, self.symbol),
            ttl=self.ttl_seconds,
            fallback=FallbackPolicy.LAST_KNOWN_GOOD,
            synthetic_value=self.fallback_price,
        )
        return TokenPrice(
            symbol=self.symbol,
            price=entry.value,
            synthetic=entry.synthetic,
            stale=entry.stale,
        )

    def close(self) -> None:
        self._client.close()
