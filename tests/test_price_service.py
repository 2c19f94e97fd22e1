"""
tests/test_price_service.py — Token Price Cache Tests
======================================================

TTL expiry and fallback policies run against a fake monotonic clock; the
exchange ticker is served by ``httpx.MockTransport``.
"""

from __future__ import annotations

import httpx
import pytest

from clockwork.services.price_service import (
    FallbackPolicy,
    PriceUnavailable,
    TokenPriceService,
    TTLCache,
    fetch_token_price,
)

TICKER_URL = "https://exchange.test/open/api/v2/market/ticker"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _failing():
    raise httpx.ConnectError("upstream down")


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestTTLCache:
    def test_fresh_value_is_served_from_cache(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        calls = []

        def fetch():
            calls.append(1)
            return 0.05

        cache.get_or_refresh("BF", fetch, ttl=300)
        clock.now += 299
        entry = cache.get_or_refresh("BF", fetch, ttl=300)

        assert entry.value == 0.05
        assert len(calls) == 1

    def test_expired_value_is_refreshed(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        cache.get_or_refresh("BF", lambda: 0.05, ttl=300)
        clock.now += 300

        entry = cache.get_or_refresh("BF", lambda: 0.07, ttl=300)

        assert entry.value == 0.07
        assert not entry.stale

    def test_last_known_good_serves_stale_value(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        cache.get_or_refresh("BF", lambda: 0.05, ttl=300)
        clock.now += 600

        entry = cache.get_or_refresh("BF", _failing, ttl=300)

        assert entry.value == 0.05
        assert entry.stale
        assert not entry.synthetic

    def test_last_known_good_without_value_uses_synthetic(self, caplog):
        cache = TTLCache(clock=FakeClock())

        with caplog.at_level("WARNING"):
            entry = cache.get_or_refresh("BF", _failing, ttl=300, synthetic_value=0.03517)

        assert entry.value == 0.03517
        assert entry.synthetic
        assert "SYNTHETIC" in caplog.text

    def test_synthetic_value_is_retried_next_call(self):
        cache = TTLCache(clock=FakeClock())
        cache.get_or_refresh(
            "BF", _failing, ttl=300,
            fallback=FallbackPolicy.SYNTHETIC, synthetic_value=0.03517,
        )

        entry = cache.get_or_refresh("BF", lambda: 0.06, ttl=300)

        assert entry.value == 0.06
        assert not entry.synthetic

    def test_raise_policy_propagates(self):
        cache = TTLCache(clock=FakeClock())
        with pytest.raises(httpx.ConnectError):
            cache.get_or_refresh(
                "BF", _failing, ttl=300,
                fallback=FallbackPolicy.RAISE, synthetic_value=0.03517,
            )

    def test_no_fallback_available_raises(self):
        cache = TTLCache(clock=FakeClock())
        with pytest.raises(httpx.ConnectError):
            cache.get_or_refresh("BF", _failing, ttl=300)


class TestFetchTokenPrice:
    def test_parses_last_price(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["symbol"] == "BFTOKEN_USDT"
            return httpx.Response(200, json={"code": 200, "data": [{"p": "0.0412"}]})

        with _client(handler) as client:
            assert fetch_token_price(client, TICKER_URL, "BFTOKEN_USDT") == pytest.approx(0.0412)

    def test_empty_data(self):
        with _client(lambda request: httpx.Response(200, json={"data": []})) as client:
            with pytest.raises(PriceUnavailable):
                fetch_token_price(client, TICKER_URL, "BFTOKEN_USDT")

    def test_http_error(self):
        with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                fetch_token_price(client, TICKER_URL, "BFTOKEN_USDT")


class TestTokenPriceService:
    def test_live_price(self):
        client = _client(lambda request: httpx.Response(200, json={"data": [{"p": "0.05"}]}))
        service = TokenPriceService(
            symbol="BFTOKEN_USDT", api_url=TICKER_URL, client=client,
        )

        price = service.get_price()

        assert price.price == pytest.approx(0.05)
        assert not price.synthetic
        service.close()

    def test_upstream_down_uses_configured_fallback(self):
        client = _client(lambda request: httpx.Response(500))
        service = TokenPriceService(
            symbol="BFTOKEN_USDT", api_url=TICKER_URL,
            fallback_price=0.03517, client=client, cache=TTLCache(clock=FakeClock()),
        )

        price = service.get_price()

        assert price.price == 0.03517
        assert price.synthetic
        service.close()
