"""Tests for the data gateway — cache freshness, stale fallback, synthetic sentiment."""

from __future__ import annotations

import asyncio

import pytest
from unittest.mock import AsyncMock

from vibeguard.clients.base import APIError
from vibeguard.data_gateway import (
    DataGateway,
    fallback_sentiment,
    normalize_ratio,
    normalize_symbol,
)
from vibeguard.errors import InvalidInput, RateLimited, UpstreamUnavailable
from vibeguard.schema import SentimentWindow
from tests.mocks.mock_coingecko import BNB_PRICE, MULTI_PRICE, NON_NUMERIC_PRICE, UNKNOWN_PRICE
from tests.mocks.mock_cryptoracle import (
    BNB_SENTIMENT_FLAT,
    EMPTY_SENTIMENT,
    ETH_SENTIMENT_STRUCTURED,
    SOL_SENTIMENT_RATIO,
)

NOW_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _rate_limited() -> APIError:
    return APIError("Rate limited by cryptoracle", status_code=429, provider="cryptoracle", retryable=True)


def _make_gateway(sentiment=None, prices=None, clock=None, call_timeout=15.0):
    sentiment_client = AsyncMock()
    sentiment_client.get_sentiment = sentiment or AsyncMock(return_value=BNB_SENTIMENT_FLAT["data"])
    price_client = AsyncMock()
    price_client.get_prices = prices or AsyncMock(return_value=BNB_PRICE)
    gateway = DataGateway(
        sentiment_client,
        price_client,
        sentiment_ttl=120,
        sentiment_stale=1800,
        price_ttl=60,
        price_stale=900,
        call_timeout=call_timeout,
        clock=clock or FakeClock(),
        wall_clock=lambda: NOW_MS,
    )
    return gateway, sentiment_client, price_client


class TestNormalization:
    def test_symbol_upper_cased(self):
        assert normalize_symbol(" bnb ") == "BNB"

    @pytest.mark.parametrize("raw", ["", "B", "BNB!", "A" * 16, None])
    def test_bad_symbols_rejected(self, raw):
        with pytest.raises(InvalidInput):
            normalize_symbol(raw)

    def test_ratio_percent_and_fraction(self):
        assert normalize_ratio(64) == pytest.approx(0.64)
        assert normalize_ratio(0.42) == pytest.approx(0.42)
        assert normalize_ratio(1.2) == 1.0
        assert normalize_ratio(-5) == 0.0
        assert normalize_ratio("n/a") is None


class TestSentimentCache:
    """Fresh hits skip the upstream call; stale entries cover rate limits and timeouts."""

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_upstream(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock)
        first = await gateway.get_sentiment("BNB")
        clock.advance(119)
        second = await gateway.get_sentiment("bnb")
        assert second is first
        assert client.get_sentiment.await_count == 1

    @pytest.mark.asyncio
    async def test_window_is_part_of_cache_key(self):
        gateway, client, _ = _make_gateway()
        await gateway.get_sentiment("BNB", "Daily")
        signal = await gateway.get_sentiment("BNB", "4H")
        assert client.get_sentiment.await_count == 2
        assert signal.window == SentimentWindow.FOUR_HOURS

    @pytest.mark.asyncio
    async def test_unknown_window_means_daily(self):
        gateway, client, _ = _make_gateway()
        signal = await gateway.get_sentiment("BNB", "2W")
        assert signal.window == SentimentWindow.DAILY
        client.get_sentiment.assert_awaited_once_with("BNB", "Daily")

    @pytest.mark.asyncio
    async def test_stale_served_on_rate_limit(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock)
        first = await gateway.get_sentiment("BNB")

        clock.advance(600)
        client.get_sentiment.side_effect = _rate_limited()
        second = await gateway.get_sentiment("BNB")
        assert second is first
        assert client.get_sentiment.await_count == 2

    @pytest.mark.asyncio
    async def test_stale_served_on_timeout(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock)
        first = await gateway.get_sentiment("BNB")

        clock.advance(600)
        client.get_sentiment.side_effect = APIError("Timeout", provider="cryptoracle", timeout=True)
        assert await gateway.get_sentiment("BNB") is first

    @pytest.mark.asyncio
    async def test_hung_call_is_bounded_and_served_stale(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock, call_timeout=0.05)
        first = await gateway.get_sentiment("BNB")

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        clock.advance(600)
        client.get_sentiment.side_effect = hang
        assert await gateway.get_sentiment("BNB") is first

    @pytest.mark.asyncio
    async def test_server_error_does_not_use_stale(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock)
        await gateway.get_sentiment("BNB")

        clock.advance(600)
        client.get_sentiment.side_effect = APIError("Server error", status_code=503, retryable=True)
        with pytest.raises(UpstreamUnavailable):
            await gateway.get_sentiment("BNB")

    @pytest.mark.asyncio
    async def test_rate_limit_beyond_stale_window_raises(self):
        clock = FakeClock()
        gateway, client, _ = _make_gateway(clock=clock)
        await gateway.get_sentiment("BNB")

        clock.advance(1801)
        client.get_sentiment.side_effect = _rate_limited()
        with pytest.raises(RateLimited):
            await gateway.get_sentiment("BNB")

    @pytest.mark.asyncio
    async def test_rate_limit_with_empty_cache_is_upstream_unavailable(self):
        gateway, client, _ = _make_gateway(sentiment=AsyncMock(side_effect=_rate_limited()))
        with pytest.raises(UpstreamUnavailable) as exc:
            await gateway.get_sentiment("BNB")
        assert isinstance(exc.value, RateLimited)


class TestSentimentParsing:
    @pytest.mark.asyncio
    async def test_flat_score(self):
        gateway, _, _ = _make_gateway()
        signal = await gateway.get_sentiment("BNB")
        assert signal.score == 20
        assert signal.sources == ["twitter", "reddit"]
        assert signal.timestamp == NOW_MS
        assert signal.is_fallback is False

    @pytest.mark.asyncio
    async def test_structured_percentages(self):
        gateway, _, _ = _make_gateway(sentiment=AsyncMock(return_value=ETH_SENTIMENT_STRUCTURED))
        signal = await gateway.get_sentiment("ETH")
        assert signal.positive == pytest.approx(0.64)
        assert signal.negative == pytest.approx(0.36)
        assert signal.score == 64

    @pytest.mark.asyncio
    async def test_structured_fractions(self):
        gateway, _, _ = _make_gateway(sentiment=AsyncMock(return_value=SOL_SENTIMENT_RATIO))
        signal = await gateway.get_sentiment("SOL")
        assert signal.score == 42
        assert signal.sentiment_diff == pytest.approx(-0.16)

    @pytest.mark.asyncio
    async def test_payload_without_score_is_upstream_unavailable(self):
        gateway, _, _ = _make_gateway(sentiment=AsyncMock(return_value=EMPTY_SENTIMENT))
        with pytest.raises(UpstreamUnavailable):
            await gateway.get_sentiment("BNB")


class TestSentimentFallback:
    """Synthetic sentiment only on explicit opt-in."""

    def test_fallback_is_deterministic(self):
        a = fallback_sentiment("BNB", NOW_MS)
        b = fallback_sentiment("BNB", NOW_MS + 5)
        assert a.score == b.score == 63
        assert a.positive == pytest.approx(b.positive)
        assert 0.4 <= a.positive < 0.8
        assert a.negative == pytest.approx(1 - a.positive)
        assert a.is_fallback is True

    @pytest.mark.asyncio
    async def test_opt_in_returns_fallback(self):
        gateway, _, _ = _make_gateway(sentiment=AsyncMock(side_effect=APIError("down", status_code=502)))
        signal = await gateway.get_sentiment("BNB", allow_fallback=True)
        assert signal.is_fallback is True
        assert signal.score == 63

    @pytest.mark.asyncio
    async def test_no_fallback_without_opt_in(self):
        gateway, _, _ = _make_gateway(sentiment=AsyncMock(side_effect=APIError("down", status_code=502)))
        with pytest.raises(UpstreamUnavailable):
            await gateway.get_sentiment("BNB")

    @pytest.mark.asyncio
    async def test_fallback_is_not_cached(self):
        gateway, client, _ = _make_gateway(sentiment=AsyncMock(side_effect=APIError("down", status_code=502)))
        await gateway.get_sentiment("BNB", allow_fallback=True)
        await gateway.get_sentiment("BNB", allow_fallback=True)
        assert client.get_sentiment.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_symbol_never_falls_back(self):
        gateway, _, _ = _make_gateway()
        with pytest.raises(InvalidInput):
            await gateway.get_sentiment("B", allow_fallback=True)


class TestSentimentBatch:
    @pytest.mark.asyncio
    async def test_failures_and_invalid_symbols_omitted(self):
        async def feed(symbol, window):
            if symbol == "ETH":
                raise APIError("down", status_code=500)
            return {"score": 55}

        gateway, _, _ = _make_gateway(sentiment=AsyncMock(side_effect=feed))
        result = await gateway.get_sentiments(["bnb", "ETH", "!!", "BNB"])
        assert list(result) == ["BNB"]
        assert result["BNB"].score == 55

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self):
        gateway, _, _ = _make_gateway()
        with pytest.raises(InvalidInput):
            await gateway.get_sentiments([])


class TestPrice:
    @pytest.mark.asyncio
    async def test_parses_snapshot_and_caches(self):
        gateway, _, client = _make_gateway()
        snap = await gateway.get_price("BinanceCoin")
        await gateway.get_price("binancecoin")
        assert snap.price == 512.4
        assert snap.price_change_24h == -15.0
        assert snap.volume_24h == 1_250_000_000.0
        assert client.get_prices.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_id_is_invalid_input_and_not_cached(self):
        gateway, _, client = _make_gateway(prices=AsyncMock(return_value=UNKNOWN_PRICE))
        for _ in range(2):
            with pytest.raises(InvalidInput):
                await gateway.get_price("not-a-coin")
        assert client.get_prices.await_count == 2

    @pytest.mark.asyncio
    async def test_non_numeric_price_is_upstream_unavailable(self):
        gateway, _, _ = _make_gateway(prices=AsyncMock(return_value=NON_NUMERIC_PRICE))
        with pytest.raises(UpstreamUnavailable) as exc:
            await gateway.get_price("binancecoin")
        assert exc.value.provider == "coingecko"

    @pytest.mark.asyncio
    async def test_stale_price_on_rate_limit(self):
        clock = FakeClock()
        gateway, _, client = _make_gateway(clock=clock)
        first = await gateway.get_price("binancecoin")
        clock.advance(120)
        client.get_prices.side_effect = APIError("429", status_code=429, provider="coingecko")
        assert await gateway.get_price("binancecoin") is first

    @pytest.mark.asyncio
    async def test_empty_id_rejected(self):
        gateway, _, _ = _make_gateway()
        with pytest.raises(InvalidInput):
            await gateway.get_price("  ")


class TestPriceBatch:
    @pytest.mark.asyncio
    async def test_only_misses_are_fetched_in_one_request(self):
        clock = FakeClock()
        gateway, _, client = _make_gateway(clock=clock)
        await gateway.get_price("binancecoin")

        client.get_prices.return_value = MULTI_PRICE
        result = await gateway.get_prices(["binancecoin", "ethereum", "not-a-coin"])

        assert set(result) == {"binancecoin", "ethereum"}
        client.get_prices.assert_awaited_with(["ethereum", "not-a-coin"])
        assert client.get_prices.await_count == 2

    @pytest.mark.asyncio
    async def test_non_numeric_price_omitted_from_batch(self):
        gateway, _, _ = _make_gateway(prices=AsyncMock(return_value=NON_NUMERIC_PRICE))
        result = await gateway.get_prices(["binancecoin", "ethereum"])
        assert list(result) == ["ethereum"]
        assert result["ethereum"].price == 3100.0

    @pytest.mark.asyncio
    async def test_rate_limited_batch_serves_stale_subset(self):
        clock = FakeClock()
        gateway, _, client = _make_gateway(clock=clock)
        await gateway.get_price("binancecoin")

        clock.advance(120)
        client.get_prices.side_effect = APIError("429", status_code=429, provider="coingecko")
        result = await gateway.get_prices(["binancecoin", "ethereum"])
        assert list(result) == ["binancecoin"]

    @pytest.mark.asyncio
    async def test_rate_limited_batch_with_nothing_cached_raises(self):
        gateway, _, _ = _make_gateway(prices=AsyncMock(side_effect=APIError("429", status_code=429)))
        with pytest.raises(RateLimited):
            await gateway.get_prices(["binancecoin"])

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self):
        gateway, _, _ = _make_gateway()
        with pytest.raises(InvalidInput):
            await gateway.get_prices(["", " "])
