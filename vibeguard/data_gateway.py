"""Resilient data gateway — sentiment and spot price with caching.

Every read goes through a per-key cache with two windows:
- fresh (age <= ttl): served without touching the upstream feed
- stale (age <= stale window): served only when a live fetch was rate
  limited or timed out

Any other upstream failure, or a rate limit/timeout with nothing cached,
raises UpstreamUnavailable (RateLimited for 429s). Sentiment can
additionally fall back to a deterministic synthetic signal, but only when the
caller asks for it; price data is never synthesized.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable

from vibeguard.clients.base import APIError, ResponseCache
from vibeguard.clients.price import PriceClient
from vibeguard.clients.sentiment import SentimentClient
from vibeguard.errors import InvalidInput, RateLimited, UpstreamUnavailable
from vibeguard.schema import PriceSnapshot, SentimentSignal, SentimentWindow
from vibeguard.utils.async_batch import batch_gather, pair_results

log = logging.getLogger("vibeguard.data_gateway")

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{2,15}$")


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_symbol(raw: Any) -> str:
    symbol = str(raw or "").strip().upper()
    if not symbol:
        raise InvalidInput("Token symbol is required")
    if not SYMBOL_PATTERN.match(symbol):
        raise InvalidInput(f"Invalid token symbol: {symbol[:20]!r}")
    return symbol


def normalize_window(raw: Any) -> SentimentWindow:
    try:
        return SentimentWindow(str(raw or "Daily").strip())
    except ValueError:
        return SentimentWindow.DAILY


def normalize_ratio(value: Any) -> float | None:
    """Coerce a 0-1 or 0-100 ratio into [0, 1]. None for missing/non-numeric."""
    if value is None:
        return None
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        return None
    if abs(ratio) > 1.5:
        ratio /= 100.0
    return min(1.0, max(0.0, ratio))


def fallback_sentiment(symbol: str, timestamp: int, window: SentimentWindow = SentimentWindow.DAILY) -> SentimentSignal:
    """Deterministic synthetic sentiment seeded from the symbol's character codes.

    Same symbol, same numbers: positive lands in [0.4, 0.8).
    """
    seed = sum(ord(c) for c in symbol)

    def rand(scale: float) -> float:
        return ((seed * 9301 + 49297) % 233280) / 233280 * scale

    positive = 0.4 + rand(0.4)
    return SentimentSignal(
        token=symbol,
        score=round(positive * 100),
        timestamp=timestamp,
        sources=[],
        positive=positive,
        negative=1 - positive,
        sentiment_diff=rand(0.2) - 0.1,
        window=window,
        is_fallback=True,
    )


def parse_sentiment(
    symbol: str,
    payload: dict[str, Any],
    window: SentimentWindow,
    timestamp: int,
) -> SentimentSignal:
    """Normalize a flat ``{score}`` or structured ``{sentiment: {...}}`` payload."""
    positive = negative = diff = None
    structured = payload.get("sentiment")
    if isinstance(structured, dict):
        positive = normalize_ratio(structured.get("positive"))
        negative = normalize_ratio(structured.get("negative"))
        try:
            diff = float(structured["sentimentDiff"]) if structured.get("sentimentDiff") is not None else None
        except (TypeError, ValueError):
            diff = None

    raw_score = payload.get("score")
    if raw_score is not None:
        try:
            score = min(100.0, max(0.0, float(raw_score)))
        except (TypeError, ValueError):
            raise UpstreamUnavailable(f"Non-numeric sentiment score for {symbol}", provider="cryptoracle")
    elif positive is not None:
        score = float(round(positive * 100))
    else:
        raise UpstreamUnavailable(f"No sentiment score in payload for {symbol}", provider="cryptoracle")

    sources = payload.get("sources") or []
    return SentimentSignal(
        token=symbol,
        score=score,
        timestamp=timestamp,
        sources=[str(s) for s in sources] if isinstance(sources, list) else [],
        positive=positive,
        negative=negative,
        sentiment_diff=diff,
        window=window,
    )


def parse_price(token_id: str, entry: Any) -> PriceSnapshot:
    if not isinstance(entry, dict) or entry.get("usd") is None:
        raise InvalidInput(f"Unknown token id: {token_id}")
    try:
        return PriceSnapshot(
            token=token_id,
            price=float(entry["usd"]),
            volume_24h=float(entry.get("usd_24h_vol") or 0.0),
            price_change_24h=float(entry.get("usd_24h_change") or 0.0),
        )
    except (TypeError, ValueError) as e:
        raise UpstreamUnavailable(f"Non-numeric price data for {token_id}", provider="coingecko") from e


class DataGateway:
    """Cached, stale-tolerant access to the sentiment and price feeds."""

    def __init__(
        self,
        sentiment_client: SentimentClient,
        price_client: PriceClient,
        sentiment_ttl: float = 120.0,
        sentiment_stale: float = 1800.0,
        price_ttl: float = 60.0,
        price_stale: float = 900.0,
        call_timeout: float = 15.0,
        max_concurrent: int = 5,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = now_ms,
    ):
        self._sentiment = sentiment_client
        self._price = price_client
        self.sentiment_ttl = sentiment_ttl
        self.sentiment_stale = sentiment_stale
        self.price_ttl = price_ttl
        self.price_stale = price_stale
        self.call_timeout = call_timeout
        self.max_concurrent = max_concurrent
        self._cache = ResponseCache(clock=clock)
        self._wall_clock = wall_clock

    async def _bounded(self, call: Awaitable[Any], provider: str) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise APIError(
                f"{provider} call exceeded {self.call_timeout}s",
                provider=provider,
                retryable=True,
                timeout=True,
            ) from e

    def _stale_or_raise(self, key: str, error: APIError, stale_window: float) -> Any:
        """Serve a stale entry for rate-limit/timeout failures, else raise."""
        if error.rate_limited or error.timeout:
            stale = self._cache.get_stale(key, stale_window)
            if stale is not None:
                log.warning("Serving stale %s after %s", key, error)
                return stale
            if error.rate_limited:
                raise RateLimited(str(error), provider=error.provider) from error
        raise UpstreamUnavailable(str(error), provider=error.provider) from error

    # ── Sentiment ────────────────────────────────────────────────────

    async def get_sentiment(
        self,
        symbol: str,
        window: str | SentimentWindow = SentimentWindow.DAILY,
        allow_fallback: bool = False,
    ) -> SentimentSignal:
        """Sentiment for one symbol.

        Args:
            symbol: Token symbol (case-insensitive, 2-15 alphanumerics)
            window: Daily / 4H / 1H / 15M; unknown values mean Daily
            allow_fallback: Return the synthetic signal instead of raising
                UpstreamUnavailable
        """
        sym = normalize_symbol(symbol)
        win = normalize_window(window.value if isinstance(window, SentimentWindow) else window)
        key = f"sentiment:{sym}:{win.value}"

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            try:
                payload = await self._bounded(self._sentiment.get_sentiment(sym, win.value), "cryptoracle")
            except APIError as e:
                return self._stale_or_raise(key, e, self.sentiment_stale)
            signal = parse_sentiment(sym, payload or {}, win, self._wall_clock())
        except UpstreamUnavailable as e:
            if not allow_fallback:
                raise
            log.warning("Sentiment feed unavailable for %s (%s), using synthetic fallback", sym, e)
            return fallback_sentiment(sym, self._wall_clock(), win)

        self._cache.set(key, signal, self.sentiment_ttl)
        return signal

    async def get_sentiments(
        self,
        symbols: list[str],
        window: str | SentimentWindow = SentimentWindow.DAILY,
        allow_fallback: bool = False,
    ) -> dict[str, SentimentSignal]:
        """Batch sentiment. Invalid symbols and failed lookups are left out."""
        valid: list[str] = []
        for raw in symbols:
            try:
                sym = normalize_symbol(raw)
            except InvalidInput:
                log.warning("Dropping invalid symbol %r from batch", raw)
                continue
            if sym not in valid:
                valid.append(sym)
        if not valid:
            raise InvalidInput("At least one valid token symbol is required")

        results = await batch_gather(
            valid,
            lambda s: self.get_sentiment(s, window, allow_fallback),
            max_concurrent=self.max_concurrent,
        )
        return pair_results(valid, results)

    # ── Price ────────────────────────────────────────────────────────

    @staticmethod
    def _normalize_token_id(raw: Any) -> str:
        token_id = str(raw or "").strip().lower()
        if not token_id:
            raise InvalidInput("Token id is required")
        return token_id

    async def get_price(self, token_id: str) -> PriceSnapshot:
        tid = self._normalize_token_id(token_id)
        key = f"price:{tid}"

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            payload = await self._bounded(self._price.get_prices([tid]), "coingecko")
        except APIError as e:
            return self._stale_or_raise(key, e, self.price_stale)

        snapshot = parse_price(tid, payload.get(tid))
        self._cache.set(key, snapshot, self.price_ttl)
        return snapshot

    async def get_prices(self, token_ids: list[str]) -> dict[str, PriceSnapshot]:
        """Batch price in one upstream request for the ids not freshly cached.

        Ids the feed does not know are left out. On a rate limit or timeout,
        each missing id is served from its stale entry when one exists.
        """
        ids: list[str] = []
        for raw in token_ids:
            if str(raw or "").strip():
                tid = self._normalize_token_id(raw)
                if tid not in ids:
                    ids.append(tid)
        if not ids:
            raise InvalidInput("At least one token id is required")

        result: dict[str, PriceSnapshot] = {}
        missing: list[str] = []
        for tid in ids:
            cached = self._cache.get(f"price:{tid}")
            if cached is not None:
                result[tid] = cached
            else:
                missing.append(tid)
        if not missing:
            return result

        try:
            payload = await self._bounded(self._price.get_prices(missing), "coingecko")
        except APIError as e:
            if not (e.rate_limited or e.timeout):
                raise UpstreamUnavailable(str(e), provider=e.provider) from e
            for tid in missing:
                stale = self._cache.get_stale(f"price:{tid}", self.price_stale)
                if stale is not None:
                    result[tid] = stale
            if not result:
                exc_cls = RateLimited if e.rate_limited else UpstreamUnavailable
                raise exc_cls(str(e), provider=e.provider) from e
            log.warning("Price batch degraded (%s); served %d/%d ids", e, len(result), len(ids))
            return result

        for tid in missing:
            try:
                snapshot = parse_price(tid, payload.get(tid))
            except (InvalidInput, UpstreamUnavailable) as e:
                log.warning("No usable price for token id %s: %s", tid, e)
                continue
            self._cache.set(f"price:{tid}", snapshot, self.price_ttl)
            result[tid] = snapshot
        return result

    async def close(self) -> None:
        await self._sentiment.close()
        await self._price.close()
