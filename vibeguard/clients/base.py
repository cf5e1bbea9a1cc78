"""Shared async HTTP plumbing for the provider clients.

Every provider client (sentiment, price, reasoning, routing) owns one
``BaseClient``, which gives it:
- a per-client token bucket so bursts stay under the provider's quota
- bounded retries for 429 / 5xx / transport failures, exponential delay,
  honouring ``Retry-After``
- an optional per-request TTL cache for GETs
- failures normalized into ``APIError``

``ResponseCache`` is also used on its own by the data gateway, which needs
the stale read mode for last-known-value fallback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

log = logging.getLogger("vibeguard.http")


@dataclass
class TokenBucket:
    """Refills ``per_second`` tokens each second, holds at most one second's worth."""

    per_second: float
    _tokens: float = field(init=False)
    _refilled_at: float = field(init=False)

    def __post_init__(self) -> None:
        self._tokens = self.per_second
        self._refilled_at = time.monotonic()

    def delay(self) -> float:
        """Take a token; seconds the caller must wait first (0.0 when one was free)."""
        now = time.monotonic()
        self._tokens = min(self.per_second, self._tokens + (now - self._refilled_at) * self.per_second)
        self._refilled_at = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.per_second

    async def take(self) -> None:
        wait = self.delay()
        if wait > 0:
            await asyncio.sleep(wait)


@dataclass
class CacheEntry:
    data: Any
    stored_at: float
    expires_at: float


class ResponseCache:
    """In-memory TTL cache with two read modes.

    ``get`` returns only fresh entries (age <= ttl). ``get_stale`` returns an
    entry up to ``max_age`` seconds old regardless of its ttl; it is meant for
    serving a last-known value when the live fetch has failed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or self._clock() > entry.expires_at:
            return None
        return entry.data

    def get_stale(self, key: str, max_age: float) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > max_age:
            del self._entries[key]
            return None
        return entry.data

    def set(self, key: str, data: Any, ttl_seconds: float) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(data=data, stored_at=now, expires_at=now + ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class APIError(Exception):
    """HTTP-level failure from a provider.

    ``retryable`` marks failures worth another attempt (429, 5xx, transport);
    ``timeout`` distinguishes a slow provider from a refusing one.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        provider: str = "",
        retryable: bool = False,
        timeout: bool = False,
        retry_after: float = 0.0,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable
        self.timeout = timeout
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


def status_error(response: httpx.Response, provider: str) -> APIError | None:
    """APIError for a non-2xx response, None for success."""
    code = response.status_code
    if code < 400:
        return None
    if code == 429:
        return APIError(f"{provider} rate limited the request", 429, provider, retryable=True)
    if code >= 500:
        return APIError(f"{provider} returned {code}", code, provider, retryable=True)
    return APIError(f"{provider} rejected the request: {code} {response.text[:200]}", code, provider)


def retry_after_seconds(response: httpx.Response) -> float:
    value = response.headers.get("retry-after", "")
    return float(value) if value.isdigit() else 0.0


class BaseClient:
    """Async JSON client with throttling, retries and optional GET caching.

    Usage:
        client = BaseClient(
            base_url="https://api.coingecko.com/api/v3",
            rate_limit=5.0,  # req/sec
            timeout=10.0,
            provider_name="coingecko",
        )
        data = await client.get("/simple/price", params={"ids": "binancecoin"}, cache_ttl=60)
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        rate_limit: float = 10.0,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        backoff_multiplier: float = 2.0,
        provider_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider_name = provider_name or "provider"
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.backoff_multiplier = backoff_multiplier
        self._bucket = TokenBucket(per_second=rate_limit)
        self._cache = ResponseCache()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def cache_key(self, path: str, params: dict[str, Any] | None = None) -> str:
        return f"GET:{path}:{sorted((params or {}).items())}"

    def invalidate(self, path: str, params: dict[str, Any] | None = None) -> None:
        self._cache.invalidate(self.cache_key(path, params))

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        cache_ttl: float = 0,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """GET, served from cache when ``cache_ttl`` > 0 and a fresh copy exists."""
        key = self.cache_key(path, params) if cache_ttl > 0 else ""
        if key:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        data = await self._request("GET", path, params=params, headers=headers)
        if key:
            self._cache.set(key, data, cache_ttl)
        return data

    async def post(
        self,
        path: str,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self._request("POST", path, json_data=json_data, headers=headers)

    async def _send_once(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_data: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> Any:
        """One attempt. Raises APIError."""
        await self._bucket.take()
        try:
            response = await self._client.request(method, path, params=params, json=json_data, headers=headers)
        except httpx.TimeoutException as e:
            raise APIError(f"{self.provider_name} timed out: {e}", provider=self.provider_name,
                           retryable=True, timeout=True) from e
        except httpx.TransportError as e:
            raise APIError(f"{self.provider_name} unreachable: {e}", provider=self.provider_name,
                           retryable=True) from e

        error = status_error(response, self.provider_name)
        if error is not None:
            error.retry_after = retry_after_seconds(response)
            raise error
        try:
            return response.json()
        except ValueError as e:
            raise APIError(f"{self.provider_name} returned invalid JSON: {e}", provider=self.provider_name) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        delay = self.backoff_base
        attempt = 0
        while True:
            try:
                return await self._send_once(method, path, params, json_data, headers)
            except APIError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = max(delay, e.retry_after)
                log.debug("%s %s %s failed (%s), retry %d in %.1fs",
                          self.provider_name, method, path, e, attempt + 1, min(delay, self.backoff_max))
                await asyncio.sleep(min(delay, self.backoff_max))
                delay *= self.backoff_multiplier
                attempt += 1
