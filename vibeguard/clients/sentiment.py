"""Cryptoracle API client — social sentiment per token symbol.

Returns raw payloads. Shape varies by plan: either a flat ``{score, sources}``
(score 0-100) or a structured ``{sentiment: {positive, negative,
sentimentDiff}, sources}`` with ratios. Normalization is the data gateway's job.
"""

from __future__ import annotations

from typing import Any

import httpx

from vibeguard.clients.base import BaseClient


class SentimentClient:
    """Cryptoracle v1: sentiment by symbol and window."""

    def __init__(
        self,
        base_url: str = "https://api.cryptoracle.io/v1",
        api_key: str = "",
        timeout: float = 10.0,
        rate_limit: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = BaseClient(
            base_url=base_url,
            headers=headers,
            rate_limit=rate_limit,
            timeout=timeout,
            max_retries=1,
            provider_name="cryptoracle",
            transport=transport,
        )

    async def get_sentiment(self, symbol: str, window: str = "Daily") -> dict[str, Any]:
        """GET /sentiment/{symbol}?window=<window>."""
        data = await self._client.get(f"/sentiment/{symbol}", params={"window": window})
        if not isinstance(data, dict):
            return {}
        inner = data.get("data")
        return inner if isinstance(inner, dict) else data

    async def close(self) -> None:
        await self._client.close()
