"""CoinGecko API client — spot price, 24h volume and 24h change.

Uses /simple/price, which accepts a comma-separated id list, so single and
batch lookups are the same request.
"""

from __future__ import annotations

from typing import Any

import httpx

from vibeguard.clients.base import BaseClient


class PriceClient:
    """CoinGecko v3 simple price endpoint."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: str = "",
        timeout: float = 10.0,
        rate_limit: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["x-cg-pro-api-key"] = api_key
        self._client = BaseClient(
            base_url=base_url,
            headers=headers,
            rate_limit=rate_limit,
            timeout=timeout,
            max_retries=1,
            provider_name="coingecko",
            transport=transport,
        )

    async def get_prices(self, token_ids: list[str]) -> dict[str, dict[str, Any]]:
        """GET /simple/price for one or more CoinGecko ids.

        Returns {id: {usd, usd_24h_vol, usd_24h_change}}. Unknown ids are
        simply absent from the response.
        """
        data = await self._client.get(
            "/simple/price",
            params={
                "ids": ",".join(token_ids),
                "vs_currencies": "usd",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
            },
        )
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        await self._client.close()
