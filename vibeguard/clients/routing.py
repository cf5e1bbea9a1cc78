"""Kalibr routing intelligence client (optional).

Two calls:
- /route: which model to use for a goal. A returned model overrides the
  arbiter's sentiment-based tier.
- /outcomes: report how a call went so future routing improves.

Both are advisory. The arbiter treats any failure here as "no opinion".
"""

from __future__ import annotations

from typing import Any

import httpx

from vibeguard.clients.base import BaseClient


class RoutingClient:
    """Kalibr v1 routing + outcome reporting."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = BaseClient(
            base_url=base_url,
            headers=headers,
            rate_limit=5.0,
            timeout=timeout,
            max_retries=0,
            provider_name="kalibr",
            transport=transport,
        )

    async def decide(self, goal: str, candidates: list[str], context: dict[str, Any]) -> str | None:
        """POST /route. Returns the chosen model, or None when the backend has no pick."""
        data = await self._client.post(
            "/route",
            json_data={"goal": goal, "candidates": candidates, "context": context},
        )
        if not isinstance(data, dict):
            return None
        model = str(data.get("model") or "").strip()
        return model or None

    async def report_outcome(self, outcome: dict[str, Any]) -> None:
        """POST /outcomes."""
        await self._client.post("/outcomes", json_data=outcome)

    async def close(self) -> None:
        await self._client.close()
