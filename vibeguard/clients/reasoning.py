"""Reasoning endpoint client — OpenAI-compatible chat completions.

Used by the risk arbiter for verdict generation. Rate limiting and model
fallback live in the arbiter; this client never retries, so a 429 surfaces
immediately as ``APIError(status_code=429)``.

Environment:
    REASONING_API_KEY / KALIBR_API_KEY: bearer token (required)
"""

from __future__ import annotations

from typing import Any

import httpx

from vibeguard.clients.base import BaseClient
from vibeguard.errors import ConfigurationError


class ReasoningClient:
    """Chat completions + model listing."""

    def __init__(
        self,
        base_url: str = "https://api.kalibr.ai/v1",
        api_key: str = "",
        timeout: float = 30.0,
        model_list_ttl: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model_list_ttl = model_list_ttl
        self._client = BaseClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            rate_limit=10.0,
            timeout=timeout,
            max_retries=0,
            provider_name="reasoning",
            transport=transport,
        )

    def _require_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Reasoning API key not set (REASONING_API_KEY or KALIBR_API_KEY)")

    async def list_models(self) -> list[str]:
        """Model ids the provider currently serves. Cached for ``model_list_ttl``.

        Accepts both ``{data: [{id}]}`` and ``{models: [{name: "models/x"}]}``.
        """
        self._require_key()
        data = await self._client.get("/models", cache_ttl=self.model_list_ttl)
        if not isinstance(data, dict):
            return []
        names: list[str] = []
        for item in data.get("data", []) or []:
            if isinstance(item, dict) and item.get("id"):
                names.append(str(item["id"]))
        for item in data.get("models", []) or []:
            if isinstance(item, dict) and item.get("name"):
                names.append(str(item["name"]).removeprefix("models/"))
        return names

    def invalidate_models(self) -> None:
        self._client.invalidate("/models")

    async def complete(
        self,
        model: str,
        prompt: str,
        system_prompt: str = "",
        max_tokens: int = 512,
        temperature: float = 0.2,
    ) -> dict[str, Any]:
        """POST /chat/completions.

        Returns:
            Dict with content, model and usage info

        Raises:
            APIError: on HTTP failure (404 unknown model, 429 rate limit, ...)
            ConfigurationError: when no API key is configured
        """
        self._require_key()
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = await self._client.post(
            "/chat/completions",
            json_data={
                "model": model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )

        if not isinstance(data, dict):
            data = {}
        # providers send null for absent usage, choices or message
        content = ""
        choices = data.get("choices") or []
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            content = message["content"]
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}

        return {
            "content": content,
            "model": data.get("model") or model,
            "usage": {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
            },
        }

    async def close(self) -> None:
        await self._client.close()
