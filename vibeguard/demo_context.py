"""Demo context — one injected, time-boxed, one-shot emergency headline.

A single process-wide slot, not a queue: each inject overwrites it. Expiry is
checked lazily on every read and clears the slot. Once consumed the context
stays inert until it expires or is replaced.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from vibeguard.errors import InvalidInput
from vibeguard.schema import InjectedContext, Severity

log = logging.getLogger("vibeguard.demo_context")

DEFAULT_TTL_MS = 3 * 60 * 1000
MIN_TTL_MS = 15_000
MAX_TTL_MS = 10 * 60 * 1000

HEADLINE_PRESETS: dict[str, str] = {
    "BRIDGE_HACK": "Major security breach detected on BNB bridge; cascading liquidity risk expected.",
    "ORACLE_FAILURE": "Critical oracle outage detected; pricing integrity at risk for major pools.",
    "LIQUIDITY_CRUNCH": "Severe liquidity crunch detected; slippage and market impact risk elevated.",
}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def strip_wrapped_prefix(token: str) -> str:
    """WBNB -> BNB. Single-letter "W" is left alone."""
    token = str(token or "").strip().upper()
    if len(token) > 1 and token.startswith("W"):
        return token[1:]
    return token


def tokens_match(a: str, b: str) -> bool:
    """Case-insensitive match that treats wrapped and native symbols as equal."""
    return bool(a) and bool(b) and strip_wrapped_prefix(a) == strip_wrapped_prefix(b)


class DemoContextManager:
    """Holds at most one InjectedContext."""

    def __init__(
        self,
        clock: Callable[[], int] = _epoch_ms,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        min_ttl_ms: int = MIN_TTL_MS,
        max_ttl_ms: int = MAX_TTL_MS,
    ):
        self._clock = clock
        self.default_ttl_ms = default_ttl_ms
        self.min_ttl_ms = min_ttl_ms
        self.max_ttl_ms = max(max_ttl_ms, min_ttl_ms)
        self._context: InjectedContext | None = None

    def _clamp_ttl(self, ttl_ms: float | None) -> int:
        if ttl_ms is None:
            return self.default_ttl_ms
        try:
            ttl = float(ttl_ms)
        except (TypeError, ValueError):
            return self.default_ttl_ms
        if not math.isfinite(ttl):
            return self.default_ttl_ms
        return int(min(self.max_ttl_ms, max(self.min_ttl_ms, ttl)))

    def inject(
        self,
        token: str,
        headline: str,
        severity: Severity | str = Severity.CRITICAL,
        ttl_ms: float | None = None,
    ) -> InjectedContext:
        token = str(token or "").strip().upper()
        headline = str(headline or "").strip()
        if not token or not headline:
            raise InvalidInput("token and headline are required")
        try:
            severity = Severity(str(severity).upper()) if severity else Severity.CRITICAL
        except ValueError as e:
            raise InvalidInput(f"Unknown severity: {severity}") from e

        ttl = self._clamp_ttl(ttl_ms)
        now = self._clock()
        self._context = InjectedContext(
            token=token,
            headline=headline,
            severity=severity,
            timestamp=now,
            expires_at=now + ttl,
        )
        log.info("Injected demo context token=%s severity=%s ttl_ms=%d", token, severity.value, ttl)
        return self._context

    def inject_preset(
        self,
        token: str,
        preset: str,
        severity: Severity | str = Severity.CRITICAL,
        ttl_ms: float | None = None,
    ) -> InjectedContext:
        headline = HEADLINE_PRESETS.get(str(preset or "").strip().upper())
        if headline is None:
            raise InvalidInput(f"Unknown headline preset: {preset}")
        return self.inject(token, headline, severity, ttl_ms)

    def snapshot(self) -> InjectedContext | None:
        """Current context if unexpired, consumed or not."""
        if self._context is None:
            return None
        if self._clock() > self._context.expires_at:
            log.debug("Demo context for %s expired", self._context.token)
            self._context = None
        return self._context

    def get_active_context(self, token: str) -> InjectedContext | None:
        context = self.snapshot()
        if context is None or context.consumed:
            return None
        if not tokens_match(context.token, token):
            return None
        return context

    def mark_consumed(self) -> None:
        if self._context is None or self._context.consumed:
            return
        self._context.consumed = True
        log.info("Demo context for %s marked consumed", self._context.token)

    def clear(self) -> None:
        self._context = None
