"""Risk arbitration — turn sentiment + price (+ demo context) into a verdict.

Steps for each analysis:
1. Pick a model tier from the sentiment score; an optional routing decision
   overrides it.
2. Build the prompt, adding the emergency block when a matching injected
   context is active.
3. Resolve the model against the provider's model list, substituting the
   first available fallback if needed.
4. Call the reasoning endpoint, honouring the shared 429 backoff.
5. Parse the first JSON object in the reply into a RiskVerdict.

Any failure in 3-5 degrades to the neutral verdict (riskScore 50, no exit),
so a broken reasoning endpoint can never trigger an execution.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable

from vibeguard.clients.base import APIError
from vibeguard.clients.reasoning import ReasoningClient
from vibeguard.clients.routing import RoutingClient
from vibeguard.demo_context import tokens_match
from vibeguard.errors import ConfigurationError, RiskAnalysisFailed
from vibeguard.schema import InjectedContext, PriceSnapshot, RiskVerdict, SentimentSignal

log = logging.getLogger("vibeguard.risk")

SYSTEM_PROMPT = (
    "You are a DeFi position risk analyst. "
    "Reply with a single JSON object and nothing else."
)
ROUTING_GOAL = "token_risk_analysis"
FALLBACK_MODEL_NAME = "fallback"


class BackoffTimer:
    """Shared rate-limit backoff for the reasoning endpoint.

    Each 429 doubles the window (at least ``floor``, at most ``ceiling``);
    calls are refused until it elapses. Any success resets it to zero.
    """

    def __init__(self, floor: float = 15.0, ceiling: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.floor = floor
        self.ceiling = ceiling
        self._clock = clock
        self.backoff_seconds = 0.0
        self._until = 0.0

    def remaining(self) -> float:
        return max(0.0, self._until - self._clock())

    def register_rate_limit(self) -> float:
        self.backoff_seconds = min(self.ceiling, max(self.floor, self.backoff_seconds * 2))
        self._until = self._clock() + self.backoff_seconds
        return self.backoff_seconds

    def reset(self) -> None:
        self.backoff_seconds = 0.0
        self._until = 0.0


def build_prompt(
    sentiment: SentimentSignal,
    price: PriceSnapshot,
    context: InjectedContext | None = None,
) -> str:
    lines = [
        "Analyze crypto risk:",
        f"Token: {sentiment.token}",
        f"Sentiment Score: {sentiment.score:g}/100",
        f"Price Change 24h: {price.price_change_24h:g}%",
        f"Volume 24h: ${price.volume_24h:,.0f}",
    ]
    if context is not None:
        lines += [
            "",
            f"EMERGENCY CONTEXT ({context.severity.value}): {context.headline}",
            "Weight this breaking news at 80% and the market signals above at 20%.",
            "If it describes an exploit, hack, insolvency or bridge compromise, "
            "you MUST return riskScore > 85 and shouldExit = true.",
        ]
    lines += [
        "",
        "Should we exit position? Respond with JSON: "
        "{riskScore: 0-100, shouldExit: boolean, reason: string}",
    ]
    return "\n".join(lines)


def extract_json(text: str) -> dict[str, Any] | None:
    """First well-formed JSON object embedded in ``text``."""
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        idx = text.find("{", idx + 1)
    return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise RiskAnalysisFailed(f"shouldExit is not a boolean: {value!r}")


def parse_verdict(text: str, model: str, requested_model: str, substituted: bool) -> RiskVerdict:
    if not text or not text.strip():
        raise RiskAnalysisFailed("Empty model output")
    obj = extract_json(text)
    if obj is None:
        raise RiskAnalysisFailed("No JSON object in model output")

    score = obj.get("riskScore")
    if isinstance(score, bool) or not isinstance(score, (int, float, str)):
        raise RiskAnalysisFailed(f"riskScore is not numeric: {score!r}")
    try:
        score = float(score)
    except ValueError as e:
        raise RiskAnalysisFailed(f"riskScore is not numeric: {score!r}") from e
    if score != score:
        raise RiskAnalysisFailed("riskScore is NaN")

    return RiskVerdict(
        risk_score=min(100.0, max(0.0, score)),
        should_exit=_coerce_bool(obj.get("shouldExit", False)),
        reason=str(obj.get("reason") or ""),
        ai_model=model,
        requested_model=requested_model,
        model_substituted=substituted,
    )


def neutral_verdict(requested_model: str, error: str) -> RiskVerdict:
    return RiskVerdict(
        risk_score=50,
        should_exit=False,
        reason=f"Analysis failed: {error}",
        ai_model=FALLBACK_MODEL_NAME,
        requested_model=requested_model,
        degraded=True,
    )


class RiskArbiter:
    """Model selection, prompting and verdict parsing for the reasoning endpoint."""

    def __init__(
        self,
        reasoning: ReasoningClient,
        routing: RoutingClient | None = None,
        bad_threshold: float = 30.0,
        model_high: str = "gpt-4o",
        model_low: str = "gpt-4o-mini",
        fallback_models: list[str] | None = None,
        backoff: BackoffTimer | None = None,
        temperature: float = 0.2,
    ):
        self._reasoning = reasoning
        self._routing = routing
        self.bad_threshold = bad_threshold
        self.model_high = model_high
        self.model_low = model_low
        self.fallback_models = list(fallback_models or [])
        self.backoff = backoff or BackoffTimer()
        self.temperature = temperature
        self._pending_reports: set[asyncio.Task] = set()

    def select_tier(self, sentiment: SentimentSignal) -> str:
        return self.model_high if sentiment.score < self.bad_threshold else self.model_low

    def _candidates(self) -> list[str]:
        seen: list[str] = []
        for model in [self.model_high, self.model_low, *self.fallback_models]:
            if model and model not in seen:
                seen.append(model)
        return seen

    async def _routed_model(self, sentiment: SentimentSignal, emergency: bool) -> str | None:
        if self._routing is None:
            return None
        try:
            return await self._routing.decide(
                ROUTING_GOAL,
                self._candidates(),
                {"token": sentiment.token, "sentimentScore": sentiment.score, "emergency": emergency},
            )
        except Exception as e:
            log.debug("Routing decision unavailable: %s", e)
            return None

    async def resolve_model(self, requested: str, exclude: set[str] | None = None) -> tuple[str, bool]:
        """Map ``requested`` onto a model the provider serves.

        Returns (model, substituted). When the list cannot be fetched, or
        nothing on it matches, the requested model is used unchanged.
        """
        exclude = exclude or set()
        try:
            available = await self._reasoning.list_models()
        except APIError as e:
            log.warning("Model list unavailable (%s); using %s as requested", e, requested)
            return requested, False
        if not available:
            return requested, False
        if requested in available and requested not in exclude:
            return requested, False
        for candidate in self.fallback_models:
            if candidate in available and candidate not in exclude:
                log.warning("Model %s unavailable; substituting %s", requested, candidate)
                return candidate, True
        return requested, False

    def _check_backoff(self) -> None:
        remaining = self.backoff.remaining()
        if remaining > 0:
            raise RiskAnalysisFailed(f"Reasoning endpoint backed off for {remaining:.0f}s")

    async def _complete(self, model: str, prompt: str) -> str:
        self._check_backoff()
        try:
            response = await self._reasoning.complete(
                model, prompt, system_prompt=SYSTEM_PROMPT, temperature=self.temperature
            )
        except APIError as e:
            if e.rate_limited:
                window = self.backoff.register_rate_limit()
                log.warning("Reasoning endpoint rate limited; backing off %.0fs", window)
                raise RiskAnalysisFailed("Reasoning endpoint rate limited") from e
            raise
        self.backoff.reset()
        content = response.get("content") if isinstance(response, dict) else None
        return content if isinstance(content, str) else ""

    async def _analyze(self, requested: str, prompt: str) -> RiskVerdict:
        # no provider traffic at all, model list included, while backed off
        self._check_backoff()
        try:
            model, substituted = await self.resolve_model(requested)
            try:
                text = await self._complete(model, prompt)
            except APIError as e:
                if e.status_code != 404:
                    raise
                log.warning("Model %s not found; refreshing model list", model)
                self._reasoning.invalidate_models()
                retry_model, _ = await self.resolve_model(requested, exclude={model})
                if retry_model == model:
                    raise
                model, substituted = retry_model, True
                text = await self._complete(model, prompt)
        except APIError as e:
            raise RiskAnalysisFailed(f"Reasoning call failed: {e}") from e
        except ConfigurationError as e:
            raise RiskAnalysisFailed(str(e)) from e
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RiskAnalysisFailed(f"Malformed reasoning response: {e}") from e
        return parse_verdict(text, model, requested, substituted)

    async def analyze_risk(
        self,
        sentiment: SentimentSignal,
        price: PriceSnapshot,
        injected_context: InjectedContext | None = None,
    ) -> RiskVerdict:
        """Verdict for one token. Never raises for upstream or parse failures."""
        context = injected_context
        if context is not None and (context.consumed or not tokens_match(context.token, sentiment.token)):
            context = None

        requested = self.select_tier(sentiment)
        routed = await self._routed_model(sentiment, context is not None)
        if routed:
            requested = routed

        prompt = build_prompt(sentiment, price, context)
        try:
            verdict = await self._analyze(requested, prompt)
        except RiskAnalysisFailed as e:
            log.warning("Risk analysis for %s degraded: %s", sentiment.token, e)
            verdict = neutral_verdict(requested, str(e))

        self._report_outcome(sentiment, verdict, context is not None)
        return verdict

    def _report_outcome(self, sentiment: SentimentSignal, verdict: RiskVerdict, emergency: bool) -> None:
        if self._routing is None:
            return
        outcome = {
            "goal": ROUTING_GOAL,
            "model": verdict.ai_model,
            "success": not verdict.degraded,
            "token": sentiment.token,
            "riskScore": verdict.risk_score,
            "shouldExit": verdict.should_exit,
            "emergency": emergency,
        }
        task = asyncio.create_task(self._send_outcome(outcome))
        self._pending_reports.add(task)
        task.add_done_callback(self._pending_reports.discard)

    async def _send_outcome(self, outcome: dict[str, Any]) -> None:
        try:
            await self._routing.report_outcome(outcome)
        except Exception as e:
            log.debug("Outcome report failed: %s", e)

    async def drain_reports(self) -> None:
        """Wait for in-flight outcome reports."""
        if self._pending_reports:
            await asyncio.gather(*self._pending_reports, return_exceptions=True)

    async def close(self) -> None:
        await self.drain_reports()
        await self._reasoning.close()
        if self._routing is not None:
            await self._routing.close()
