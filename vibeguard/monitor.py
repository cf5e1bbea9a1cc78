"""Monitor cycle — one pass over enabled subscriptions, plus the periodic loop.

Per subscription:
1. Cooldown: recently executed subscriptions are skipped with no upstream calls
2. Sentiment + price, fetched concurrently
3. Injected demo context for the symbol (or its unwrapped alias)
4. Risk verdict
5. Execute when shouldExit and riskScore >= riskThreshold; on success stamp
   lastExecutedAt, optionally disable, record tx history, consume the context

Failures in 2-5 are recorded per subscription and never stop the cycle.
Only an unreadable subscription store aborts it. At the end the stored set
is rewritten with just the touched records' enabled/lastExecutedAt changed.

Only one cycle runs at a time; a call while one is in flight returns [].
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from pathlib import Path
from typing import Any, Callable

from vibeguard.clients.price import PriceClient
from vibeguard.clients.reasoning import ReasoningClient
from vibeguard.clients.routing import RoutingClient
from vibeguard.clients.sentiment import SentimentClient
from vibeguard.config import Settings
from vibeguard.data_gateway import DataGateway
from vibeguard.demo_context import DemoContextManager, strip_wrapped_prefix
from vibeguard.execution import ProtectionExecutor
from vibeguard.risk import BackoffTimer, RiskArbiter
from vibeguard.schema import (
    CycleOutcome,
    CycleResult,
    ExecutionResult,
    InjectedContext,
    SkipReason,
    Subscription,
    TxHistoryItem,
    TxSource,
)
from vibeguard.store import SubscriptionStore, TxHistoryStore

log = logging.getLogger("vibeguard.monitor")


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class MonitorCycle:
    """Single-flight monitor over injected components."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        history: TxHistoryStore,
        gateway: DataGateway,
        arbiter: RiskArbiter,
        executor: ProtectionExecutor,
        demo: DemoContextManager,
        cooldown_ms: int = 600_000,
        auto_disable_on_execute: bool = False,
        sentiment_fallback: bool = False,
        interval_seconds: float = 30.0,
        enabled: bool = True,
        clock: Callable[[], int] = _epoch_ms,
    ):
        self.subscriptions = subscriptions
        self.history = history
        self.gateway = gateway
        self.arbiter = arbiter
        self.executor = executor
        self.demo = demo
        self.cooldown_ms = cooldown_ms
        self.auto_disable_on_execute = auto_disable_on_execute
        self.sentiment_fallback = sentiment_fallback
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self._clock = clock
        self._running = False
        self._stop = asyncio.Event()
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> list[CycleResult]:
        """One cycle. Returns [] without doing anything if a cycle is in flight."""
        if self._running:
            log.info("Cycle already running; skipping")
            return []
        self._running = True
        try:
            subs = self.subscriptions.load_enabled()
            log.info("Cycle started enabled_subscriptions=%d", len(subs))

            results: list[CycleResult] = []
            updates: dict[tuple[str, str], dict[str, Any]] = {}
            for sub in subs:
                results.append(await self._process(sub, updates))

            self.subscriptions.apply_updates(updates)

            counts = Counter(r.outcome.value for r in results)
            log.info(
                "Cycle finished %s",
                " ".join(f"{o.value}={counts.get(o.value, 0)}" for o in CycleOutcome),
            )
            return results
        finally:
            self._running = False

    def _lookup_context(self, symbol: str) -> InjectedContext | None:
        symbol = symbol.strip().upper()
        context = self.demo.get_active_context(symbol)
        alias = strip_wrapped_prefix(symbol)
        if context is None and alias != symbol:
            context = self.demo.get_active_context(alias)
        return context

    async def _process(self, sub: Subscription, updates: dict[tuple[str, str], dict[str, Any]]) -> CycleResult:
        now = self._clock()
        if sub.last_executed_at is not None:
            elapsed = now - sub.last_executed_at
            if elapsed < self.cooldown_ms:
                log.debug("Cooldown user=%s token=%s remaining_ms=%d", sub.user_address, sub.token_symbol, self.cooldown_ms - elapsed)
                return CycleResult(
                    subscription=sub,
                    outcome=CycleOutcome.SKIPPED,
                    skip_reason=SkipReason.COOLDOWN,
                    cooldown_remaining_ms=self.cooldown_ms - elapsed,
                )

        try:
            sentiment, price = await asyncio.gather(
                self.gateway.get_sentiment(sub.token_symbol, allow_fallback=self.sentiment_fallback),
                self.gateway.get_price(sub.token_id),
            )
            context = self._lookup_context(sub.token_symbol)
            analysis = await self.arbiter.analyze_risk(sentiment, price, context)

            if not (analysis.should_exit and analysis.risk_score >= sub.risk_threshold):
                log.info(
                    "No action user=%s token=%s should_exit=%s score=%.0f threshold=%.0f",
                    sub.user_address, sub.token_symbol, analysis.should_exit,
                    analysis.risk_score, sub.risk_threshold,
                )
                return CycleResult(
                    subscription=sub, outcome=CycleOutcome.NO_ACTION,
                    sentiment=sentiment, price=price, analysis=analysis,
                )

            log.info(
                "Execute condition met user=%s token=%s score=%.0f threshold=%.0f",
                sub.user_address, sub.token_symbol, analysis.risk_score, sub.risk_threshold,
            )
            executed = await self.executor.execute_protection(sub.user_address, sub.amount)
            if not executed.success:
                log.warning("Execution failed user=%s: %s", sub.user_address, executed.error)
                return CycleResult(
                    subscription=sub, outcome=CycleOutcome.EXECUTION_FAILED,
                    sentiment=sentiment, price=price, analysis=analysis, executed=executed,
                )

            stamp = self._clock()
            sub.last_executed_at = stamp
            fields: dict[str, Any] = {"lastExecutedAt": stamp}
            if self.auto_disable_on_execute:
                sub.enabled = False
                fields["enabled"] = False
            updates[sub.identity] = fields

            await self._record_history(sub, executed, stamp)
            if context is not None:
                self.demo.mark_consumed()

            log.info("Execution success user=%s tx=%s", sub.user_address, executed.tx_hash)
            return CycleResult(
                subscription=sub, outcome=CycleOutcome.EXECUTED,
                sentiment=sentiment, price=price, analysis=analysis, executed=executed,
            )
        except Exception as e:
            log.error("Processing error user=%s token=%s: %s", sub.user_address, sub.token_symbol, e)
            return CycleResult(subscription=sub, outcome=CycleOutcome.ERROR, error=str(e) or e.__class__.__name__)

    async def _record_history(self, sub: Subscription, executed: ExecutionResult, timestamp: int) -> None:
        """Append the monitor's tx record. Metadata and write are both best-effort."""
        tx_hash = executed.tx_hash or ""
        router, executor = executed.router_address, executed.executor_address
        if not (router and executor):
            try:
                config = await self.executor.get_public_config()
                router = router or config.get("router") or None
                executor = executor or config.get("router_executor") or None
            except Exception as e:
                log.debug("Router metadata unavailable: %s", e)

        try:
            self.history.append(
                TxHistoryItem(
                    user_address=sub.user_address,
                    token_address=sub.token_address,
                    tx_hash=tx_hash,
                    timestamp=timestamp,
                    source=TxSource.MONITOR,
                    router_address=router,
                    executor_address=executor,
                )
            )
        except Exception as e:
            log.error("Failed to record tx history for %s (tx %s): %s", sub.user_address, tx_hash, e)

    # ── Scheduling ───────────────────────────────────────────────────

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception:
            log.exception("Monitor run failed")

    async def run_forever(self) -> None:
        """Run immediately, then every ``interval_seconds`` until stop().

        Ticks fire on a fixed period regardless of cycle duration; a tick
        that lands while a cycle is running is absorbed by run_once.
        """
        if not self.enabled:
            log.info("Monitor disabled (ENABLE_MONITOR is not true)")
            return
        self._stop.clear()
        log.info("Monitor loop starting interval=%.1fs", self.interval_seconds)
        while not self._stop.is_set():
            task = asyncio.create_task(self._tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        log.info("Monitor loop stopped")

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        await self.gateway.close()
        await self.arbiter.close()


def build_monitor(settings: Settings) -> MonitorCycle:
    """Wire real clients from configuration."""
    data_dir = Path(settings.storage.data_dir) if settings.storage.data_dir else None
    subscriptions = SubscriptionStore(data_dir / "subscriptions.json" if data_dir else None)
    history = TxHistoryStore(
        data_dir / "tx_history.json" if data_dir else None,
        max_items=settings.storage.max_history_items,
    )

    s, p = settings.sentiment, settings.price
    gateway = DataGateway(
        SentimentClient(s.base_url, s.api_key, timeout=s.timeout_seconds, rate_limit=s.rate_limit),
        PriceClient(p.base_url, p.api_key, timeout=p.timeout_seconds, rate_limit=p.rate_limit),
        sentiment_ttl=s.ttl_seconds,
        sentiment_stale=s.stale_seconds,
        price_ttl=p.ttl_seconds,
        price_stale=p.stale_seconds,
        # feed clients retry once, so allow two attempts
        call_timeout=2 * max(s.timeout_seconds, p.timeout_seconds) + 1,
    )

    r = settings.risk
    routing = RoutingClient(r.routing_base_url, r.routing_api_key) if r.routing_base_url else None
    arbiter = RiskArbiter(
        ReasoningClient(r.base_url, r.api_key, timeout=r.timeout_seconds, model_list_ttl=r.model_list_ttl_seconds),
        routing,
        bad_threshold=r.bad_threshold,
        model_high=r.model_high,
        model_low=r.model_low,
        fallback_models=r.fallback_models,
        backoff=BackoffTimer(r.backoff_floor_seconds, r.backoff_ceiling_seconds),
        temperature=r.temperature,
    )

    c = settings.chain
    executor = ProtectionExecutor(
        rpc_url=c.rpc_url,
        private_key=c.private_key,
        registry_address=c.registry_address,
        router_address=c.router_address,
        vault_address=c.vault_address,
        deployment_path=c.deployment_path,
        confirmation_timeout=c.confirmation_timeout_seconds,
    )

    d = settings.demo
    demo = DemoContextManager(default_ttl_ms=d.default_ttl_ms, min_ttl_ms=d.min_ttl_ms, max_ttl_ms=d.max_ttl_ms)

    m = settings.monitor
    return MonitorCycle(
        subscriptions,
        history,
        gateway,
        arbiter,
        executor,
        demo,
        cooldown_ms=m.cooldown_ms,
        auto_disable_on_execute=m.auto_disable_on_execute,
        sentiment_fallback=m.sentiment_fallback,
        interval_seconds=m.interval_seconds,
        enabled=m.enabled,
    )
