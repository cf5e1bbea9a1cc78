"""Domain models for VibeGuard.

Persisted records (Subscription, TxHistoryItem) serialize with the camelCase
field names used by data/subscriptions.json and data/tx_history.json.
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from vibeguard.errors import ErrorKind


# ── Enums ────────────────────────────────────────────────────────────


class Severity(str, Enum):
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TxSource(str, Enum):
    MONITOR = "monitor"
    MANUAL = "manual"
    AGENT = "agent"


class CycleOutcome(str, Enum):
    SKIPPED = "skipped"
    NO_ACTION = "no_action"
    EXECUTED = "executed"
    EXECUTION_FAILED = "execution_failed"
    ERROR = "error"


class SkipReason(str, Enum):
    COOLDOWN = "cooldown"


class SentimentWindow(str, Enum):
    DAILY = "Daily"
    FOUR_HOURS = "4H"
    ONE_HOUR = "1H"
    FIFTEEN_MINUTES = "15M"


# ── Persisted records ────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Subscription(_CamelModel):
    """A watched position. Identity is (user_address, token_address), case-insensitive."""

    user_address: str = Field(alias="userAddress")
    token_symbol: str = Field(alias="tokenSymbol")
    token_id: str = Field(alias="tokenId")
    token_address: str = Field(alias="tokenAddress")
    amount: str
    enabled: bool = True
    risk_threshold: float = Field(default=80, ge=0, le=100, alias="riskThreshold")
    last_executed_at: int | None = Field(default=None, alias="lastExecutedAt")

    @property
    def identity(self) -> tuple[str, str]:
        return subscription_identity(self.user_address, self.token_address)


class TxHistoryItem(_CamelModel):
    user_address: str = Field(alias="userAddress")
    token_address: str = Field(alias="tokenAddress")
    tx_hash: str = Field(alias="txHash")
    timestamp: int
    source: TxSource
    router_address: str | None = Field(default=None, alias="routerAddress")
    executor_address: str | None = Field(default=None, alias="executorAddress")


def subscription_identity(user_address: str, token_address: str) -> tuple[str, str]:
    return (str(user_address).strip().lower(), str(token_address).strip().lower())


# ── Signals and verdicts ─────────────────────────────────────────────


class SentimentSignal(BaseModel):
    token: str
    score: float = Field(ge=0, le=100)
    timestamp: int
    sources: list[str] = Field(default_factory=list)
    positive: float | None = None
    negative: float | None = None
    sentiment_diff: float | None = None
    window: SentimentWindow = SentimentWindow.DAILY
    is_fallback: bool = False


class PriceSnapshot(BaseModel):
    token: str
    price: float
    volume_24h: float = 0.0
    price_change_24h: float = 0.0


class InjectedContext(BaseModel):
    token: str
    headline: str
    severity: Severity = Severity.CRITICAL
    timestamp: int
    expires_at: int
    consumed: bool = False


class RiskVerdict(BaseModel):
    risk_score: float = Field(ge=0, le=100)
    should_exit: bool
    reason: str = ""
    ai_model: str
    requested_model: str = ""
    model_substituted: bool = False
    degraded: bool = False


class ExecutionResult(BaseModel):
    success: bool
    tx_hash: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    warning: str | None = None
    # addresses the transaction actually went through
    router_address: str | None = None
    executor_address: str | None = None

    @classmethod
    def failure(cls, error: str, kind: ErrorKind, warning: str | None = None) -> "ExecutionResult":
        return cls(success=False, error=error, error_kind=kind, warning=warning)


class CycleResult(BaseModel):
    """Outcome of one subscription's pass through a monitor cycle."""

    subscription: Subscription
    outcome: CycleOutcome
    skip_reason: SkipReason | None = None
    cooldown_remaining_ms: int | None = None
    sentiment: SentimentSignal | None = None
    price: PriceSnapshot | None = None
    analysis: RiskVerdict | None = None
    executed: ExecutionResult | None = None
    error: str | None = None
