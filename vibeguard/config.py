"""Configuration loader for VibeGuard.

Defaults come from config/monitor.yaml; secrets and deployment-specific values
come from environment variables (CLI entry points load .env first). The merged
result is validated into ``Settings``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from vibeguard.errors import ConfigurationError

WORKSPACE = Path(__file__).resolve().parent.parent
CONFIG_DIR = WORKSPACE / "config"


def load_monitor_config(path: Path | None = None) -> dict[str, Any]:
    """Load config/monitor.yaml."""
    path = path or CONFIG_DIR / "monitor.yaml"
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text()) or {}


class MonitorSection(BaseModel):
    enabled: bool = False
    interval_seconds: float = Field(default=30.0, gt=0)
    cooldown_ms: int = Field(default=600_000, ge=0)
    auto_disable_on_execute: bool = False
    sentiment_fallback: bool = False


class FeedSection(BaseModel):
    base_url: str
    api_key: str = Field(default="", repr=False)
    ttl_seconds: float = 60.0
    stale_seconds: float = 900.0
    timeout_seconds: float = 10.0
    rate_limit: float = 5.0


class RiskSection(BaseModel):
    base_url: str = "https://api.kalibr.ai/v1"
    api_key: str = Field(default="", repr=False)
    routing_base_url: str = ""
    routing_api_key: str = Field(default="", repr=False)
    bad_threshold: float = 30.0
    model_high: str = "gpt-4o"
    model_low: str = "gpt-4o-mini"
    fallback_models: list[str] = Field(default_factory=lambda: ["gpt-4o-mini", "gpt-4.1-mini"])
    model_list_ttl_seconds: float = 600.0
    backoff_floor_seconds: float = 15.0
    backoff_ceiling_seconds: float = 300.0
    timeout_seconds: float = 30.0
    temperature: float = 0.2


class DemoSection(BaseModel):
    enabled: bool = False
    default_ttl_ms: int = 180_000
    min_ttl_ms: int = 15_000
    max_ttl_ms: int = 600_000


class ChainSection(BaseModel):
    rpc_url: str = ""
    private_key: str = Field(default="", repr=False)
    registry_address: str = ""
    router_address: str = ""
    vault_address: str = ""
    deployment_path: str = ""
    confirmation_timeout_seconds: float = 120.0


class StorageSection(BaseModel):
    data_dir: str = ""
    max_history_items: int = Field(default=500, ge=1)


def _sentiment_defaults() -> FeedSection:
    return FeedSection(base_url="https://api.cryptoracle.io/v1", ttl_seconds=120.0, stale_seconds=1800.0)


def _price_defaults() -> FeedSection:
    return FeedSection(base_url="https://api.coingecko.com/api/v3", ttl_seconds=60.0, stale_seconds=900.0)


class Settings(BaseModel):
    monitor: MonitorSection = Field(default_factory=MonitorSection)
    sentiment: FeedSection = Field(default_factory=_sentiment_defaults)
    price: FeedSection = Field(default_factory=_price_defaults)
    risk: RiskSection = Field(default_factory=RiskSection)
    demo: DemoSection = Field(default_factory=DemoSection)
    chain: ChainSection = Field(default_factory=ChainSection)
    storage: StorageSection = Field(default_factory=StorageSection)


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() == "true"


def _ms_to_seconds(raw: str) -> float:
    return float(raw) / 1000.0


# env var -> (section, key, cast). First non-empty variable wins per key.
ENV_OVERRIDES: list[tuple[str, str, str, Callable[[str], Any]]] = [
    ("ENABLE_MONITOR", "monitor", "enabled", _to_bool),
    ("MONITOR_INTERVAL_MS", "monitor", "interval_seconds", _ms_to_seconds),
    ("MONITOR_COOLDOWN_MS", "monitor", "cooldown_ms", int),
    ("MONITOR_AUTO_DISABLE_ON_EXECUTE", "monitor", "auto_disable_on_execute", _to_bool),
    ("CRYPTORACLE_API_KEY", "sentiment", "api_key", str),
    ("COINGECKO_API_KEY", "price", "api_key", str),
    ("SENTIMENT_BAD_THRESHOLD", "risk", "bad_threshold", float),
    ("KALIBR_MODEL_HIGH", "risk", "model_high", str),
    ("KALIBR_MODEL_LOW", "risk", "model_low", str),
    ("REASONING_API_KEY", "risk", "api_key", str),
    ("KALIBR_API_KEY", "risk", "api_key", str),
    ("REASONING_BASE_URL", "risk", "base_url", str),
    ("KALIBR_BASE_URL", "risk", "routing_base_url", str),
    ("KALIBR_API_KEY", "risk", "routing_api_key", str),
    ("ENABLE_DEMO_INJECTION", "demo", "enabled", _to_bool),
    ("DEMO_INJECTION_TTL_MS", "demo", "default_ttl_ms", int),
    ("AGENT_DEMO_RPC_URL", "chain", "rpc_url", str),
    ("EVM_RPC_URL", "chain", "rpc_url", str),
    ("BSC_RPC_URL", "chain", "rpc_url", str),
    ("AGENT_DEMO_PRIVATE_KEY", "chain", "private_key", str),
    ("PRIVATE_KEY", "chain", "private_key", str),
    ("AGENT_DEMO_REGISTRY_ADDRESS", "chain", "registry_address", str),
    ("AGENT_DEMO_ROUTER_ADDRESS", "chain", "router_address", str),
    ("AGENT_DEMO_DEPLOYMENT_PATH", "chain", "deployment_path", str),
    ("VIBESHIELD_VAULT_ADDRESS", "chain", "vault_address", str),
    ("VIBEGUARD_VAULT_ADDRESS", "chain", "vault_address", str),
    ("VIBEGUARD_DATA_DIR", "storage", "data_dir", str),
]


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay environment values onto the YAML dict (in place)."""
    claimed: set[tuple[str, str]] = set()
    for var, section, key, cast in ENV_OVERRIDES:
        raw = str(env.get(var, "")).strip()
        if not raw or (section, key) in claimed:
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {var}: {e}") from e
        data.setdefault(section, {})[key] = value
        claimed.add((section, key))
    return data


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from YAML defaults plus environment overrides."""
    data = load_monitor_config(path)
    for section in ("sentiment", "price"):
        defaults = (_sentiment_defaults if section == "sentiment" else _price_defaults)()
        data[section] = {**defaults.model_dump(), **(data.get(section) or {})}
    apply_env_overrides(data, os.environ if env is None else env)
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def configure_logging(level: str | None = None) -> None:
    """Root logging for CLI entry points. Level from argument, LOG_LEVEL, or INFO."""
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
