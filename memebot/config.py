"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading (config.yaml at the project root by default)
  - Env var overrides for deployment (CHAIN_ID, RPC_HTTP, ROUTER_ADDRESS, ...)
  - All subsystem configs: chain, rpc, exchange, strategy, risk, engine,
    storage, observability, alerts, monitoring
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, Field

from memebot.errors import ConfigError


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

WEI_PER_ETH = 10**18

# DexScreener / DefiLlama chain slugs by EVM chain id
CHAIN_KEYS: dict[int, str] = {
    1: "ethereum",
    10: "optimism",
    56: "bsc",
    137: "polygon",
    8453: "base",
    42161: "arbitrum",
}


class RpcConfig(BaseModel):
    http_url: str = "http://127.0.0.1:8545"
    ws_url: str | None = None
    poll_interval_ms: int = 2000
    request_timeout_secs: float = 10.0


class ExchangeConfig(BaseModel):
    router_address: str = ""
    max_slippage_bps: int = 300
    deadline_secs: int = 120
    max_gas_price_gwei: int = 200
    default_gas_limit: int = 350_000
    confirmation_grace_secs: int = 30
    base_tokens: list[str] = Field(default_factory=list)


class StrategyConfig(BaseModel):
    max_positions: int = 4
    position_size_eth: float = 0.3
    blacklisted_tokens: list[str] = Field(default_factory=list)
    blacklisted_symbols: list[str] = Field(default_factory=list)
    take_profit_bps: int = 2500
    stop_loss_bps: int = 1200
    price_momentum_window_minutes: int = 15
    min_liquidity_usd: float = 120_000.0
    min_daily_volume_usd: float = 250_000.0
    min_age_minutes: int = 45
    max_candidates: int = 12


class RiskHeuristicsConfig(BaseModel):
    max_top_holder_percent: float = 18.0
    min_lock_ratio: float = 60.0
    min_holder_count: int = 500
    min_renounced_score: float = 0.5
    max_tax_percent: float = 15.0
    safe_score_threshold: float = 2.8


class EngineConfig(BaseModel):
    """Main trading engine configuration."""
    cycle_interval_secs: int = 30
    max_concurrent_evaluations: int = 1
    http_timeout_secs: float = 10.0


class StorageConfig(BaseModel):
    state_path: str = "portfolio_state.json"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str | None = None


class AlertsConfig(BaseModel):
    """Alerting configuration."""
    enabled: bool = True
    webhook_url: str = ""
    min_alert_interval_secs: int = 60


class MonitoringConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8787
    health_timeout_secs: float = 10.0
    # None derives the wait from the swap receipt window, see BotConfig
    snapshot_timeout_secs: float | None = None


class BotConfig(BaseModel):
    chain_id: int = 1
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    risk: RiskHeuristicsConfig = Field(default_factory=RiskHeuristicsConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    metadata: dict[str, str] = Field(default_factory=dict)

    def position_size_wei(self) -> int:
        """Entry size in wei, truncated to micro-ether precision."""
        micros = int(self.strategy.position_size_eth * 1_000_000)
        if micros <= 0:
            raise ConfigError("position_size_eth must be positive")
        return WEI_PER_ETH * micros // 1_000_000

    def snapshot_timeout_secs(self) -> float:
        """How long a portfolio read may wait on the engine's write lock.

        A cycle holds the lock across all of its swaps and each swap can
        wait a full receipt window, so the default allows one window per
        entry slot plus one for an exit.
        """
        if self.monitoring.snapshot_timeout_secs is not None:
            return self.monitoring.snapshot_timeout_secs
        window = self.exchange.deadline_secs + self.exchange.confirmation_grace_secs
        return float(window * (self.strategy.max_positions + 1))

    @property
    def slippage_bps(self) -> int:
        return self.exchange.max_slippage_bps

    def chain_key(self) -> str:
        """Chain slug used by DexScreener and DefiLlama."""
        return CHAIN_KEYS.get(self.chain_id, "ethereum")

    def dexscreener_chain(self) -> str | None:
        """DexScreener only lists a subset of chains; None when unsupported."""
        if self.chain_id == 56:
            return None
        return CHAIN_KEYS.get(self.chain_id)


# ── Env overrides ────────────────────────────────────────────────────

def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_tags(value: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for pair in value.split(","):
        key, sep, val = pair.partition("=")
        if sep and key.strip():
            tags[key.strip()] = val.strip()
    return tags


def _parse_addr(value: str) -> dict[str, Any]:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise ConfigError(f"invalid MONITOR_ADDR {value!r}")
    return {"host": host, "port": int(port)}


# env var -> (section, field, parser)
_ENV_OVERRIDES: dict[str, tuple[str | None, str, Callable[[str], Any]]] = {
    "CHAIN_ID": (None, "chain_id", int),
    "RPC_HTTP": ("rpc", "http_url", str),
    "RPC_WS": ("rpc", "ws_url", str),
    "RPC_POLL_INTERVAL_MS": ("rpc", "poll_interval_ms", int),
    "ROUTER_ADDRESS": ("exchange", "router_address", str),
    "BASE_TOKENS": ("exchange", "base_tokens", _split_csv),
    "MAX_SLIPPAGE_BPS": ("exchange", "max_slippage_bps", int),
    "SWAP_DEADLINE_SECS": ("exchange", "deadline_secs", int),
    "MAX_GAS_PRICE_GWEI": ("exchange", "max_gas_price_gwei", int),
    "MAX_POSITIONS": ("strategy", "max_positions", int),
    "POSITION_SIZE_ETH": ("strategy", "position_size_eth", float),
    "BLACKLISTED_TOKENS": ("strategy", "blacklisted_tokens", _split_csv),
    "BLACKLISTED_SYMBOLS": ("strategy", "blacklisted_symbols", _split_csv),
    "TAKE_PROFIT_BPS": ("strategy", "take_profit_bps", int),
    "STOP_LOSS_BPS": ("strategy", "stop_loss_bps", int),
    "MOMENTUM_WINDOW_MINUTES": ("strategy", "price_momentum_window_minutes", int),
    "MIN_LIQUIDITY_USD": ("strategy", "min_liquidity_usd", float),
    "MIN_DAILY_VOLUME_USD": ("strategy", "min_daily_volume_usd", float),
    "MIN_TOKEN_AGE_MINUTES": ("strategy", "min_age_minutes", int),
    "MAX_TOP_HOLDER_PERCENT": ("risk", "max_top_holder_percent", float),
    "MIN_LOCK_RATIO_PERCENT": ("risk", "min_lock_ratio", float),
    "MIN_HOLDER_COUNT": ("risk", "min_holder_count", int),
    "MIN_RENOUNCED_SCORE": ("risk", "min_renounced_score", float),
    "ALERT_WEBHOOK": ("alerts", "webhook_url", str),
    "STATE_PATH": ("storage", "state_path", str),
    "LOG_LEVEL": ("observability", "log_level", str),
    "BOT_TAGS": (None, "metadata", _parse_tags),
}


def apply_env_overrides(raw: dict[str, Any], env: dict[str, str] | None = None) -> dict[str, Any]:
    """Overlay recognised env vars on a raw config dict.

    Unparseable values raise ConfigError rather than silently falling back
    to defaults.
    """
    env = dict(os.environ) if env is None else env
    merged: dict[str, Any] = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for var, (section, key, parser) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            parsed = parser(value)
        except ValueError as e:
            raise ConfigError(f"invalid {var}={value!r}: {e}") from e
        if section is None:
            merged[key] = parsed
        else:
            merged.setdefault(section, {})[key] = parsed
    if env.get("MONITOR_ADDR"):
        merged.setdefault("monitoring", {}).update(_parse_addr(env["MONITOR_ADDR"]))
    return merged


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> BotConfig:
    """Load config from YAML file plus env overrides, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return BotConfig(**apply_env_overrides(raw, env))


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def trading_private_key() -> str:
    """Signing key for the trading wallet. Only ever read from the environment."""
    key = os.environ.get("TRADING_PRIVATE_KEY", "")
    if not key:
        raise ConfigError("TRADING_PRIVATE_KEY env var missing")
    return key
