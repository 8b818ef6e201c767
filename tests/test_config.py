"""Tests for configuration loading and env overrides."""

from __future__ import annotations

import pytest

from memebot.config import (
    BotConfig,
    MonitoringConfig,
    StrategyConfig,
    apply_env_overrides,
    is_live_trading_enabled,
    load_config,
    trading_private_key,
)
from memebot.errors import ConfigError


class TestDefaults:
    def test_defaults(self) -> None:
        cfg = BotConfig()
        assert cfg.chain_id == 1
        assert cfg.strategy.max_positions == 4
        assert cfg.strategy.take_profit_bps == 2500
        assert cfg.strategy.stop_loss_bps == 1200
        assert cfg.slippage_bps == 300
        assert cfg.exchange.deadline_secs == 120
        assert cfg.engine.cycle_interval_secs == 30
        assert cfg.monitoring.port == 8787

    def test_position_size_wei(self) -> None:
        assert BotConfig().position_size_wei() == 3 * 10**17
        cfg = BotConfig(strategy=StrategyConfig(position_size_eth=1.25))
        assert cfg.position_size_wei() == 1_250_000_000_000_000_000

    def test_zero_position_size_rejected(self) -> None:
        cfg = BotConfig(strategy=StrategyConfig(position_size_eth=0))
        with pytest.raises(ConfigError):
            cfg.position_size_wei()

    def test_snapshot_timeout_covers_a_full_cycle(self) -> None:
        cfg = BotConfig()
        # (120s deadline + 30s grace) per swap, four entry slots plus an exit
        assert cfg.snapshot_timeout_secs() == 750.0
        assert cfg.snapshot_timeout_secs() > cfg.monitoring.health_timeout_secs

    def test_snapshot_timeout_override(self) -> None:
        cfg = BotConfig(monitoring=MonitoringConfig(snapshot_timeout_secs=42.0))
        assert cfg.snapshot_timeout_secs() == 42.0

    def test_chain_keys(self) -> None:
        assert BotConfig(chain_id=8453).dexscreener_chain() == "base"
        assert BotConfig(chain_id=56).dexscreener_chain() is None
        assert BotConfig(chain_id=56).chain_key() == "bsc"
        assert BotConfig(chain_id=999).dexscreener_chain() is None


class TestEnvOverrides:
    def test_overrides_applied(self) -> None:
        raw = apply_env_overrides({}, env={
            "CHAIN_ID": "8453",
            "MAX_POSITIONS": "2",
            "BLACKLISTED_SYMBOLS": "SCAM, RUG,",
            "BOT_TAGS": "env=prod,region=eu",
            "ROUTER_ADDRESS": "0xrouter",
        })
        cfg = BotConfig(**raw)
        assert cfg.chain_id == 8453
        assert cfg.strategy.max_positions == 2
        assert cfg.strategy.blacklisted_symbols == ["SCAM", "RUG"]
        assert cfg.metadata == {"env": "prod", "region": "eu"}
        assert cfg.exchange.router_address == "0xrouter"

    def test_env_wins_over_file_values(self) -> None:
        raw = apply_env_overrides(
            {"strategy": {"max_positions": 9, "take_profit_bps": 4000}},
            env={"MAX_POSITIONS": "3"},
        )
        assert raw["strategy"] == {"max_positions": 3, "take_profit_bps": 4000}

    def test_blank_values_ignored(self) -> None:
        assert apply_env_overrides({}, env={"CHAIN_ID": ""}) == {}

    def test_unparseable_value(self) -> None:
        with pytest.raises(ConfigError):
            apply_env_overrides({}, env={"MAX_POSITIONS": "many"})

    def test_monitor_addr(self) -> None:
        raw = apply_env_overrides({}, env={"MONITOR_ADDR": "127.0.0.1:9100"})
        assert raw["monitoring"] == {"host": "127.0.0.1", "port": 9100}

    def test_bad_monitor_addr(self) -> None:
        with pytest.raises(ConfigError):
            apply_env_overrides({}, env={"MONITOR_ADDR": "localhost"})

    def test_live_trading_flag(self, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "TRUE")
        assert is_live_trading_enabled()
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "yes")
        assert not is_live_trading_enabled()

    def test_private_key_required(self, monkeypatch) -> None:
        monkeypatch.delenv("TRADING_PRIVATE_KEY", raising=False)
        with pytest.raises(ConfigError):
            trading_private_key()


class TestLoadConfig:
    def test_yaml_file(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "chain_id: 42161\n"
            "strategy:\n"
            "  max_positions: 6\n"
            "  position_size_eth: 0.5\n"
            "exchange:\n"
            "  max_slippage_bps: 150\n"
        )
        cfg = load_config(path, env={})
        assert cfg.chain_id == 42161
        assert cfg.strategy.max_positions == 6
        assert cfg.position_size_wei() == 5 * 10**17
        assert cfg.slippage_bps == 150

    def test_missing_file_gives_defaults(self, tmp_path) -> None:
        cfg = load_config(tmp_path / "absent.yaml", env={})
        assert cfg == BotConfig()

    def test_empty_file(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path, env={}).chain_id == 1
