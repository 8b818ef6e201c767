"""Shared test fixtures."""

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest

# Ensure memebot is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from memebot.connectors import rate_limiter as rl_module
from memebot.engine.market_scanner import Candidate
from memebot.observability.metrics import metrics

WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


def token_address(n: int) -> str:
    """Deterministic lower-case address for test tokens."""
    return f"0x{n:040x}"


@pytest.fixture(autouse=True)
def _fast_rate_limits(monkeypatch):
    """Replace feed rate limits so tests never sleep on a bucket."""
    fast = rl_module.BucketConfig(tokens_per_second=10_000.0, max_burst=10_000)
    for name in ("dexscreener", "goplus", "defillama"):
        monkeypatch.setitem(rl_module.DEFAULT_LIMITS, name, fast)
    monkeypatch.setattr(rl_module.rate_limiter, "_buckets", {})
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_candidate():
    """Factory for Candidate with healthy defaults."""
    def _make(**overrides) -> Candidate:
        defaults = dict(
            pair_address="0x00000000000000000000000000000000000000AA",
            token_address="0x0000000000000000000000000000000000000001",
            base_token=WETH,
            token_symbol="PEPE2",
            token_name="Pepe Two",
            price_usd=0.0012,
            liquidity_usd=250_000.0,
            volume24h_usd=900_000.0,
            fdv_usd=3_000_000.0,
            price_change_m5=10.0,
            price_change_m15=10.0,
            price_change_h1=5.0,
            buy_pressure_ratio=0.6,
            pair_created_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=3),
            dex_id="uniswap",
            confidence=12.0,
            holder_count=1_200,
            locked_liquidity_ratio=80.0,
            contract_renounced_score=0.9,
            safety_flags=(),
            usd_per_base=2_000.0,
        )
        defaults.update(overrides)
        return Candidate(**defaults)
    return _make
