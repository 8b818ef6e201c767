"""Tests for the market scanner: scoring, normalisation, discovery filters."""

from __future__ import annotations

import datetime as dt
import json
import time

import httpx
import pytest

from memebot.config import BotConfig, StrategyConfig
from memebot.connectors.dexscreener import DexPair, DexScreenerClient
from memebot.engine.market_scanner import (
    MarketScanner,
    buy_pressure_ratio,
    confidence_score,
    momentum_score,
    to_candidate,
)
from memebot.errors import DiscoveryError

from conftest import WETH, token_address


# ─── helpers ────────────────────────────────────────────────────────────

def _raw_pair(n: int = 1, **overrides) -> dict:
    """Raw DexScreener pair payload with values that pass every filter."""
    created_ms = int((time.time() - 3 * 3600) * 1000)
    pair = {
        "chainId": "ethereum",
        "dexId": "uniswap",
        "pairAddress": token_address(1000 + n),
        "baseToken": {"address": token_address(n), "symbol": f"TKN{n}", "name": f"Token {n}"},
        "quoteToken": {"address": WETH.lower(), "symbol": "WETH", "name": "Wrapped Ether"},
        "priceUsd": "0.0040",
        "priceNative": "0.000002",
        "priceChange": {"m5": 10, "m15": 10, "h1": 5, "h24": 40},
        "liquidity": {"usd": 200_000, "base": 1e9, "quote": 50, "locked": 70},
        "volume": {"h24": 600_000},
        "txns": {"m5": {"buys": 30, "sells": 20}},
        "pairCreatedAt": created_ms,
        "fdv": 4_000_000,
        "info": {"holders": 900, "renounced": 0.8},
    }
    pair.update(overrides)
    return pair


def _scanner(routes: dict[str, object], config: BotConfig | None = None) -> MarketScanner:
    """Scanner whose DexScreener client is served by an in-memory transport.

    ``routes`` maps a URL path to either a JSON-serialisable body or an
    int HTTP status to fail with.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(request.url.path, 404)
        if isinstance(body, int):
            return httpx.Response(body)
        return httpx.Response(200, content=json.dumps(body))

    client = DexScreenerClient(transport=httpx.MockTransport(handler))
    return MarketScanner(config or BotConfig(), client)


# ─── pure scoring ───────────────────────────────────────────────────────

class TestConfidenceScore:
    def test_weights(self) -> None:
        import math
        score = confidence_score(100.0, 200.0, 4.0, 50.0)
        expected = math.log1p(100) * 0.25 + math.log1p(200) * 0.30 + 4.0 * 0.30 + 0.5 * 0.15
        assert score == pytest.approx(expected)

    def test_missing_values_count_as_zero(self) -> None:
        assert confidence_score(None, None, None, None) == 0.0

    def test_negative_h1_clamped(self) -> None:
        assert confidence_score(1_000, 1_000, -30.0, 0) == confidence_score(1_000, 1_000, 0.0, 0)

    @pytest.mark.parametrize("index", [0, 1, 2, 3])
    def test_monotonic_in_each_input(self, index: int) -> None:
        base = [50_000.0, 80_000.0, 2.0, 40.0]
        higher = list(base)
        higher[index] *= 2
        assert confidence_score(*higher) >= confidence_score(*base)


class TestBuyPressure:
    def test_ratio(self) -> None:
        assert buy_pressure_ratio(30, 10) == pytest.approx(0.75)

    def test_zero_sides_floored(self) -> None:
        assert buy_pressure_ratio(0, 0) == pytest.approx(0.5)
        assert buy_pressure_ratio(5, 0) == pytest.approx(5 / 6)


class TestMomentum:
    def test_weighted_example_passes(self, make_candidate) -> None:
        scanner = MarketScanner(BotConfig(), client=None)
        c = make_candidate(price_change_m5=10, price_change_m15=10, price_change_h1=5,
                           buy_pressure_ratio=0.6)
        assert momentum_score(10, 10, 5) == pytest.approx(8.75)
        assert scanner.has_momentum(c) is True

    def test_zero_changes_fail(self, make_candidate) -> None:
        scanner = MarketScanner(BotConfig(), client=None)
        c = make_candidate(price_change_m5=0, price_change_m15=0, price_change_h1=0)
        assert scanner.has_momentum(c) is False

    def test_weak_buy_pressure_fails(self, make_candidate) -> None:
        scanner = MarketScanner(BotConfig(), client=None)
        assert scanner.has_momentum(make_candidate(buy_pressure_ratio=0.5)) is False

    def test_short_window_fails(self, make_candidate) -> None:
        scanner = MarketScanner(BotConfig(), client=None)
        strategy = StrategyConfig(price_momentum_window_minutes=4)
        assert scanner.has_momentum(make_candidate(), strategy) is False


# ─── normalisation ──────────────────────────────────────────────────────

class TestToCandidate:
    def test_addresses_checksummed(self) -> None:
        c = to_candidate(DexPair.model_validate(_raw_pair()))
        assert c.base_token == WETH
        assert c.token_address == token_address(1)  # all-digit address has no letters to case
        assert c.token_symbol == "TKN1"

    def test_usd_per_base(self) -> None:
        c = to_candidate(DexPair.model_validate(_raw_pair()))
        assert c.usd_per_base == pytest.approx(2000.0)

    def test_missing_created_at_is_one_hour_ago(self) -> None:
        raw = _raw_pair()
        del raw["pairCreatedAt"]
        now = dt.datetime.now(dt.timezone.utc)
        c = to_candidate(DexPair.model_validate(raw), now)
        assert c.pair_created_at == now - dt.timedelta(hours=1)

    def test_safety_flags(self) -> None:
        raw = _raw_pair(
            liquidity={"usd": 40_000, "locked": 20},
            info={"holders": 10, "renounced": 0.1},
        )
        c = to_candidate(DexPair.model_validate(raw))
        assert set(c.safety_flags) == {"low-liquidity", "owner-not-renounced", "low-lock"}

    def test_bad_address_raises(self) -> None:
        raw = _raw_pair()
        raw["baseToken"]["address"] = "not-an-address"
        with pytest.raises(ValueError):
            to_candidate(DexPair.model_validate(raw))


# ─── discovery ──────────────────────────────────────────────────────────

class TestDiscoverCandidates:
    @pytest.mark.asyncio
    async def test_union_of_feeds_ranked(self) -> None:
        strong = _raw_pair(1, liquidity={"usd": 5_000_000, "locked": 90})
        weak = _raw_pair(2)
        scanner = _scanner({
            "/latest/dex/trending/ethereum": {"pairs": [weak]},
            "/latest/dex/pairs/ethereum": {"pairs": [strong]},
        })
        found = await scanner.discover_candidates()
        await scanner.close()
        assert [c.token_symbol for c in found] == ["TKN1", "TKN2"]

    @pytest.mark.asyncio
    async def test_one_feed_failure_tolerated(self) -> None:
        scanner = _scanner({
            "/latest/dex/trending/ethereum": 500,
            "/latest/dex/pairs/ethereum": {"pairs": [_raw_pair()]},
        })
        found = await scanner.discover_candidates()
        await scanner.close()
        assert len(found) == 1

    @pytest.mark.asyncio
    async def test_all_feeds_failing_raises(self) -> None:
        scanner = _scanner({
            "/latest/dex/trending/ethereum": 500,
            "/latest/dex/pairs/ethereum": 503,
        })
        with pytest.raises(DiscoveryError):
            await scanner.discover_candidates()
        await scanner.close()

    @pytest.mark.asyncio
    async def test_unsupported_chain(self) -> None:
        scanner = _scanner({}, BotConfig(chain_id=56))
        with pytest.raises(DiscoveryError):
            await scanner.discover_candidates()
        await scanner.close()

    @pytest.mark.asyncio
    async def test_filters(self) -> None:
        young_ms = int((time.time() - 10 * 60) * 1000)
        pairs = [
            _raw_pair(1),
            _raw_pair(2, liquidity={"usd": 10_000}),
            _raw_pair(3, volume={"h24": 1_000}),
            _raw_pair(4, pairCreatedAt=young_ms),
            _raw_pair(5, baseToken={"address": token_address(5), "symbol": "scam", "name": "x"}),
            _raw_pair(6),
        ]
        cfg = BotConfig(strategy=StrategyConfig(
            blacklisted_symbols=["SCAM"],
            blacklisted_tokens=[token_address(6)],
        ))
        scanner = _scanner({
            "/latest/dex/trending/ethereum": {"pairs": pairs},
            "/latest/dex/pairs/ethereum": {"pairs": []},
        }, cfg)
        found = await scanner.discover_candidates()
        await scanner.close()
        assert [c.token_symbol for c in found] == ["TKN1"]

    @pytest.mark.asyncio
    async def test_truncates_to_max_candidates(self) -> None:
        pairs = [_raw_pair(n) for n in range(1, 21)]
        scanner = _scanner({
            "/latest/dex/trending/ethereum": {"pairs": pairs},
            "/latest/dex/pairs/ethereum": {"pairs": []},
        })
        found = await scanner.discover_candidates()
        await scanner.close()
        assert len(found) == 12
        scores = [c.confidence for c in found]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_malformed_pair_skipped(self) -> None:
        bad = _raw_pair(2)
        bad["baseToken"]["address"] = "0xnothex"
        missing = {"chainId": "ethereum"}
        scanner = _scanner({
            "/latest/dex/trending/ethereum": {"pairs": [_raw_pair(1), bad, missing]},
            "/latest/dex/pairs/ethereum": {"pairs": []},
        })
        found = await scanner.discover_candidates()
        await scanner.close()
        assert [c.token_symbol for c in found] == ["TKN1"]


class TestFetchTokenCandidates:
    @pytest.mark.asyncio
    async def test_filters_other_chains_only(self) -> None:
        token = token_address(7)
        small = _raw_pair(7, liquidity={"usd": 100})
        other_chain = _raw_pair(7, chainId="base")
        scanner = _scanner({f"/latest/dex/tokens/{token}": {"pairs": [small, other_chain]}})
        found = await scanner.fetch_token_candidates(token)
        await scanner.close()
        assert len(found) == 1
        assert found[0].liquidity_usd == 100

    @pytest.mark.asyncio
    async def test_lookup_failure(self) -> None:
        token = token_address(7)
        scanner = _scanner({f"/latest/dex/tokens/{token}": 500})
        with pytest.raises(DiscoveryError):
            await scanner.fetch_token_candidates(token)
        await scanner.close()
