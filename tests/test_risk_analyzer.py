"""Tests for risk flags and the risk analyzer."""

from __future__ import annotations

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from memebot.config import BotConfig, RiskHeuristicsConfig, StrategyConfig
from memebot.connectors.goplus import GoPlusClient, TokenSecurity
from memebot.errors import EvaluationError
from memebot.policy.flags import FlagKind, RiskFlag, has_critical
from memebot.policy.risk_analyzer import RiskAnalyzer, score_market_metrics, score_security


# ─── helpers ────────────────────────────────────────────────────────────

def _security(**overrides) -> TokenSecurity:
    """A clean GoPlus profile."""
    defaults = dict(
        is_honeypot="0",
        trading_disabled="0",
        can_take_back_ownership="0",
        is_proxy="0",
        buy_tax="0.01",
        sell_tax="0.02",
        holders=[{"address": "0x1", "percent": "0.05"}, {"address": "0x2", "percent": "0.03"}],
    )
    defaults.update(overrides)
    return TokenSecurity.model_validate(defaults)


def _kinds(flags: list[RiskFlag]) -> list[FlagKind]:
    return [f.kind for f in flags]


class _StubGoPlus:
    """Returns canned profiles per token; raises when told to."""

    def __init__(self, profiles: dict[str, object]):
        self.profiles = profiles
        self.close = AsyncMock()

    async def token_security(self, token: str):
        result = self.profiles[token]
        if isinstance(result, Exception):
            raise result
        return result


# ─── flags ──────────────────────────────────────────────────────────────

class TestRiskFlags:
    def test_every_kind_has_criticality(self) -> None:
        for kind in FlagKind:
            assert isinstance(RiskFlag(kind).critical, bool)

    def test_rendering(self) -> None:
        assert str(RiskFlag(FlagKind.HONEYPOT)) == "critical:honeypot-detected"
        assert str(RiskFlag(FlagKind.EXCESSIVE_TAX, 20.0)) == "critical:excessive-tax:20"
        assert str(RiskFlag(FlagKind.RENOUNCE_SCORE_LOW, 0.25)) == "renounce-score-low:0.25"
        assert str(RiskFlag(FlagKind.VOLUME_LOW)) == "volume-24h-low"

    def test_has_critical(self) -> None:
        assert has_critical([RiskFlag(FlagKind.VOLUME_LOW), RiskFlag(FlagKind.PROXY_CONTRACT)])
        assert not has_critical([RiskFlag(FlagKind.VOLUME_LOW)])
        assert not has_critical([])


# ─── security scoring ───────────────────────────────────────────────────

class TestScoreSecurity:
    def test_clean_profile(self, make_candidate) -> None:
        score, flags = score_security(_security(), make_candidate(), RiskHeuristicsConfig())
        assert score == pytest.approx(1.0 + 0.4 + 0.3 + 0.4 + 0.5 + 0.2)
        assert flags == []

    def test_missing_profile(self, make_candidate) -> None:
        score, flags = score_security(None, make_candidate(), RiskHeuristicsConfig())
        assert score == 0.0
        assert _kinds(flags) == [FlagKind.SECURITY_DATA_MISSING]
        assert flags[0].critical

    def test_honeypot(self, make_candidate) -> None:
        score, flags = score_security(_security(is_honeypot="1"), make_candidate(), RiskHeuristicsConfig())
        assert FlagKind.HONEYPOT in _kinds(flags)
        assert score == pytest.approx(1.8)

    def test_trading_disabled_adds_no_score(self, make_candidate) -> None:
        clean, _ = score_security(_security(), make_candidate(), RiskHeuristicsConfig())
        score, flags = score_security(_security(trading_disabled="1"), make_candidate(), RiskHeuristicsConfig())
        assert score == pytest.approx(clean)
        assert _kinds(flags) == [FlagKind.TRADING_DISABLED]
        assert has_critical(flags)

    def test_tax_fraction_converted_to_percent(self, make_candidate) -> None:
        _, ok = score_security(_security(sell_tax="0.10"), make_candidate(), RiskHeuristicsConfig())
        assert ok == []
        _, flags = score_security(_security(sell_tax="0.20"), make_candidate(), RiskHeuristicsConfig())
        assert _kinds(flags) == [FlagKind.EXCESSIVE_TAX]
        assert flags[0].value == pytest.approx(20.0)

    def test_top_holders_concentration(self, make_candidate) -> None:
        heavy = [{"address": "0x1", "percent": "0.12"}, {"address": "0x2", "percent": "0.10"}]
        _, flags = score_security(_security(holders=heavy), make_candidate(), RiskHeuristicsConfig())
        assert _kinds(flags) == [FlagKind.TOP_HOLDERS]
        assert flags[0].value == pytest.approx(22.0)

    def test_no_holder_data_neither_scores_nor_flags(self, make_candidate) -> None:
        score, flags = score_security(_security(holders=[]), make_candidate(), RiskHeuristicsConfig())
        assert flags == []
        assert score == pytest.approx(1.0 + 0.4 + 0.3 + 0.4 + 0.2)

    def test_low_renounce_is_not_critical(self, make_candidate) -> None:
        _, flags = score_security(
            _security(), make_candidate(contract_renounced_score=0.2), RiskHeuristicsConfig(),
        )
        assert _kinds(flags) == [FlagKind.RENOUNCE_SCORE_LOW]
        assert not has_critical(flags)

    def test_absent_renounce_score_skipped(self, make_candidate) -> None:
        score, flags = score_security(
            _security(), make_candidate(contract_renounced_score=None), RiskHeuristicsConfig(),
        )
        assert flags == []
        assert score == pytest.approx(2.6)


# ─── market scoring ─────────────────────────────────────────────────────

class TestScoreMarketMetrics:
    def test_all_pass(self, make_candidate) -> None:
        score, flags = score_market_metrics(make_candidate(), StrategyConfig(), RiskHeuristicsConfig())
        assert score == pytest.approx(3.7)
        assert flags == []

    def test_misses_flag_non_critically(self, make_candidate) -> None:
        c = make_candidate(liquidity_usd=1_000, volume24h_usd=1_000,
                           locked_liquidity_ratio=None, holder_count=10)
        score, flags = score_market_metrics(c, StrategyConfig(), RiskHeuristicsConfig())
        assert score == 0.0
        assert _kinds(flags) == [
            FlagKind.LIQUIDITY_LOW, FlagKind.VOLUME_LOW,
            FlagKind.LIQUIDITY_LOCK_LOW, FlagKind.HOLDER_COUNT_LOW,
        ]
        assert not has_critical(flags)

    def test_unknown_holders_pass(self, make_candidate) -> None:
        score, _ = score_market_metrics(
            make_candidate(holder_count=None), StrategyConfig(), RiskHeuristicsConfig(),
        )
        assert score == pytest.approx(3.7)


# ─── analyzer ───────────────────────────────────────────────────────────

class TestRiskAnalyzer:
    def test_critical_flag_vetoes_high_score(self, make_candidate) -> None:
        analyzer = RiskAnalyzer(BotConfig(), client=_StubGoPlus({}))
        report = analyzer.build_report(make_candidate(), _security(is_proxy="1"))
        assert report.score >= 2.8
        assert report.is_safe is False

    def test_missing_profile_is_unsafe(self, make_candidate) -> None:
        analyzer = RiskAnalyzer(BotConfig(), client=_StubGoPlus({}))
        report = analyzer.build_report(make_candidate(), None)
        assert report.score == pytest.approx(3.7)
        assert report.is_safe is False

    def test_below_threshold_is_unsafe(self, make_candidate) -> None:
        cfg = BotConfig(risk=RiskHeuristicsConfig(safe_score_threshold=50.0))
        analyzer = RiskAnalyzer(cfg, client=_StubGoPlus({}))
        assert analyzer.build_report(make_candidate(), _security()).is_safe is False

    @pytest.mark.asyncio
    async def test_evaluate_candidate_safe(self, make_candidate) -> None:
        c = make_candidate()
        analyzer = RiskAnalyzer(BotConfig(), client=_StubGoPlus({c.token_address: _security()}))
        report = await analyzer.evaluate_candidate(c)
        assert report.is_safe is True
        assert report.raw_security is not None

    @pytest.mark.asyncio
    async def test_lookup_failure_is_evaluation_error(self, make_candidate) -> None:
        c = make_candidate()
        stub = _StubGoPlus({c.token_address: ValueError("goplus api error")})
        analyzer = RiskAnalyzer(BotConfig(), client=stub)
        with pytest.raises(EvaluationError):
            await analyzer.evaluate_candidate(c)

    @pytest.mark.asyncio
    async def test_evaluate_many_isolates_failures(self, make_candidate) -> None:
        good = make_candidate(token_address="0x0000000000000000000000000000000000000001")
        bad = make_candidate(token_address="0x0000000000000000000000000000000000000002")
        stub = _StubGoPlus({
            good.token_address: _security(),
            bad.token_address: httpx.ConnectError("boom"),
        })
        cfg = BotConfig()
        cfg.engine.max_concurrent_evaluations = 2
        results = await RiskAnalyzer(cfg, client=stub).evaluate_many([bad, good])
        assert isinstance(results[bad.token_address], EvaluationError)
        assert results[good.token_address].is_safe is True

    @pytest.mark.asyncio
    async def test_goplus_error_code_over_http(self, make_candidate) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps({"code": 2, "message": "bad", "result": {}}))

        client = GoPlusClient(1, transport=httpx.MockTransport(handler))
        analyzer = RiskAnalyzer(BotConfig(), client=client)
        with pytest.raises(EvaluationError):
            await analyzer.evaluate_candidate(make_candidate())
        await analyzer.close()
