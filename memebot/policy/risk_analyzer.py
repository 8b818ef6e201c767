"""Risk analyzer - combines contract security data and pair metrics.

Each candidate receives an additive score plus an ordered list of flags.
A candidate is safe only when the score clears the threshold AND no flag
is critical; a critical flag vetoes regardless of score.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field

import httpx

from memebot.config import BotConfig, RiskHeuristicsConfig, StrategyConfig
from memebot.connectors.goplus import GoPlusClient, TokenSecurity
from memebot.engine.market_scanner import Candidate
from memebot.errors import EvaluationError
from memebot.observability.logger import get_logger
from memebot.observability.metrics import metrics
from memebot.policy.flags import FlagKind, RiskFlag, has_critical

log = get_logger(__name__)


@dataclass
class RiskReport:
    score: float
    is_safe: bool
    flags: list[RiskFlag] = field(default_factory=list)
    raw_security: TokenSecurity | None = None
    evaluated_at: dt.datetime = field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc)
    )

    def flag_labels(self) -> list[str]:
        return [str(f) for f in self.flags]


def score_security(
    security: TokenSecurity | None,
    candidate: Candidate,
    risk: RiskHeuristicsConfig,
) -> tuple[float, list[RiskFlag]]:
    """Score the contract-level security profile.

    A missing profile is itself critical and contributes nothing.
    """
    if security is None:
        return 0.0, [RiskFlag(FlagKind.SECURITY_DATA_MISSING)]

    score = 0.0
    flags: list[RiskFlag] = []

    if security.honeypot:
        flags.append(RiskFlag(FlagKind.HONEYPOT))
    else:
        score += 1.0

    if security.trading_is_disabled:
        flags.append(RiskFlag(FlagKind.TRADING_DISABLED))

    if security.owner_can_reclaim:
        flags.append(RiskFlag(FlagKind.OWNER_CAN_REVOKE))
    else:
        score += 0.4

    if security.proxy:
        flags.append(RiskFlag(FlagKind.PROXY_CONTRACT))
    else:
        score += 0.3

    tax = security.max_tax_percent
    if tax <= risk.max_tax_percent:
        score += 0.4
    else:
        flags.append(RiskFlag(FlagKind.EXCESSIVE_TAX, tax))

    top10 = security.top10_holder_percent()
    if top10 is not None:
        if top10 <= risk.max_top_holder_percent:
            score += 0.5
        else:
            flags.append(RiskFlag(FlagKind.TOP_HOLDERS, top10))

    renounce = candidate.contract_renounced_score
    if renounce is not None:
        if renounce >= risk.min_renounced_score:
            score += 0.2
        else:
            flags.append(RiskFlag(FlagKind.RENOUNCE_SCORE_LOW, renounce))

    return score, flags


def score_market_metrics(
    candidate: Candidate,
    strategy: StrategyConfig,
    risk: RiskHeuristicsConfig,
) -> tuple[float, list[RiskFlag]]:
    score = 0.0
    flags: list[RiskFlag] = []

    if candidate.liquidity_usd >= strategy.min_liquidity_usd:
        score += 1.0
    else:
        flags.append(RiskFlag(FlagKind.LIQUIDITY_LOW))

    if candidate.volume24h_usd >= strategy.min_daily_volume_usd:
        score += 0.8
    else:
        flags.append(RiskFlag(FlagKind.VOLUME_LOW))

    if (candidate.locked_liquidity_ratio or 0.0) >= risk.min_lock_ratio:
        score += 1.2
    else:
        flags.append(RiskFlag(FlagKind.LIQUIDITY_LOCK_LOW))

    # unknown holder count passes
    if candidate.holder_count is None or candidate.holder_count >= risk.min_holder_count:
        score += 0.7
    else:
        flags.append(RiskFlag(FlagKind.HOLDER_COUNT_LOW))

    return score, flags


class RiskAnalyzer:
    """Fetches security profiles and produces RiskReports."""

    def __init__(self, config: BotConfig, client: GoPlusClient | None = None):
        self.config = config
        self._client = client or GoPlusClient(
            config.chain_id, timeout=config.engine.http_timeout_secs,
        )

    async def close(self) -> None:
        await self._client.close()

    def build_report(self, candidate: Candidate, security: TokenSecurity | None) -> RiskReport:
        sec_score, sec_flags = score_security(security, candidate, self.config.risk)
        mkt_score, mkt_flags = score_market_metrics(
            candidate, self.config.strategy, self.config.risk,
        )
        score = sec_score + mkt_score
        flags = sec_flags + mkt_flags
        is_safe = score >= self.config.risk.safe_score_threshold and not has_critical(flags)
        return RiskReport(score=score, is_safe=is_safe, flags=flags, raw_security=security)

    async def evaluate_candidate(self, candidate: Candidate) -> RiskReport:
        try:
            security = await self._client.token_security(candidate.token_address)
        except (httpx.HTTPError, ValueError) as e:
            metrics.incr("risk.evaluation_errors")
            raise EvaluationError(
                f"security lookup failed for {candidate.token_address}: {e}"
            ) from e

        report = self.build_report(candidate, security)
        metrics.histogram("risk.score", report.score)
        log.info(
            "risk.evaluated",
            token=candidate.token_address,
            symbol=candidate.token_symbol,
            score=round(report.score, 3),
            safe=report.is_safe,
            flags=report.flag_labels(),
        )
        return report

    async def evaluate_many(
        self, candidates: list[Candidate],
    ) -> dict[str, RiskReport | Exception]:
        """Evaluate candidates with bounded concurrency.

        Results are keyed by token address. A failing candidate maps to its
        exception and never cancels the others.
        """
        sem = asyncio.Semaphore(max(1, self.config.engine.max_concurrent_evaluations))

        async def _one(candidate: Candidate) -> RiskReport:
            async with sem:
                return await self.evaluate_candidate(candidate)

        outcomes = await asyncio.gather(
            *(_one(c) for c in candidates), return_exceptions=True,
        )
        results: dict[str, RiskReport | Exception] = {}
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            results[candidate.token_address] = outcome
        return results
