"""Market scanner - turns DexScreener pairs into ranked entry candidates.

Stages:
  1. Fetch      – "trending" and "latest" pair feeds (best-effort union)
  2. Normalise  – parse addresses, derive buy pressure, confidence, flags
  3. Filter     – blacklist, minimum liquidity / volume / pair age
  4. Rank       – confidence descending, top N

The momentum gate (``has_momentum``) is applied later, per candidate, by
the engine once risk evaluation has passed.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field

import httpx
from web3 import Web3

from memebot.config import BotConfig, StrategyConfig
from memebot.connectors.dexscreener import DexPair, DexScreenerClient
from memebot.errors import DiscoveryError
from memebot.observability.logger import get_logger
from memebot.observability.metrics import metrics

log = get_logger(__name__)

MOMENTUM_THRESHOLD = 8.0
MIN_BUY_PRESSURE = 0.55
MIN_MOMENTUM_WINDOW_MINUTES = 5

# Informational scanner flags (not risk flags)
_LOW_LIQUIDITY_USD = 60_000.0
_LOW_RENOUNCE_SCORE = 0.4
_LOW_LOCK_PERCENT = 50.0


@dataclass(frozen=True)
class Candidate:
    """A scanner-discovered token / base-asset pair for one decision cycle."""
    pair_address: str
    token_address: str
    base_token: str
    token_symbol: str
    token_name: str
    price_usd: float
    liquidity_usd: float
    volume24h_usd: float
    fdv_usd: float
    price_change_m5: float
    price_change_m15: float
    price_change_h1: float
    buy_pressure_ratio: float
    pair_created_at: dt.datetime
    dex_id: str
    confidence: float
    holder_count: int | None = None
    locked_liquidity_ratio: float | None = None
    contract_renounced_score: float | None = None
    safety_flags: tuple[str, ...] = field(default_factory=tuple)
    usd_per_base: float = 0.0

    @property
    def age_minutes(self) -> float:
        now = dt.datetime.now(dt.timezone.utc)
        return (now - self.pair_created_at).total_seconds() / 60.0


# ── Pure scoring helpers ─────────────────────────────────────────────

def confidence_score(
    liquidity_usd: float | None,
    volume24h_usd: float | None,
    price_change_h1: float | None,
    locked_ratio: float | None,
) -> float:
    """Log-scaled liquidity and volume plus positive 1h drift and lock share."""
    liquidity = math.log1p(max(liquidity_usd or 0.0, 0.0))
    volume = math.log1p(max(volume24h_usd or 0.0, 0.0))
    change = max(price_change_h1 or 0.0, 0.0)
    locks = (locked_ratio or 0.0) / 100.0
    return liquidity * 0.25 + volume * 0.30 + change * 0.30 + locks * 0.15


def buy_pressure_ratio(buys: int, sells: int) -> float:
    """Share of buys in the window; each side floored at 1."""
    b = float(max(buys, 1))
    s = float(max(sells, 1))
    return b / (b + s)


def momentum_score(m5: float, m15: float, h1: float) -> float:
    return m5 * 0.40 + m15 * 0.35 + h1 * 0.25


def collect_safety_flags(pair: DexPair) -> tuple[str, ...]:
    flags: list[str] = []
    if pair.liquidity.usd is not None and pair.liquidity.usd < _LOW_LIQUIDITY_USD:
        flags.append("low-liquidity")
    renounced = pair.info.renounced if pair.info else None
    if renounced is not None and renounced < _LOW_RENOUNCE_SCORE:
        flags.append("owner-not-renounced")
    if pair.liquidity.locked is not None and pair.liquidity.locked < _LOW_LOCK_PERCENT:
        flags.append("low-lock")
    return tuple(flags)


def to_candidate(pair: DexPair, now: dt.datetime | None = None) -> Candidate:
    """Normalise one DexScreener pair. Raises ValueError on bad addresses."""
    now = now or dt.datetime.now(dt.timezone.utc)
    if pair.pair_created_at is not None:
        created = dt.datetime.fromtimestamp(pair.pair_created_at / 1000, tz=dt.timezone.utc)
    else:
        created = now - dt.timedelta(hours=1)

    price_usd = pair.price_usd or 0.0
    price_native = pair.price_native or 0.0
    usd_per_base = price_usd / price_native if price_usd > 0 and price_native > 0 else 0.0

    return Candidate(
        pair_address=Web3.to_checksum_address(pair.pair_address),
        token_address=Web3.to_checksum_address(pair.base_token.address),
        base_token=Web3.to_checksum_address(pair.quote_token.address),
        token_symbol=pair.base_token.symbol,
        token_name=pair.base_token.name,
        price_usd=price_usd,
        liquidity_usd=pair.liquidity.usd or 0.0,
        volume24h_usd=pair.volume.h24 or 0.0,
        fdv_usd=pair.fdv or 0.0,
        price_change_m5=pair.price_change.m5 or 0.0,
        price_change_m15=pair.price_change.m15 or 0.0,
        price_change_h1=pair.price_change.h1 or 0.0,
        buy_pressure_ratio=buy_pressure_ratio(pair.txns.m5.buys, pair.txns.m5.sells),
        pair_created_at=created,
        dex_id=pair.dex_id,
        confidence=confidence_score(
            pair.liquidity.usd, pair.volume.h24, pair.price_change.h1, pair.liquidity.locked,
        ),
        holder_count=pair.info.holders if pair.info else None,
        locked_liquidity_ratio=pair.liquidity.locked,
        contract_renounced_score=pair.info.renounced if pair.info else None,
        safety_flags=collect_safety_flags(pair),
        usd_per_base=usd_per_base,
    )


# ── Scanner ──────────────────────────────────────────────────────────

class MarketScanner:
    """Discover and rank candidates for the configured chain."""

    def __init__(self, config: BotConfig, client: DexScreenerClient | None = None):
        self.config = config
        self._client = client or DexScreenerClient(timeout=config.engine.http_timeout_secs)

    async def close(self) -> None:
        await self._client.close()

    def is_blacklisted(self, token_address: str, symbol: str, strategy: StrategyConfig) -> bool:
        addr = token_address.lower()
        if any(addr == b.lower() for b in strategy.blacklisted_tokens):
            return True
        sym = symbol.strip().lower()
        return bool(sym) and any(sym == b.strip().lower() for b in strategy.blacklisted_symbols)

    async def _fetch_feeds(self, chain: str) -> list[DexPair]:
        """Union of both feeds; one failing feed is tolerated, both is fatal."""
        pairs: list[DexPair] = []
        failures: list[str] = []
        for name, fetch in (
            ("trending", self._client.trending_pairs),
            ("latest", self._client.latest_pairs),
        ):
            try:
                pairs.extend(await fetch(chain))
            except (httpx.HTTPError, ValueError) as e:
                failures.append(f"{name}: {e}")
                metrics.incr("scanner.feed_errors")
                log.warning("scanner.feed_failed", feed=name, chain=chain, error=str(e))
        if len(failures) == 2:
            raise DiscoveryError("all market-data feeds failed: " + "; ".join(failures))
        return pairs

    async def discover_candidates(self, strategy: StrategyConfig | None = None) -> list[Candidate]:
        """Fetch, normalise, filter and rank candidates for this cycle."""
        strategy = strategy or self.config.strategy
        chain = self.config.dexscreener_chain()
        if chain is None:
            raise DiscoveryError(f"chain {self.config.chain_id} not supported by DexScreener")

        pairs = await self._fetch_feeds(chain)
        now = dt.datetime.now(dt.timezone.utc)
        min_age = dt.timedelta(minutes=strategy.min_age_minutes)

        candidates: list[Candidate] = []
        rejected = {"blacklisted": 0, "liquidity": 0, "volume": 0, "age": 0, "malformed": 0}
        for pair in pairs:
            if self.is_blacklisted(pair.base_token.address, pair.base_token.symbol, strategy):
                rejected["blacklisted"] += 1
                continue
            try:
                candidate = to_candidate(pair, now)
            except ValueError as e:
                rejected["malformed"] += 1
                log.warning("scanner.malformed_pair", pair=pair.pair_address, error=str(e))
                continue
            if candidate.liquidity_usd < strategy.min_liquidity_usd:
                rejected["liquidity"] += 1
                continue
            if candidate.volume24h_usd < strategy.min_daily_volume_usd:
                rejected["volume"] += 1
                continue
            if now - candidate.pair_created_at < min_age:
                rejected["age"] += 1
                continue
            candidates.append(candidate)

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        candidates = candidates[: strategy.max_candidates]
        metrics.gauge("scanner.candidates", len(candidates))
        log.info(
            "scanner.discovered",
            pairs=len(pairs),
            kept=len(candidates),
            rejected=rejected,
        )
        return candidates

    def has_momentum(self, candidate: Candidate, strategy: StrategyConfig | None = None) -> bool:
        strategy = strategy or self.config.strategy
        score = momentum_score(
            candidate.price_change_m5, candidate.price_change_m15, candidate.price_change_h1,
        )
        return (
            score >= MOMENTUM_THRESHOLD
            and candidate.buy_pressure_ratio >= MIN_BUY_PRESSURE
            and strategy.price_momentum_window_minutes >= MIN_MOMENTUM_WINDOW_MINUTES
        )

    async def fetch_token_candidates(self, token: str) -> list[Candidate]:
        """Every pair for one token on this chain, unfiltered."""
        chain = self.config.dexscreener_chain()
        if chain is None:
            raise DiscoveryError(f"chain {self.config.chain_id} not supported by DexScreener")
        try:
            pairs = await self._client.token_pairs(token)
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryError(f"token pair lookup failed for {token}: {e}") from e

        candidates: list[Candidate] = []
        for pair in pairs:
            if pair.chain_id != chain:
                continue
            try:
                candidates.append(to_candidate(pair))
            except ValueError as e:
                log.warning("scanner.malformed_pair", pair=pair.pair_address, error=str(e))
        return candidates
