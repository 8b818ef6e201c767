"""DexScreener (REST) API connector.

DexScreener aggregates AMM pairs across chains. We use it to discover
candidate pairs (trending + latest listings) and to look up every pair
for a single token. All endpoints are public and read-only.
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from memebot.connectors.rate_limiter import rate_limiter
from memebot.observability.logger import get_logger

log = get_logger(__name__)

DEXSCREENER_BASE = "https://api.dexscreener.com"


# ── Data Models ──────────────────────────────────────────────────────

class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenMetadata(_Model):
    address: str
    symbol: str = ""
    name: str = ""


class PriceChange(_Model):
    m5: float | None = None
    m15: float | None = None
    h1: float | None = None
    h6: float | None = None
    h24: float | None = None


class PairLiquidity(_Model):
    usd: float | None = None
    base: float | None = None
    quote: float | None = None
    locked: float | None = None


class VolumeMetrics(_Model):
    h24: float | None = None
    h6: float | None = None
    h1: float | None = None
    m5: float | None = None


class TransactionWindow(_Model):
    buys: int = 0
    sells: int = 0


class TransactionMetrics(_Model):
    m5: TransactionWindow = Field(default_factory=TransactionWindow)
    m15: TransactionWindow = Field(default_factory=TransactionWindow)
    h1: TransactionWindow = Field(default_factory=TransactionWindow)
    h6: TransactionWindow = Field(default_factory=TransactionWindow)
    h24: TransactionWindow = Field(default_factory=TransactionWindow)


class PairInfo(_Model):
    holders: int | None = None
    renounced: float | None = None


class DexPair(_Model):
    """One AMM pair as reported by DexScreener."""
    chain_id: str = Field(alias="chainId")
    dex_id: str = Field(default="", alias="dexId")
    pair_address: str = Field(alias="pairAddress")
    base_token: TokenMetadata = Field(alias="baseToken")
    quote_token: TokenMetadata = Field(alias="quoteToken")
    price_usd: float | None = Field(default=None, alias="priceUsd")
    price_native: float | None = Field(default=None, alias="priceNative")
    price_change: PriceChange = Field(default_factory=PriceChange, alias="priceChange")
    liquidity: PairLiquidity = Field(default_factory=PairLiquidity)
    volume: VolumeMetrics = Field(default_factory=VolumeMetrics)
    txns: TransactionMetrics = Field(default_factory=TransactionMetrics)
    pair_created_at: int | None = Field(default=None, alias="pairCreatedAt")  # epoch millis
    fdv: float | None = None
    info: PairInfo | None = None


def parse_pairs(data: Any) -> list[DexPair]:
    """Convert a raw ``{"pairs": [...]}`` response into DexPair objects.

    Individual malformed pairs are logged and dropped; a response that is
    not shaped like a pair listing at all raises ValueError.
    """
    if isinstance(data, list):
        raw_pairs = data
    elif isinstance(data, dict):
        raw_pairs = data.get("pairs") or []
    else:
        raise ValueError(f"unexpected DexScreener payload type {type(data).__name__}")
    if not isinstance(raw_pairs, list):
        raise ValueError("DexScreener 'pairs' is not a list")

    pairs: list[DexPair] = []
    for raw in raw_pairs:
        try:
            pairs.append(DexPair.model_validate(raw))
        except ValidationError as e:
            log.warning(
                "dexscreener.malformed_pair",
                pair=(raw.get("pairAddress") if isinstance(raw, dict) else None),
                errors=e.error_count(),
            )
    return pairs


# ── Client ───────────────────────────────────────────────────────────

class DexScreenerClient:
    """Async client for the DexScreener public API."""

    def __init__(
        self,
        base_url: str = DEXSCREENER_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "memebot/1.0"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _get(self, path: str) -> Any:
        await rate_limiter.get("dexscreener").acquire()
        resp = await self._client.get(path)
        resp.raise_for_status()
        return resp.json()

    async def trending_pairs(self, chain: str) -> list[DexPair]:
        pairs = parse_pairs(await self._get(f"/latest/dex/trending/{chain}"))
        log.info("dexscreener.trending", chain=chain, count=len(pairs))
        return pairs

    async def latest_pairs(self, chain: str) -> list[DexPair]:
        pairs = parse_pairs(await self._get(f"/latest/dex/pairs/{chain}"))
        log.info("dexscreener.latest", chain=chain, count=len(pairs))
        return pairs

    async def token_pairs(self, token: str) -> list[DexPair]:
        pairs = parse_pairs(await self._get(f"/latest/dex/tokens/{token}"))
        log.info("dexscreener.token_pairs", token=token, count=len(pairs))
        return pairs
