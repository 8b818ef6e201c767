"""DefiLlama coins API - current USD price for a ``chain:address`` key."""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from memebot.connectors.rate_limiter import rate_limiter
from memebot.errors import ValuationError
from memebot.observability.logger import get_logger

log = get_logger(__name__)

LLAMA_BASE = "https://coins.llama.fi"


class PriceOracle:
    """Async client for DefiLlama current prices."""

    def __init__(
        self,
        chain_key: str,
        base_url: str = LLAMA_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._chain_key = chain_key
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
        await rate_limiter.get("defillama").acquire()
        resp = await self._client.get(path)
        resp.raise_for_status()
        return resp.json()

    async def usd_price(self, address: str) -> float:
        """Current USD price of ``address`` on the configured chain."""
        key = f"{self._chain_key}:{address}"
        try:
            data = await self._get(f"/prices/current/{key}")
        except (httpx.HTTPError, ValueError) as e:
            raise ValuationError(f"price lookup failed for {key}: {e}") from e

        coins = data.get("coins", {}) if isinstance(data, dict) else {}
        # DefiLlama may echo the key with a lower-cased address
        entry = coins.get(key) or coins.get(key.lower())
        if not entry or "price" not in entry:
            raise ValuationError(f"missing price data for {key}")
        price = float(entry["price"])
        log.debug("oracle.price", key=key, price=price)
        return price
