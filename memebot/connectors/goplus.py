"""GoPlus Security token-security API connector.

GoPlus reports contract-level red flags (honeypot, proxy, ownership
reclaim, transfer taxes, holder concentration). Every flag arrives as a
string: "1" / "0" for booleans, decimal fractions for taxes ("0.05" = 5%)
and holder percentages ("0.12" = 12%).
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from memebot.connectors.rate_limiter import rate_limiter
from memebot.observability.logger import get_logger

log = get_logger(__name__)

GOPLUS_BASE = "https://api.gopluslabs.io"


def _flag(value: str | None) -> bool:
    return value == "1"


def _fraction_to_percent(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value) * 100.0
    except ValueError:
        return None


class SecurityHolder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    address: str = ""
    percent: str = ""


class TokenSecurity(BaseModel):
    """Security profile for one contract."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_honeypot: str | None = None
    trading_disabled: str | None = None
    can_take_back_ownership: str | None = None
    is_proxy: str | None = None
    buy_tax: str | None = None
    sell_tax: str | None = None
    cannot_sell_all: str | None = None
    hidden_owner: str | None = None
    is_open_source: str | None = None
    owner_address: str | None = None
    holder_count: str | None = None
    top_holders: list[SecurityHolder] | None = Field(default=None, alias="holders")

    @property
    def honeypot(self) -> bool:
        return _flag(self.is_honeypot)

    @property
    def trading_is_disabled(self) -> bool:
        return _flag(self.trading_disabled)

    @property
    def owner_can_reclaim(self) -> bool:
        return _flag(self.can_take_back_ownership)

    @property
    def proxy(self) -> bool:
        return _flag(self.is_proxy)

    @property
    def buy_tax_percent(self) -> float | None:
        return _fraction_to_percent(self.buy_tax)

    @property
    def sell_tax_percent(self) -> float | None:
        return _fraction_to_percent(self.sell_tax)

    @property
    def max_tax_percent(self) -> float:
        return max(self.buy_tax_percent or 0.0, self.sell_tax_percent or 0.0)

    def top10_holder_percent(self) -> float | None:
        """Sum of the ten largest holders' share, None when unknown or zero."""
        if not self.top_holders:
            return None
        total = 0.0
        for holder in self.top_holders[:10]:
            pct = _fraction_to_percent(holder.percent)
            if pct is not None:
                total += pct
        return total if total > 0 else None


class GoPlusClient:
    """Async client for the GoPlus token_security endpoint."""

    def __init__(
        self,
        chain_id: int,
        base_url: str = GOPLUS_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._chain_id = chain_id
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
    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        await rate_limiter.get("goplus").acquire()
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def token_security(self, token: str) -> TokenSecurity | None:
        """Fetch the security profile for ``token``; None when GoPlus has none.

        Raises ValueError when GoPlus answers with an error code or an
        unexpected payload.
        """
        data = await self._get(
            f"/api/v1/token_security/{self._chain_id}",
            params={"contract_addresses": token},
        )
        if not isinstance(data, dict):
            raise ValueError("unexpected GoPlus payload")
        if data.get("code") != 1:
            raise ValueError(f"goplus api error: {data.get('message', '')}")
        result = data.get("result") or {}
        # GoPlus keys results by lower-cased address
        raw = result.get(token.lower()) or result.get(token)
        if raw is None:
            log.info("goplus.no_profile", token=token)
            return None
        return TokenSecurity.model_validate(raw)
