"""Storage models - Pydantic records for the persisted portfolio state.

Token amounts are integers in the smallest unit and routinely exceed
2**53, so they are written to JSON as decimal strings. Pydantic coerces
the strings back to ``int`` on load.
"""

from __future__ import annotations

import datetime as dt
import uuid

from pydantic import BaseModel, Field, field_serializer


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Position(BaseModel):
    """An open holding acquired by a successful entry swap."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    token: str
    base_token: str
    token_symbol: str = ""
    base_spent: int
    token_amount: int
    entry_token_price_usd: float = 0.0
    entry_base_price_usd: float
    base_token_decimals: int = 18
    entry_timestamp: dt.datetime = Field(default_factory=_utcnow)
    last_value_usd: float = 0.0
    last_updated_at: dt.datetime = Field(default_factory=_utcnow)
    risk_score: float = 0.0
    take_profit_bps: int
    stop_loss_bps: int
    entry_tx: str = ""
    # set while an exit swap is broadcast but unconfirmed
    exit_tx: str | None = None
    exit_deadline: int | None = None

    @field_serializer("base_spent", "token_amount")
    def _big_int(self, value: int) -> str:
        return str(value)

    @property
    def entry_value_usd(self) -> float:
        return self.base_spent / 10**self.base_token_decimals * self.entry_base_price_usd


class PendingEntry(BaseModel):
    """An entry swap that was broadcast but not confirmed in time."""
    tx_hash: str
    token: str
    base_token: str
    token_symbol: str = ""
    base_spent: int
    entry_token_price_usd: float = 0.0
    entry_base_price_usd: float
    base_token_decimals: int = 18
    risk_score: float = 0.0
    take_profit_bps: int
    stop_loss_bps: int
    balance_before: int
    submitted_at: dt.datetime = Field(default_factory=_utcnow)
    deadline: int

    @field_serializer("base_spent", "balance_before")
    def _big_int(self, value: int) -> str:
        return str(value)

    def to_position(self, token_amount: int, entry_timestamp: dt.datetime | None = None) -> Position:
        return Position(
            token=self.token,
            base_token=self.base_token,
            token_symbol=self.token_symbol,
            base_spent=self.base_spent,
            token_amount=token_amount,
            entry_token_price_usd=self.entry_token_price_usd,
            entry_base_price_usd=self.entry_base_price_usd,
            base_token_decimals=self.base_token_decimals,
            entry_timestamp=entry_timestamp or _utcnow(),
            last_value_usd=self.base_spent / 10**self.base_token_decimals * self.entry_base_price_usd,
            risk_score=self.risk_score,
            take_profit_bps=self.take_profit_bps,
            stop_loss_bps=self.stop_loss_bps,
            entry_tx=self.tx_hash,
        )
