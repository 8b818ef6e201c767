"""Position book - open holdings, valuation and exit triggers.

Exit rules, evaluated per position on every cycle:
  1. Take-profit: pnl_bps >= take_profit_bps (checked first, inclusive)
  2. Stop-loss:   pnl_bps <= -stop_loss_bps

Valuation quotes the full token amount back through the router, so the
P&L already reflects price impact and transfer taxes.

The book is not thread-safe; the engine serialises access with its
read/write lock.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from memebot.errors import PositionNotFound, ValuationError
from memebot.execution.chain_executor import ExitOrder, ExitReason, apply_slippage
from memebot.observability.logger import get_logger
from memebot.storage.models import PendingEntry, Position
from memebot.storage.state_store import PortfolioState, StateStore

if TYPE_CHECKING:
    from memebot.execution.chain_executor import ChainExecutor

log = get_logger(__name__)


def pnl_bps(entry_value_usd: float, current_value_usd: float) -> float:
    """Unrealised P&L in basis points; 0 when there is no entry value."""
    if entry_value_usd <= 0:
        return 0.0
    return (current_value_usd / entry_value_usd - 1.0) * 10_000.0


def format_amount(amount: int, decimals: int) -> str:
    """Render a smallest-unit integer as a decimal string."""
    value = Decimal(amount).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


@dataclass
class _Valuation:
    position: Position
    quoted_base: int
    value_usd: float


class PositionBook:
    """Owns the set of open positions and pending entries."""

    def __init__(self, store: StateStore, slippage_bps: int = 300):
        self._store = store
        self._slippage_bps = slippage_bps
        self._positions: dict[str, Position] = {}
        self._pending: dict[str, PendingEntry] = {}

    # ── Collection access ────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._positions)

    def positions(self) -> list[Position]:
        return list(self._positions.values())

    def get(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def is_holding(self, token: str) -> bool:
        token = token.lower()
        return any(p.token.lower() == token for p in self._positions.values())

    def add_position(self, position: Position) -> None:
        if self.is_holding(position.token):
            raise ValueError(f"already holding {position.token}")
        self._positions[position.id] = position
        log.info(
            "position.opened",
            position_id=position.id,
            token=position.token,
            symbol=position.token_symbol,
            base_spent=str(position.base_spent),
            token_amount=str(position.token_amount),
            entry_value_usd=round(position.entry_value_usd, 2),
        )

    def close_position(self, position_id: str) -> Position:
        position = self._positions.pop(position_id, None)
        if position is None:
            raise PositionNotFound(position_id)
        log.info("position.closed", position_id=position_id, token=position.token)
        return position

    # ── Pending entries ──────────────────────────────────────────────

    def add_pending(self, entry: PendingEntry) -> None:
        self._pending[entry.tx_hash] = entry
        log.warning("position.pending_entry", tx=entry.tx_hash, token=entry.token)

    def pending(self) -> list[PendingEntry]:
        return list(self._pending.values())

    def resolve_pending(self, tx_hash: str) -> PendingEntry | None:
        return self._pending.pop(tx_hash, None)

    def is_pending(self, token: str) -> bool:
        token = token.lower()
        return any(p.token.lower() == token for p in self._pending.values())

    # ── Pending exits ────────────────────────────────────────────────

    def mark_exit_pending(self, position_id: str, tx_hash: str, deadline: int) -> None:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(position_id)
        position.exit_tx = tx_hash
        position.exit_deadline = deadline
        log.warning("position.pending_exit", position_id=position_id, tx=tx_hash)

    def clear_exit_pending(self, position_id: str) -> None:
        position = self._positions.get(position_id)
        if position is not None:
            position.exit_tx = None
            position.exit_deadline = None

    def pending_exits(self) -> list[Position]:
        return [p for p in self._positions.values() if p.exit_tx]

    # ── Valuation ────────────────────────────────────────────────────

    async def _valuate(self, executor: ChainExecutor) -> list[_Valuation]:
        """Quote every position; one price and decimals lookup per base asset."""
        prices: dict[str, float] = {}
        decimals: dict[str, int] = {}
        results: list[_Valuation] = []

        for position in self._positions.values():
            base = position.base_token.lower()
            if base not in prices:
                try:
                    prices[base] = await executor.fetch_base_usd_price(position.base_token)
                except ValuationError:
                    raise
                except Exception as e:
                    raise ValuationError(f"base price lookup failed for {position.base_token}: {e}") from e
            if base not in decimals:
                try:
                    decimals[base] = await executor.token_decimals(position.base_token)
                except Exception as e:
                    log.warning(
                        "position.decimals_fallback",
                        base=position.base_token,
                        decimals=position.base_token_decimals,
                        error=str(e),
                    )
                    decimals[base] = position.base_token_decimals
            try:
                quoted = await executor.quote_sell(
                    position.token, position.token_amount, position.base_token,
                )
            except Exception as e:
                raise ValuationError(f"quote failed for {position.token}: {e}") from e

            value = quoted / 10 ** decimals[base] * prices[base]
            results.append(_Valuation(position, quoted, value))
        return results

    async def refresh(self, executor: ChainExecutor) -> None:
        """Revalue all positions. Any failed lookup aborts the whole refresh."""
        valuations = await self._valuate(executor)
        now = dt.datetime.now(dt.timezone.utc)
        for v in valuations:
            v.position.last_value_usd = v.value_usd
            v.position.last_updated_at = now
        log.debug("position.refreshed", count=len(valuations))

    async def generate_exit_orders(self, executor: ChainExecutor) -> list[ExitOrder]:
        """Exit orders for positions past a threshold. Positions with an unconfirmed exit are skipped."""
        orders: list[ExitOrder] = []
        for v in await self._valuate(executor):
            position = v.position
            if position.exit_tx:
                continue
            entry_value = position.entry_value_usd
            if entry_value <= 0:
                continue
            pnl = pnl_bps(entry_value, v.value_usd)

            reason: ExitReason | None = None
            if pnl >= position.take_profit_bps:
                reason = ExitReason.TAKE_PROFIT
            elif pnl <= -position.stop_loss_bps:
                reason = ExitReason.STOP_LOSS
            if reason is None:
                continue

            orders.append(ExitOrder(
                position_id=position.id,
                token=position.token,
                base_token=position.base_token,
                token_amount=position.token_amount,
                min_output=apply_slippage(v.quoted_base, self._slippage_bps),
                reason=reason,
            ))
            log.info(
                "position.exit_triggered",
                position_id=position.id,
                token=position.token,
                reason=reason.value,
                pnl_bps=round(pnl, 1),
            )
        return orders

    # ── Reporting ────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        rows = []
        total = 0.0
        for p in self._positions.values():
            total += p.last_value_usd
            rows.append({
                "id": p.id,
                "token": p.token,
                "symbol": p.token_symbol,
                "token_amount": str(p.token_amount),
                "base_spent": format_amount(p.base_spent, p.base_token_decimals),
                "entry_value_usd": round(p.entry_value_usd, 2),
                "last_value_usd": round(p.last_value_usd, 2),
                "pnl_bps": round(pnl_bps(p.entry_value_usd, p.last_value_usd), 1),
                "entry_timestamp": p.entry_timestamp.isoformat(),
                "last_updated_at": p.last_updated_at.isoformat(),
                "exit_tx": p.exit_tx,
            })
        return {
            "total_positions": len(rows),
            "total_value_usd": round(total, 2),
            "pending_entries": len(self._pending),
            "pending_exits": len(self.pending_exits()),
            "positions": rows,
        }

    # ── Persistence ──────────────────────────────────────────────────

    def load(self) -> None:
        state = self._store.load()
        self._positions = dict(state.positions)
        self._pending = dict(state.pending)

    def persist(self) -> None:
        self._store.save(PortfolioState(positions=dict(self._positions), pending=dict(self._pending)))
