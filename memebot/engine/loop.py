"""Continuous trading loop - the decision engine.

Runs on a fixed cycle (default 30 seconds). Each cycle, under the book's
write lock:
  1. Reconcile entries and exits left unconfirmed by a previous cycle
  2. Revalue open positions (a failed valuation aborts the cycle)
  3. Capacity check (entries skipped when the book is full)
  4. Discover candidates
  5. Risk-filter candidates
  6. Enter positions that pass risk and momentum
  7. Exit positions that hit take-profit or stop-loss
  8. Persist the book

Cycles never overlap; a tick that finds a cycle in progress is dropped,
not queued. Snapshots for the monitoring surface take the read lock, so
they see either the state before a cycle or after it, never in between.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import signal
import time
from dataclasses import dataclass, field
from typing import Any

from eth_account import Account

from memebot.config import BotConfig, is_live_trading_enabled, load_config, trading_private_key
from memebot.engine.market_scanner import Candidate, MarketScanner
from memebot.engine.position_book import PositionBook
from memebot.engine.rwlock import AsyncRWLock
from memebot.errors import (
    DiscoveryError,
    ExecutionError,
    PersistenceError,
    Unsettled,
    ValuationError,
)
from memebot.execution.chain_executor import ChainExecutor, ExitOrder
from memebot.observability.alerts import AlertManager
from memebot.observability.logger import bind_context, get_logger
from memebot.observability.metrics import metrics
from memebot.policy.risk_analyzer import RiskAnalyzer, RiskReport
from memebot.storage.models import PendingEntry, Position
from memebot.storage.state_store import StateStore

log = get_logger(__name__)

DEFAULT_BASE_DECIMALS = 18


@dataclass
class CycleResult:
    """Summary of one trading cycle."""
    cycle_id: int
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    candidates_scanned: int = 0
    candidates_safe: int = 0
    entries_attempted: int = 0
    entries_executed: int = 0
    entries_simulated: int = 0
    exits_triggered: int = 0
    exits_executed: int = 0
    pending_resolved: int = 0
    open_positions: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class TradingEngine:
    """Coordinates scanner, risk analyzer, executor and position book."""

    def __init__(
        self,
        config: BotConfig | None = None,
        *,
        scanner: MarketScanner | None = None,
        analyzer: RiskAnalyzer | None = None,
        executor: ChainExecutor | None = None,
        book: PositionBook | None = None,
        alerts: AlertManager | None = None,
        live: bool | None = None,
    ):
        self.config: BotConfig = config or load_config()
        self.live = is_live_trading_enabled() if live is None else live

        self.scanner = scanner or MarketScanner(self.config)
        self.analyzer = analyzer or RiskAnalyzer(self.config)
        self.executor = executor or self._build_executor()
        self.book = book or PositionBook(
            StateStore(self.config.storage.state_path), self.config.slippage_bps,
        )
        self.alerts = alerts or AlertManager(self.config.alerts)

        self._lock = AsyncRWLock()
        self._running = False
        self._in_cycle = False
        self._stop_event: asyncio.Event | None = None
        self._cycle_count = 0
        self._cycle_history: list[CycleResult] = []

        bind_context(chain_id=str(self.config.chain_id), **self.config.metadata)

    def _build_executor(self) -> ChainExecutor:
        account = Account.from_key(trading_private_key()) if self.live else None
        return ChainExecutor(self.config, account=account)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_history(self) -> list[CycleResult]:
        return list(self._cycle_history)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Run cycles until stopped. Errors are logged and retried next tick."""
        self._running = True
        self._stop_event = asyncio.Event()
        interval = self.config.engine.cycle_interval_secs
        self.book.load()
        log.info(
            "engine.starting",
            interval_secs=interval,
            live_trading=self.live,
            chain_id=self.config.chain_id,
            positions=len(self.book),
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # non-main thread (dashboard) or unsupported platform

        try:
            while self._running:
                started = time.monotonic()
                try:
                    await self.tick()
                except Exception as e:
                    log.exception("engine.cycle_error", error=str(e))
                    await self.alerts.error_alert(str(e), context="cycle")
                if not self._running:
                    break
                remaining = max(0.0, interval - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.close()
            log.info("engine.stopped", total_cycles=self._cycle_count)

    def stop(self) -> None:
        log.info("engine.stop_requested")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("engine.signal_received", signal=sig.name)
        self.stop()

    async def run_once(self) -> CycleResult | None:
        self.book.load()
        try:
            return await self.tick()
        finally:
            await self.close()

    async def close(self) -> None:
        await self.scanner.close()
        await self.analyzer.close()
        await self.executor.close()
        await self.alerts.close()

    # ── Cycle ────────────────────────────────────────────────────────

    async def tick(self) -> CycleResult | None:
        """Run one cycle under the write lock; None if a cycle is already running."""
        if self._in_cycle:
            log.warning("engine.cycle_skipped", reason="previous cycle still running")
            metrics.incr("engine.cycles_skipped")
            return None
        self._in_cycle = True
        try:
            async with self._lock.writer():
                return await self._run_cycle()
        finally:
            self._in_cycle = False

    async def _run_cycle(self) -> CycleResult:
        self._cycle_count += 1
        cycle = CycleResult(cycle_id=self._cycle_count, started_at=time.time())
        log.info("engine.cycle_start", cycle_id=cycle.cycle_id, positions=len(self.book))

        try:
            await self._reconcile_pending(cycle)
            await self._reconcile_exits(cycle)

            try:
                await self.book.refresh(self.executor)
            except ValuationError as e:
                cycle.status = "failed"
                cycle.errors.append(f"refresh: {e}")
                log.error("engine.refresh_failed", error=str(e))
                await self.alerts.error_alert(str(e), context="refresh")
                return cycle

            if len(self.book) >= self.config.strategy.max_positions:
                log.info("engine.capacity_reached", positions=len(self.book))
            else:
                await self._entry_phase(cycle)

            await self._exit_phase(cycle)

            try:
                self.book.persist()
            except PersistenceError as e:
                cycle.status = "failed"
                cycle.errors.append(f"persist: {e}")
                await self.alerts.error_alert(str(e), context="persist")
                raise

            if cycle.status == "pending":
                cycle.status = "completed"
            return cycle
        finally:
            self._finish_cycle(cycle)

    def _finish_cycle(self, cycle: CycleResult) -> None:
        cycle.ended_at = time.time()
        cycle.duration_secs = round(cycle.ended_at - cycle.started_at, 2)
        cycle.open_positions = len(self.book)
        if cycle.status == "pending":
            cycle.status = "failed"
        self._cycle_history.append(cycle)
        if len(self._cycle_history) > 100:
            self._cycle_history = self._cycle_history[-50:]

        metrics.incr(f"engine.cycles_{cycle.status}")
        metrics.histogram("engine.cycle_duration_secs", cycle.duration_secs)
        metrics.gauge("engine.open_positions", cycle.open_positions)
        log.info(
            "engine.cycle_complete",
            cycle_id=cycle.cycle_id,
            duration=cycle.duration_secs,
            scanned=cycle.candidates_scanned,
            safe=cycle.candidates_safe,
            entries=cycle.entries_executed,
            exits=cycle.exits_executed,
            positions=cycle.open_positions,
            status=cycle.status,
        )

    # ── Pending entries ──────────────────────────────────────────────

    async def _reconcile_pending(self, cycle: CycleResult) -> None:
        """Resolve entries whose receipt did not arrive in time."""
        pending = self.book.pending()
        if not pending:
            return
        if not self.live:
            log.warning("engine.pending_unreconciled", count=len(pending), reason="dry run")
            return

        now = int(time.time())
        grace = self.config.exchange.confirmation_grace_secs
        for entry in pending:
            try:
                status = await self.executor.transaction_status(entry.tx_hash)
            except Exception as e:
                log.warning("engine.pending_lookup_failed", tx=entry.tx_hash, error=str(e))
                continue

            if status is None:
                if now > entry.deadline + grace:
                    self.book.resolve_pending(entry.tx_hash)
                    cycle.pending_resolved += 1
                    log.warning("engine.pending_expired", tx=entry.tx_hash, token=entry.token)
                continue

            if status["status"] != 1:
                self.book.resolve_pending(entry.tx_hash)
                cycle.pending_resolved += 1
                log.warning("engine.pending_reverted", tx=entry.tx_hash, token=entry.token)
                continue
            if self.book.is_holding(entry.token):
                self.book.resolve_pending(entry.tx_hash)
                cycle.pending_resolved += 1
                log.info("engine.pending_already_held", tx=entry.tx_hash, token=entry.token)
                continue
            try:
                balance = await self.executor.token_balance(entry.token)
            except Exception as e:
                # stays pending until a balance read succeeds
                log.warning("engine.pending_balance_failed", tx=entry.tx_hash, error=str(e))
                continue

            self.book.resolve_pending(entry.tx_hash)
            cycle.pending_resolved += 1
            acquired = balance - entry.balance_before
            if acquired <= 0:
                log.warning("engine.pending_no_tokens", tx=entry.tx_hash, token=entry.token)
                continue
            position = entry.to_position(acquired)
            self.book.add_position(position)
            log.info("engine.pending_confirmed", tx=entry.tx_hash, position_id=position.id)
            await self.alerts.trade_alert("buy", entry.token_symbol, entry.token, entry.tx_hash)

    async def _reconcile_exits(self, cycle: CycleResult) -> None:
        """Close positions whose unconfirmed exit was mined; re-arm the rest once expired."""
        positions = self.book.pending_exits()
        if not positions or not self.live:
            return

        now = int(time.time())
        grace = self.config.exchange.confirmation_grace_secs
        for position in positions:
            tx_hash = position.exit_tx
            try:
                status = await self.executor.transaction_status(tx_hash)
            except Exception as e:
                log.warning("engine.pending_exit_lookup_failed", tx=tx_hash, error=str(e))
                continue

            if status is None:
                if now > (position.exit_deadline or 0) + grace:
                    self.book.clear_exit_pending(position.id)
                    cycle.pending_resolved += 1
                    log.warning("engine.pending_exit_expired", tx=tx_hash, position_id=position.id)
                continue
            if status["status"] != 1:
                self.book.clear_exit_pending(position.id)
                cycle.pending_resolved += 1
                log.warning("engine.pending_exit_reverted", tx=tx_hash, position_id=position.id)
                continue

            self.book.close_position(position.id)
            cycle.pending_resolved += 1
            cycle.exits_executed += 1
            log.info("engine.pending_exit_confirmed", tx=tx_hash, position_id=position.id)
            await self.alerts.trade_alert("sell", position.token_symbol, position.token, tx_hash)

    # ── Entries ──────────────────────────────────────────────────────

    async def _entry_phase(self, cycle: CycleResult) -> None:
        try:
            candidates = await self.scanner.discover_candidates()
        except DiscoveryError as e:
            cycle.errors.append(f"discover: {e}")
            log.warning("engine.discovery_failed", error=str(e))
            return
        cycle.candidates_scanned = len(candidates)
        if not candidates:
            log.info("engine.no_candidates")
            return

        reports = await self.analyzer.evaluate_many(candidates)
        size_wei = self.config.position_size_wei()
        attempted: set[str] = set()

        for candidate in candidates:
            if len(self.book) >= self.config.strategy.max_positions:
                log.info("engine.capacity_reached", positions=len(self.book))
                break
            token_key = candidate.token_address.lower()
            outcome = reports.get(candidate.token_address)
            if outcome is None or isinstance(outcome, Exception):
                cycle.errors.append(f"risk {candidate.token_address}: {outcome}")
                log.warning("engine.risk_failed", token=candidate.token_address, error=str(outcome))
                continue
            if not outcome.is_safe:
                log.info(
                    "engine.rejected_risk",
                    token=candidate.token_address,
                    score=round(outcome.score, 3),
                    flags=outcome.flag_labels(),
                )
                continue
            cycle.candidates_safe += 1

            if token_key in attempted or self.book.is_holding(candidate.token_address):
                continue
            if self.book.is_pending(candidate.token_address):
                continue
            if not self.scanner.has_momentum(candidate):
                log.info("engine.insufficient_momentum", token=candidate.token_address)
                continue

            attempted.add(token_key)
            try:
                await self._enter(candidate, outcome, size_wei, cycle)
            except Exception as e:
                cycle.errors.append(f"entry {candidate.token_address}: {e}")
                metrics.incr("engine.entry_errors")
                log.exception("engine.entry_crashed", token=candidate.token_address, error=str(e))

    async def _enter(
        self, candidate: Candidate, report: RiskReport, size_wei: int, cycle: CycleResult,
    ) -> None:
        if not self.live:
            cycle.entries_simulated += 1
            metrics.incr("engine.entries_simulated")
            log.info(
                "engine.dry_run_entry",
                token=candidate.token_address,
                symbol=candidate.token_symbol,
                size_wei=str(size_wei),
                score=round(report.score, 3),
            )
            return

        try:
            base_price = await self.executor.fetch_base_usd_price(candidate.base_token)
        except ValuationError as e:
            cycle.errors.append(f"entry {candidate.token_address}: {e}")
            log.warning("engine.entry_price_failed", token=candidate.token_address, error=str(e))
            return
        try:
            base_decimals = await self.executor.token_decimals(candidate.base_token)
        except Exception as e:
            log.warning("engine.base_decimals_fallback", base=candidate.base_token, error=str(e))
            base_decimals = DEFAULT_BASE_DECIMALS

        cycle.entries_attempted += 1
        try:
            result = await self.executor.execute_entry(candidate.token_address, size_wei, candidate)
        except Unsettled as e:
            self._record_pending(candidate, report, size_wei, base_price, base_decimals, e)
            cycle.errors.append(f"entry {candidate.token_address}: {e}")
            await self.alerts.send(
                "warning",
                f"Entry unconfirmed {candidate.token_symbol}",
                f"tx {e.tx_hash} outcome unknown ({e}); will reconcile",
                cooldown_key=f"pending_{e.tx_hash}",
            )
            return
        except ExecutionError as e:
            cycle.errors.append(f"entry {candidate.token_address}: {e}")
            metrics.incr("engine.entry_errors")
            log.error("engine.entry_failed", token=candidate.token_address, tx=e.tx_hash, error=str(e))
            return

        if result.token_amount <= 0:
            log.error("engine.entry_no_tokens", token=candidate.token_address, tx=result.tx_hash)
            return

        position = Position(
            token=result.token,
            base_token=result.base_token,
            token_symbol=candidate.token_symbol,
            base_spent=result.base_amount,
            token_amount=result.token_amount,
            entry_token_price_usd=candidate.price_usd,
            entry_base_price_usd=base_price,
            base_token_decimals=base_decimals,
            entry_timestamp=result.timestamp,
            last_value_usd=result.base_amount / 10**base_decimals * base_price,
            last_updated_at=result.timestamp,
            risk_score=report.score,
            take_profit_bps=self.config.strategy.take_profit_bps,
            stop_loss_bps=self.config.strategy.stop_loss_bps,
            entry_tx=result.tx_hash,
        )
        self.book.add_position(position)
        cycle.entries_executed += 1
        await self.alerts.trade_alert("buy", candidate.token_symbol, result.token, result.tx_hash)

    def _record_pending(
        self,
        candidate: Candidate,
        report: RiskReport,
        size_wei: int,
        base_price: float,
        base_decimals: int,
        error: Unsettled,
    ) -> None:
        if error.tx_hash is None or error.balance_before is None:
            log.error("engine.pending_unrecordable", token=candidate.token_address, error=str(error))
            return
        submitted = dt.datetime.now(dt.timezone.utc)
        self.book.add_pending(PendingEntry(
            tx_hash=error.tx_hash,
            token=candidate.token_address,
            base_token=candidate.base_token,
            token_symbol=candidate.token_symbol,
            base_spent=size_wei,
            entry_token_price_usd=candidate.price_usd,
            entry_base_price_usd=base_price,
            base_token_decimals=base_decimals,
            risk_score=report.score,
            take_profit_bps=self.config.strategy.take_profit_bps,
            stop_loss_bps=self.config.strategy.stop_loss_bps,
            balance_before=error.balance_before,
            submitted_at=submitted,
            deadline=int(submitted.timestamp()) + self.config.exchange.deadline_secs,
        ))

    # ── Exits ────────────────────────────────────────────────────────

    async def _exit_phase(self, cycle: CycleResult) -> None:
        try:
            orders = await self.book.generate_exit_orders(self.executor)
        except ValuationError as e:
            cycle.status = "failed"
            cycle.errors.append(f"exit valuation: {e}")
            log.error("engine.exit_valuation_failed", error=str(e))
            await self.alerts.error_alert(str(e), context="exit valuation")
            return
        cycle.exits_triggered = len(orders)
        for order in orders:
            try:
                await self._exit(order, cycle)
            except Exception as e:
                cycle.errors.append(f"exit {order.token}: {e}")
                metrics.incr("engine.exit_errors")
                log.exception("engine.exit_crashed", position_id=order.position_id, error=str(e))

    async def _exit(self, order: ExitOrder, cycle: CycleResult) -> None:
        position = self.book.get(order.position_id)
        symbol = position.token_symbol if position else order.token
        if not self.live:
            log.info(
                "engine.dry_run_exit",
                position_id=order.position_id,
                token=order.token,
                reason=order.reason.value,
                min_output=str(order.min_output),
            )
            return
        try:
            result = await self.executor.execute_exit(order)
        except Unsettled as e:
            self.book.mark_exit_pending(
                order.position_id, e.tx_hash,
                int(time.time()) + self.config.exchange.deadline_secs,
            )
            cycle.errors.append(f"exit {order.token}: {e}")
            await self.alerts.send(
                "warning",
                f"Exit unconfirmed {symbol}",
                f"tx {e.tx_hash} outcome unknown ({e}); will reconcile",
                cooldown_key=f"pending_{e.tx_hash}",
            )
            return
        except ExecutionError as e:
            cycle.errors.append(f"exit {order.token}: {e}")
            metrics.incr("engine.exit_errors")
            log.error("engine.exit_failed", position_id=order.position_id, tx=e.tx_hash, error=str(e))
            await self.alerts.send(
                "critical",
                f"Exit failed {symbol}",
                f"{order.reason.value} exit for {order.token} failed: {e}",
                cooldown_key=f"exit_{order.position_id}",
            )
            return

        self.book.close_position(order.position_id)
        cycle.exits_executed += 1
        log.info(
            "engine.exit_executed",
            position_id=order.position_id,
            reason=order.reason.value,
            redeemed=str(result.base_amount),
            tx=result.tx_hash,
        )
        await self.alerts.trade_alert(f"sell ({order.reason.value})", symbol, order.token, result.tx_hash)

    # ── Read side ────────────────────────────────────────────────────

    async def portfolio_snapshot(self) -> dict[str, Any]:
        async with self._lock.reader():
            return self.book.snapshot()

    async def health_check(self) -> str:
        block = await self.executor.latest_block()
        return f"ok:{block}"

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycle_count": self._cycle_count,
            "live_trading": self.live,
            "chain_id": self.config.chain_id,
            "positions": len(self.book),
            "pending_entries": len(self.book.pending()),
            "pending_exits": len(self.book.pending_exits()),
            "last_cycle": (
                self._cycle_history[-1].to_dict()
                if self._cycle_history else None
            ),
        }
