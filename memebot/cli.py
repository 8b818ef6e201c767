"""CLI entry point for memebot.

Commands:
  memebot run [--once]      - Start the trading engine (or run one cycle)
  memebot scan              - List ranked candidates for the configured chain
  memebot evaluate TOKEN    - Risk-evaluate every pair of one token
  memebot health            - Check RPC liveness
  memebot portfolio         - Show positions from the state file
  memebot monitor           - Run the engine behind the HTTP monitoring surface
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from memebot.config import BotConfig, is_live_trading_enabled, load_config
from memebot.errors import BotError, EvaluationError
from memebot.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Memecoin spot entry/exit engine."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except BotError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Start the trading engine."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.engine.loop import TradingEngine

    live = is_live_trading_enabled()
    console.print("[bold cyan]Starting trading engine[/bold cyan]")
    console.print(f"  Chain: {cfg.chain_key()} ({cfg.chain_id})")
    console.print(f"  Cycle interval: {cfg.engine.cycle_interval_secs}s")
    console.print(f"  Max positions: {cfg.strategy.max_positions}")
    console.print(f"  Position size: {cfg.strategy.position_size_eth}")
    console.print(f"  Live trading: {live}")
    if not live:
        console.print("[yellow]Dry run: set ENABLE_LIVE_TRADING=true to broadcast.[/yellow]")
    console.print()

    try:
        eng = TradingEngine(config=cfg)
        if once:
            result = _run(eng.run_once())
            if result is not None:
                _print_cycle(result.to_dict())
        else:
            _run(eng.start())
    except BotError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Engine stopped by user.[/yellow]")


def _print_cycle(result: dict[str, Any]) -> None:
    table = Table(title=f"Cycle {result['cycle_id']} ({result['status']})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in (
        "candidates_scanned", "candidates_safe", "entries_executed",
        "entries_simulated", "exits_executed", "open_positions", "duration_secs",
    ):
        table.add_row(key, str(result[key]))
    console.print(table)
    for err in result["errors"]:
        console.print(f"[red]  {err}[/red]")


# ─── SCAN ────────────────────────────────────────────────────────────

@cli.command()
@click.option("--momentum-only", is_flag=True, help="Only show candidates with momentum")
@click.pass_context
def scan(ctx: click.Context, momentum_only: bool) -> None:
    """Scan and list ranked candidates."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.engine.market_scanner import MarketScanner

    async def _scan() -> list[tuple[Any, bool]]:
        scanner = MarketScanner(cfg)
        try:
            found = await scanner.discover_candidates()
            return [(c, scanner.has_momentum(c)) for c in found]
        finally:
            await scanner.close()

    try:
        rows = _run(_scan())
    except BotError as e:
        raise click.ClickException(str(e)) from e
    if momentum_only:
        rows = [r for r in rows if r[1]]

    table = Table(title=f"Candidates ({len(rows)} found)")
    table.add_column("Symbol", style="bold")
    table.add_column("Token", max_width=14)
    table.add_column("Liquidity", justify="right")
    table.add_column("Vol 24h", justify="right")
    table.add_column("Δ1h %", justify="right")
    table.add_column("Buy ratio", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Momentum")
    table.add_column("Flags")
    for c, momentum in rows:
        table.add_row(
            c.token_symbol,
            c.token_address[:12] + "…",
            f"${c.liquidity_usd:,.0f}",
            f"${c.volume24h_usd:,.0f}",
            f"{c.price_change_h1:+.1f}",
            f"{c.buy_pressure_ratio:.2f}",
            f"{c.confidence:.2f}",
            "[green]yes[/green]" if momentum else "no",
            ", ".join(c.safety_flags),
        )
    console.print(table)


# ─── EVALUATE ────────────────────────────────────────────────────────

@cli.command()
@click.argument("token")
@click.pass_context
def evaluate(ctx: click.Context, token: str) -> None:
    """Risk-evaluate every pair for TOKEN on the configured chain."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.engine.market_scanner import MarketScanner
    from memebot.policy.risk_analyzer import RiskAnalyzer

    async def _evaluate() -> list[tuple[Any, Any]]:
        scanner = MarketScanner(cfg)
        analyzer = RiskAnalyzer(cfg)
        try:
            results: list[tuple[Any, Any]] = []
            for c in await scanner.fetch_token_candidates(token):
                try:
                    results.append((c, await analyzer.evaluate_candidate(c)))
                except EvaluationError as e:
                    results.append((c, e))
            return results
        finally:
            await scanner.close()
            await analyzer.close()

    try:
        results = _run(_evaluate())
    except BotError as e:
        raise click.ClickException(str(e)) from e
    if not results:
        console.print(f"[yellow]No pairs found for {token} on {cfg.chain_key()}.[/yellow]")
        return

    table = Table(title=f"Risk report for {token}")
    table.add_column("Pair", max_width=14)
    table.add_column("DEX")
    table.add_column("Liquidity", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Verdict")
    table.add_column("Flags")
    for c, report in results:
        if isinstance(report, Exception):
            table.add_row(c.pair_address[:12] + "…", c.dex_id, f"${c.liquidity_usd:,.0f}",
                          "-", "[red]error[/red]", str(report))
            continue
        table.add_row(
            c.pair_address[:12] + "…",
            c.dex_id,
            f"${c.liquidity_usd:,.0f}",
            f"{report.score:.2f}",
            "[green]SAFE[/green]" if report.is_safe else "[red]REJECT[/red]",
            ", ".join(report.flag_labels()),
        )
    console.print(table)


# ─── HEALTH ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that the RPC endpoint answers."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.execution.chain_executor import ChainExecutor

    async def _health() -> str:
        executor = ChainExecutor(cfg)
        try:
            return f"ok:{await executor.latest_block()}"
        finally:
            await executor.close()

    try:
        status = _run(_health())
    except Exception as e:
        console.print(f"[red]unhealthy: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]{status}[/green]")


# ─── PORTFOLIO ───────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def portfolio(ctx: click.Context) -> None:
    """Show open positions as last persisted."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.engine.position_book import PositionBook
    from memebot.storage.state_store import StateStore

    book = PositionBook(StateStore(cfg.storage.state_path), cfg.slippage_bps)
    try:
        book.load()
    except BotError as e:
        raise click.ClickException(str(e)) from e
    snap = book.snapshot()

    table = Table(title=f"Portfolio - {snap['total_positions']} positions, "
                        f"${snap['total_value_usd']:,.2f}")
    table.add_column("Symbol", style="bold")
    table.add_column("Token", max_width=14)
    table.add_column("Spent", justify="right")
    table.add_column("Entry $", justify="right")
    table.add_column("Last $", justify="right")
    table.add_column("PnL bps", justify="right")
    table.add_column("Updated")
    for row in snap["positions"]:
        pnl = row["pnl_bps"]
        colour = "green" if pnl >= 0 else "red"
        table.add_row(
            row["symbol"],
            row["token"][:12] + "…",
            row["base_spent"],
            f"{row['entry_value_usd']:,.2f}",
            f"{row['last_value_usd']:,.2f}",
            f"[{colour}]{pnl:+.0f}[/{colour}]",
            row["last_updated_at"][:19],
        )
    console.print(table)
    if snap["pending_entries"]:
        console.print(f"[yellow]{snap['pending_entries']} entries awaiting confirmation[/yellow]")


# ─── MONITOR ─────────────────────────────────────────────────────────

@cli.command()
@click.option("--host", default=None, help="Host to bind to (default from config)")
@click.option("--port", default=None, type=int, help="Port to listen on (default from config)")
@click.option("--no-engine", is_flag=True, help="Don't start the trading engine")
@click.pass_context
def monitor(ctx: click.Context, host: str | None, port: int | None, no_engine: bool) -> None:
    """Serve /health, /portfolio and /metrics with the engine in the background."""
    cfg: BotConfig = ctx.obj["config"]
    from memebot.dashboard.app import run_dashboard

    run_dashboard(
        config=cfg,
        host=host or cfg.monitoring.host,
        port=port or cfg.monitoring.port,
        start_engine=not no_engine,
    )


if __name__ == "__main__":
    cli()
