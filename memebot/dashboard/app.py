"""Monitoring surface - Flask app exposing engine state over HTTP.

Routes:
  /health     - RPC liveness ("ok:<block>"), 503 when the chain is unreachable
  /portfolio  - position snapshot, taken under the book's read lock
  /metrics    - Prometheus text exposition
  /status     - engine status and last cycle summary

The trading engine runs in a background thread with its own event loop.
Handlers reach into that loop with ``asyncio.run_coroutine_threadsafe``
so every book read goes through the engine's lock.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import time
from typing import Any, Callable

from flask import Flask, jsonify

from memebot.config import BotConfig, load_config
from memebot.connectors.rate_limiter import rate_limiter
from memebot.observability.logger import get_logger
from memebot.observability.metrics import metrics

log = get_logger(__name__)

app = Flask(__name__)

# ─── Embedded Engine ────────────────────────────────────────────────

_engine_thread: threading.Thread | None = None
_engine_instance: Any = None
_engine_loop: asyncio.AbstractEventLoop | None = None
_engine_started_at: float = 0.0
_engine_error: str | None = None


def _engine_worker(cfg: BotConfig) -> None:
    """Run the TradingEngine in a dedicated thread with its own event loop."""
    global _engine_instance, _engine_loop, _engine_started_at, _engine_error
    from memebot.engine.loop import TradingEngine

    _engine_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(_engine_loop)
    _engine_started_at = time.time()
    _engine_error = None

    try:
        _engine_instance = TradingEngine(config=cfg)
        _engine_loop.run_until_complete(_engine_instance.start())
    except Exception as e:
        _engine_error = str(e)
        log.exception("dashboard.engine_crashed", error=str(e))
    finally:
        _engine_loop.close()
        _engine_loop = None


def _start_engine(cfg: BotConfig) -> bool:
    """Start the engine in a background thread. Returns False if already running."""
    global _engine_thread
    if _engine_thread and _engine_thread.is_alive():
        return False
    _engine_thread = threading.Thread(
        target=_engine_worker, args=(cfg,), daemon=True, name="trading-engine",
    )
    _engine_thread.start()
    return True


def _on_engine_loop(coro_fn: Any, timeout_fn: Callable[[BotConfig], float]) -> Any:
    """Run ``coro_fn()`` on the engine loop, waiting ``timeout_fn(config)`` seconds."""
    loop = _engine_loop
    if _engine_instance is None or loop is None or not loop.is_running():
        raise RuntimeError(_engine_error or "engine not running")
    timeout = timeout_fn(_engine_instance.config)
    future = asyncio.run_coroutine_threadsafe(coro_fn(), loop)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise RuntimeError(f"engine busy for more than {timeout:.0f}s") from None


# ─── Routes ─────────────────────────────────────────────────────────

@app.route("/health")
def health() -> Any:
    try:
        status = _on_engine_loop(
            lambda: _engine_instance.health_check(),
            lambda cfg: cfg.monitoring.health_timeout_secs,
        )
    except Exception as e:
        return jsonify({"status": "unhealthy", "error": str(e)}), 503
    return jsonify({"status": status})


@app.route("/portfolio")
def portfolio() -> Any:
    # snapshots queue behind a running cycle, which can span several swaps
    try:
        snap = _on_engine_loop(
            lambda: _engine_instance.portfolio_snapshot(),
            BotConfig.snapshot_timeout_secs,
        )
    except Exception as e:
        return jsonify({"error": str(e)}), 503
    return jsonify(snap)


@app.route("/status")
def status() -> Any:
    if _engine_instance is None:
        return jsonify({"running": False, "error": _engine_error}), 503
    body = _engine_instance.get_status()
    body["uptime_secs"] = round(time.time() - _engine_started_at, 1)
    body["error"] = _engine_error
    return jsonify(body)


@app.route("/metrics")
def prometheus_metrics() -> Any:
    """Expose metrics in Prometheus text exposition format."""
    lines = [metrics.to_prometheus(prefix="memebot").rstrip("\n")]

    for endpoint, stats in rate_limiter.stats().items():
        safe = endpoint.replace(".", "_").replace("-", "_")
        lines.append(f'memebot_rate_limiter_requests_total{{endpoint="{safe}"}} {stats["requests"]}')
        lines.append(f'memebot_rate_limiter_delayed_total{{endpoint="{safe}"}} {stats["delayed"]}')

    if _engine_instance:
        lines.append(f"memebot_engine_running {1 if _engine_instance.is_running else 0}")

    body = "\n".join(line for line in lines if line) + "\n"
    return body, 200, {"Content-Type": "text/plain; charset=utf-8"}


def run_dashboard(
    config: BotConfig | None = None,
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
    start_engine: bool = True,
) -> None:
    """Start the monitoring server and, by default, the trading engine."""
    cfg = config or load_config(config_path)
    host = host or cfg.monitoring.host
    port = port or cfg.monitoring.port

    if start_engine:
        _start_engine(cfg)
    log.info("dashboard.starting", host=host, port=port, engine=start_engine)
    app.run(host=host, port=port, debug=False, use_reloader=False)
