"""structlog setup.

Events are dotted names (``engine.cycle_start``) with keyword fields.
Rendering is JSON for the service and key=value console lines for the
CLI. Credential-like fields are masked before rendering; the trading key
must never reach a log line.

Third-party libraries keep logging through ``logging``; the root logger
is capped at WARNING so web3 and httpx request chatter stays out.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog
from structlog.typing import FilteringBoundLogger

_SECRET_KEYS = frozenset({
    "private_key", "trading_private_key", "secret", "password",
    "mnemonic", "seed", "api_key", "webhook_url", "rpc_http",
})

_configured = False


def _mask_secrets(_logger: Any, _method: str, event: dict[str, Any]) -> dict[str, Any]:
    for key in event.keys() & _SECRET_KEYS:
        event[key] = "***"
    return event


def _sink(log_file: str | None) -> TextIO:
    if not log_file:
        return sys.stderr
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("a", buffering=1, encoding="utf-8")


def configure_logging(
    level: str | None = None, fmt: str | None = None, log_file: str | None = None,
) -> None:
    """Install the processor chain once; later calls are ignored.

    Unset ``level`` and ``fmt`` fall back to LOG_LEVEL and LOG_FORMAT.
    ``log_file`` sends output to that file instead of stderr.
    """
    global _configured
    if _configured:
        return

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    fmt = fmt or os.environ.get("LOG_FORMAT", "json")
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    sink = _sink(log_file)
    logging.basicConfig(
        stream=sink,
        level=max(threshold, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _mask_secrets,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # the console renderer formats exc_info itself
        processors.append(structlog.dev.ConsoleRenderer(colors=sink.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        logger_factory=structlog.WriteLoggerFactory(file=sink),
        cache_logger_on_first_use=True,
    )
    _configured = True


def bind_context(**values: str) -> None:
    """Attach fields (chain id, bot tags) to every later event in this context."""
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str | None = None) -> FilteringBoundLogger:
    """Lazy logger; it picks up whatever configure_logging installs before first use."""
    return structlog.get_logger().bind(logger=name) if name else structlog.get_logger()
