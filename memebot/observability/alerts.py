"""Alerting - webhook notifications for events an operator must see.

Sends alerts for:
  - Entry / exit executions
  - Failed exits (position left open)
  - Failed cycles (valuation errors)
  - Persistence failures (on-chain and local state have diverged)

Channels:
  - Log (always)
  - Generic JSON webhook (Slack/Discord-compatible "text"/"content" fields)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from memebot.config import AlertsConfig
from memebot.observability.logger import get_logger

log = get_logger(__name__)

_LEVELS = {"info": 0, "warning": 1, "critical": 2}


@dataclass
class Alert:
    """An alert to be sent."""
    level: str  # "info" | "warning" | "critical"
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    channels_sent: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()


class AlertManager:
    """Send alerts through the configured webhook."""

    def __init__(self, config: AlertsConfig, min_level: str = "info"):
        self.config = config
        self._min_level = min_level
        self._cooldowns: dict[str, float] = {}
        self._http_session: Any | None = None  # Lazy aiohttp.ClientSession

    async def _get_session(self) -> Any:
        """Return a reusable aiohttp.ClientSession (created lazily)."""
        if self._http_session is None or self._http_session.closed:
            import aiohttp
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10),
            )
        return self._http_session

    async def close(self) -> None:
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    async def send(
        self,
        level: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        cooldown_key: str | None = None,
    ) -> Alert | None:
        """Send an alert. Returns None when suppressed by cooldown or level."""
        if not self.config.enabled:
            return None
        if _LEVELS.get(level, 0) < _LEVELS.get(self._min_level, 0):
            return None
        if cooldown_key:
            last_sent = self._cooldowns.get(cooldown_key, 0.0)
            if time.time() - last_sent < self.config.min_alert_interval_secs:
                log.debug("alerts.cooldown", key=cooldown_key)
                return None
            self._cooldowns[cooldown_key] = time.time()

        alert = Alert(level=level, title=title, message=message, data=data or {})
        log_fn = log.info if level == "info" else (
            log.warning if level == "warning" else log.critical
        )
        log_fn("alert.sent", level=level, title=title, message=message[:200])
        alert.channels_sent.append("log")

        if self.config.webhook_url:
            try:
                await self._send_webhook(alert)
                alert.channels_sent.append("webhook")
            except Exception as e:
                # Alert delivery never interrupts trading; failure is logged.
                log.error("alert.webhook_error", error=str(e))

        return alert

    async def _send_webhook(self, alert: Alert) -> None:
        text = f"[{alert.level.upper()}] {alert.title}\n{alert.message}"
        payload = {"text": text, "content": text, "data": alert.data}
        session = await self._get_session()
        async with session.post(self.config.webhook_url, json=payload) as resp:
            resp.raise_for_status()

    # Convenience methods

    async def trade_alert(self, side: str, symbol: str, token: str, tx_hash: str) -> Alert | None:
        return await self.send(
            level="info",
            title=f"{side.upper()} {symbol}",
            message=f"token {token}\ntx {tx_hash}",
            data={"side": side, "token": token, "tx": tx_hash},
        )

    async def error_alert(self, error: str, context: str = "") -> Alert | None:
        return await self.send(
            level="critical",
            title="Engine error",
            message=f"{error}\n\nContext: {context}" if context else error,
            cooldown_key=f"error_{context}_{error[:50]}",
        )
