"""Risk flags as a closed set of kinds.

Whether a flag vetoes a trade is a property of its kind, looked up in
``_CRITICAL``. Every FlagKind must have an entry there; the module refuses
to import otherwise, so adding a kind forces a decision about it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FlagKind(str, Enum):
    SECURITY_DATA_MISSING = "security-data-missing"
    HONEYPOT = "honeypot-detected"
    TRADING_DISABLED = "trading-disabled"
    OWNER_CAN_REVOKE = "owner-can-revoke"
    PROXY_CONTRACT = "proxy-contract"
    EXCESSIVE_TAX = "excessive-tax"
    TOP_HOLDERS = "top-holders"
    RENOUNCE_SCORE_LOW = "renounce-score-low"
    LIQUIDITY_LOW = "liquidity-below-threshold"
    VOLUME_LOW = "volume-24h-low"
    LIQUIDITY_LOCK_LOW = "insufficient-liquidity-lock"
    HOLDER_COUNT_LOW = "holder-count-low"


_CRITICAL: dict[FlagKind, bool] = {
    FlagKind.SECURITY_DATA_MISSING: True,
    FlagKind.HONEYPOT: True,
    FlagKind.TRADING_DISABLED: True,
    FlagKind.OWNER_CAN_REVOKE: True,
    FlagKind.PROXY_CONTRACT: True,
    FlagKind.EXCESSIVE_TAX: True,
    FlagKind.TOP_HOLDERS: True,
    FlagKind.RENOUNCE_SCORE_LOW: False,
    FlagKind.LIQUIDITY_LOW: False,
    FlagKind.VOLUME_LOW: False,
    FlagKind.LIQUIDITY_LOCK_LOW: False,
    FlagKind.HOLDER_COUNT_LOW: False,
}

_missing = set(FlagKind) - set(_CRITICAL)
if _missing:
    raise RuntimeError(f"criticality undefined for {sorted(k.value for k in _missing)}")


@dataclass(frozen=True)
class RiskFlag:
    """One finding from risk evaluation, with an optional numeric payload."""
    kind: FlagKind
    value: float | None = None

    @property
    def critical(self) -> bool:
        return _CRITICAL[self.kind]

    def __str__(self) -> str:
        text = self.kind.value
        if self.value is not None:
            text = f"{text}:{self.value:g}"
        return f"critical:{text}" if self.critical else text


def has_critical(flags: list[RiskFlag]) -> bool:
    return any(flag.critical for flag in flags)
