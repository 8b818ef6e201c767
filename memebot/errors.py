"""Error taxonomy for the trading engine.

Each class maps to how far a failure is allowed to propagate inside a
cycle:

  DiscoveryError    - every market-data feed failed; entry phase aborted
  EvaluationError   - security lookup failed for one candidate; skipped
  ExecutionError    - swap / approval / RPC read failed; position state unchanged
  Unsettled         - swap broadcast, outcome unknown; reconciled next cycle
  ValuationError    - price or decimals lookup failed; whole cycle aborted
  PersistenceError  - state could not be written; cycle reported as failed
"""

from __future__ import annotations


class BotError(Exception):
    """Base class for all engine errors."""


class ConfigError(BotError):
    """Invalid or missing configuration."""


class DiscoveryError(BotError):
    """No market-data feed could be reached or parsed."""


class EvaluationError(BotError):
    """Risk evaluation for a single candidate failed."""


class ValuationError(BotError):
    """A price, quote or decimals lookup failed while valuing positions."""


class PersistenceError(BotError):
    """Position state could not be loaded or written."""


class PositionNotFound(BotError):
    """Attempted to close a position id the book does not hold."""


class ExecutionError(BotError):
    """An on-chain trade could not be completed."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class Unsettled(ExecutionError):
    """A swap was broadcast but its outcome could not be measured.

    The transaction may be mined later, or already was; ``tx_hash`` is
    always set so the engine can reconcile it on a later cycle. For
    entries, ``balance_before`` is the token balance recorded before
    submission.
    """

    def __init__(self, message: str, tx_hash: str | None = None, balance_before: int | None = None):
        super().__init__(message, tx_hash)
        self.balance_before = balance_before


class TxTimeout(Unsettled):
    """Transaction was broadcast but not confirmed within the wait window."""


class TxReverted(ExecutionError):
    """The chain reported the transaction as failed."""


class MissingReceipt(ExecutionError):
    """The transaction was dropped without producing a receipt."""


class ApprovalError(ExecutionError):
    """Raising the router's spend allowance failed."""
