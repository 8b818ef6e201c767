"""Chain executor - quotes, swaps and balance reads through an AMM router.

Entry: native base asset -> token, using the fee-on-transfer router path.
Exit:  token -> native base asset, approving the router first if needed.

Trade amounts are always measured as balance deltas around the swap,
never taken from router return values (fee-on-transfer tokens make the
two differ).

web3.py is synchronous; every call that touches the RPC is pushed onto the
default executor so the asyncio loop keeps running.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from memebot.config import BotConfig
from memebot.connectors.price_oracle import PriceOracle
from memebot.engine.market_scanner import Candidate
from memebot.errors import (
    ApprovalError,
    ExecutionError,
    MissingReceipt,
    TxReverted,
    TxTimeout,
    Unsettled,
)
from memebot.execution.abi import ERC20_ABI, MAX_UINT256, ROUTER_ABI
from memebot.observability.logger import get_logger
from memebot.observability.metrics import metrics

log = get_logger(__name__)

T = TypeVar("T")

GAS_BUFFER = 1.2


class ExitReason(str, enum.Enum):
    TAKE_PROFIT = "take-profit"
    STOP_LOSS = "stop-loss"
    RISK_ALERT = "risk-alert"
    MANUAL = "manual"


@dataclass
class ExitOrder:
    position_id: str
    token: str
    base_token: str
    token_amount: int
    min_output: int
    reason: ExitReason


@dataclass
class ExecutionResult:
    """Outcome of a mined swap, measured from balance deltas."""
    tx_hash: str
    token: str
    base_token: str
    base_amount: int
    token_amount: int
    block_number: int
    timestamp: dt.datetime


def apply_slippage(amount: int, slippage_bps: int) -> int:
    return amount * (10_000 - slippage_bps) // 10_000


class ChainExecutor:
    """Signs and submits router swaps for a single wallet."""

    def __init__(
        self,
        config: BotConfig,
        w3: Web3 | None = None,
        account: Any = None,
        oracle: PriceOracle | None = None,
    ):
        self.config = config
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(
                config.rpc.http_url,
                request_kwargs={"timeout": config.rpc.request_timeout_secs},
            )
        )
        self._account = account
        self._oracle = oracle or PriceOracle(
            config.chain_key(), timeout=config.engine.http_timeout_secs,
        )
        self._router = None
        if config.exchange.router_address:
            self._router = self.w3.eth.contract(
                address=Web3.to_checksum_address(config.exchange.router_address),
                abi=ROUTER_ABI,
            )

    # ── Plumbing ─────────────────────────────────────────────────────

    @property
    def wallet_address(self) -> str:
        if self._account is None:
            raise ExecutionError("no signing account configured")
        return self._account.address

    @property
    def router(self):
        if self._router is None:
            raise ExecutionError("router address not configured")
        return self._router

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def _read(self, what: str, fn: Callable[[], T]) -> T:
        """Run an RPC read off-loop. Any web3 or transport failure becomes ExecutionError."""
        try:
            return await self._call(fn)
        except ExecutionError:
            raise
        except Exception as e:
            metrics.incr("executor.rpc_errors")
            raise ExecutionError(f"{what} failed: {e}") from e

    def _erc20(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def _is_native(self, token: str) -> bool:
        return self._account is not None and token.lower() == self.wallet_address.lower()

    async def close(self) -> None:
        await self._oracle.close()

    # ── Reads ────────────────────────────────────────────────────────

    async def latest_block(self) -> int:
        return await self._read("block number", lambda: self.w3.eth.block_number)

    async def token_balance(self, token: str) -> int:
        """Wallet balance of ``token``; the wallet address means native balance."""
        wallet = self.wallet_address
        if self._is_native(token):
            return await self._read("native balance", lambda: self.w3.eth.get_balance(wallet))
        return await self._read(
            f"balanceOf {token}",
            lambda: self._erc20(token).functions.balanceOf(wallet).call(),
        )

    async def native_balance(self) -> int:
        wallet = self.wallet_address
        return await self._read("native balance", lambda: self.w3.eth.get_balance(wallet))

    async def token_decimals(self, token: str) -> int:
        if self._is_native(token):
            return 18
        return int(await self._read(
            f"decimals of {token}", lambda: self._erc20(token).functions.decimals().call(),
        ))

    async def _amounts_out(self, amount: int, path: list[str]) -> int:
        router = self.router
        amounts = await self._read(
            f"getAmountsOut {path}",
            lambda: router.functions.getAmountsOut(amount, path).call(),
        )
        if not amounts:
            raise ExecutionError(f"router returned no amounts for path {path}")
        return int(amounts[-1])

    async def quote_buy(self, token: str, base_amount: int, base: str) -> int:
        """Token amount received for ``base_amount`` of the base asset."""
        path = [Web3.to_checksum_address(base), Web3.to_checksum_address(token)]
        return await self._amounts_out(base_amount, path)

    async def quote_sell(self, token: str, token_amount: int, base: str) -> int:
        """Base-asset amount received for ``token_amount`` of the token."""
        path = [Web3.to_checksum_address(token), Web3.to_checksum_address(base)]
        return await self._amounts_out(token_amount, path)

    async def fetch_base_usd_price(self, base: str) -> float:
        return await self._oracle.usd_price(Web3.to_checksum_address(base))

    async def transaction_status(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt summary for ``tx_hash``, or None while it is unmined."""
        try:
            receipt = await self._call(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ExecutionError(f"receipt lookup for {tx_hash} failed: {e}", tx_hash) from e
        if receipt is None:
            return None
        return {
            "status": int(receipt["status"]),
            "block_number": int(receipt["blockNumber"]),
        }

    async def _block_timestamp(self, block_number: int) -> dt.datetime:
        try:
            block = await self._call(self.w3.eth.get_block, block_number)
            return dt.datetime.fromtimestamp(int(block["timestamp"]), tz=dt.timezone.utc)
        except Exception as e:
            log.warning("executor.block_lookup_failed", block=block_number, error=str(e))
            return dt.datetime.now(dt.timezone.utc)

    # ── Transactions ─────────────────────────────────────────────────

    def _deadline(self) -> int:
        return int(time.time()) + self.config.exchange.deadline_secs

    def _receipt_timeout(self) -> int:
        return self.config.exchange.deadline_secs + self.config.exchange.confirmation_grace_secs

    async def _send_transaction(self, fn: Any, value: int = 0) -> str:
        """Build, sign and broadcast a contract call. Returns the tx hash."""
        wallet = self.wallet_address
        gas_price = Web3.to_wei(self.config.exchange.max_gas_price_gwei, "gwei")
        nonce = await self._read(
            "nonce lookup", lambda: self.w3.eth.get_transaction_count(wallet, "pending"),
        )
        tx_params: dict[str, Any] = {
            "from": wallet,
            "value": value,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }
        try:
            estimate = await self._call(fn.estimate_gas, {"from": wallet, "value": value})
            tx_params["gas"] = int(estimate * GAS_BUFFER)
        except Exception as e:
            log.warning("executor.gas_estimate_failed", error=str(e))
            tx_params["gas"] = self.config.exchange.default_gas_limit

        try:
            tx = await self._call(fn.build_transaction, tx_params)
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._call(self.w3.eth.send_raw_transaction, signed.raw_transaction)
        except Exception as e:
            metrics.incr("executor.send_errors")
            raise ExecutionError(f"transaction submission failed: {e}") from e
        return Web3.to_hex(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        try:
            receipt = await self._call(
                lambda: self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._receipt_timeout(),
                )
            )
        except TimeExhausted as e:
            metrics.incr("executor.timeouts")
            raise TxTimeout(f"transaction {tx_hash} not mined in time", tx_hash) from e
        except Exception as e:
            metrics.incr("executor.rpc_errors")
            raise Unsettled(f"receipt lookup for {tx_hash} failed: {e}", tx_hash) from e
        if receipt is None:
            raise MissingReceipt(f"transaction {tx_hash} dropped", tx_hash)
        if int(receipt["status"]) != 1:
            metrics.incr("executor.reverts")
            raise TxReverted(f"transaction {tx_hash} reverted", tx_hash)
        return receipt

    async def _ensure_allowance(self, token: str, amount: int) -> None:
        wallet = self.wallet_address
        erc20 = self._erc20(token)
        spender = self.router.address
        current = await self._read(
            f"allowance {token}", lambda: erc20.functions.allowance(wallet, spender).call(),
        )
        if current >= amount:
            return
        log.info("executor.approving", token=token, spender=spender)
        try:
            tx_hash = await self._send_transaction(erc20.functions.approve(spender, MAX_UINT256))
            await self._wait_for_receipt(tx_hash)
        except ExecutionError as e:
            raise ApprovalError(f"approval failed for {token}: {e}", e.tx_hash) from e

    async def execute_entry(
        self, token: str, base_amount_in: int, candidate: Candidate,
    ) -> ExecutionResult:
        """Buy ``token`` with ``base_amount_in`` wei of the native base asset."""
        token = Web3.to_checksum_address(token)
        base = Web3.to_checksum_address(candidate.base_token)
        wallet = self.wallet_address

        quoted = await self.quote_buy(token, base_amount_in, base)
        min_out = apply_slippage(quoted, self.config.slippage_bps)
        balance_before = await self.token_balance(token)

        fn = self.router.functions.swapExactETHForTokensSupportingFeeOnTransferTokens(
            min_out, [base, token], wallet, self._deadline(),
        )
        tx_hash = await self._send_transaction(fn, value=base_amount_in)
        log.info(
            "executor.entry_submitted",
            token=token,
            symbol=candidate.token_symbol,
            tx=tx_hash,
            amount_in=str(base_amount_in),
            min_out=str(min_out),
        )
        try:
            receipt = await self._wait_for_receipt(tx_hash)
        except Unsettled as e:
            raise type(e)(str(e), tx_hash, balance_before=balance_before) from e

        try:
            balance_after = await self.token_balance(token)
        except ExecutionError as e:
            raise Unsettled(
                f"balance read after entry {tx_hash} failed: {e}",
                tx_hash,
                balance_before=balance_before,
            ) from e
        acquired = balance_after - balance_before
        if acquired < 0:
            raise ExecutionError(f"token balance decreased after entry {tx_hash}", tx_hash)

        block_number = int(receipt["blockNumber"])
        metrics.incr("executor.entries")
        return ExecutionResult(
            tx_hash=tx_hash,
            token=token,
            base_token=base,
            base_amount=base_amount_in,
            token_amount=acquired,
            block_number=block_number,
            timestamp=await self._block_timestamp(block_number),
        )

    async def execute_exit(self, order: ExitOrder) -> ExecutionResult:
        """Sell ``order.token_amount`` of the token back to the base asset."""
        token = Web3.to_checksum_address(order.token)
        base = Web3.to_checksum_address(order.base_token)
        wallet = self.wallet_address

        await self._ensure_allowance(token, order.token_amount)
        native_before = await self.native_balance()

        fn = self.router.functions.swapExactTokensForETHSupportingFeeOnTransferTokens(
            order.token_amount, order.min_output, [token, base], wallet, self._deadline(),
        )
        tx_hash = await self._send_transaction(fn)
        log.info(
            "executor.exit_submitted",
            token=token,
            tx=tx_hash,
            reason=order.reason.value,
            min_out=str(order.min_output),
        )
        receipt = await self._wait_for_receipt(tx_hash)

        try:
            redeemed = await self.native_balance() - native_before
        except ExecutionError as e:
            log.warning("executor.exit_balance_unread", tx=tx_hash, error=str(e))
            redeemed = order.min_output
        if redeemed < 0:
            # gas spent exceeded proceeds as seen by the balance; report the floor
            redeemed = order.min_output

        block_number = int(receipt["blockNumber"])
        metrics.incr("executor.exits")
        return ExecutionResult(
            tx_hash=tx_hash,
            token=token,
            base_token=base,
            base_amount=redeemed,
            token_amount=order.token_amount,
            block_number=block_number,
            timestamp=await self._block_timestamp(block_number),
        )
